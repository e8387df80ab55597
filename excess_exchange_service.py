"""
Excess fuel exchange — repair lots that hold volume but no mass.

When a lot is depleted by mass at an operational density lighter than its
intake density, liters are left behind under an MRN with nothing to
declare.  The exchange moves those liters into the oldest active lot of
any active fixed tank, converting them to mass at that donor's intake
density (or an explicit override).
"""

import logging
import sqlite3
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from clock_service import now_s
from constants import EXCESS_SWAP_BATCH_SIZE, EXCESS_SWAP_MIN_LITERS, ZERO
from db import TX_RETRIES, run_with_retry, write_transaction
from density_service import liters_to_kg
from ledger_errors import (
    InsufficientFuelError,
    LedgerError,
    NoEligibleDonorError,
    NotFoundError,
    ValidationError,
)
from quantities import as_number, from_db, optional_density, positive_qty, qty, to_db
import tank_repository as repo
from tank_repository import FIXED, MOBILE, TankKind, tank_kind


@dataclass(frozen=True)
class ExchangeResult:
    exchange_id: int
    correlation_id: str
    source_kind: str
    source_tank_id: int
    source_lot_id: int
    source_mrn: str
    target_tank_id: int
    target_lot_id: int
    target_mrn: str
    liters: Decimal
    kg: Decimal
    density: Decimal
    source_remaining_liters: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exchange_id": self.exchange_id,
            "correlation_id": self.correlation_id,
            "source_kind": self.source_kind,
            "source_tank_id": self.source_tank_id,
            "source_lot_id": self.source_lot_id,
            "source_mrn": self.source_mrn,
            "target_tank_id": self.target_tank_id,
            "target_lot_id": self.target_lot_id,
            "target_mrn": self.target_mrn,
            "liters": as_number(self.liters),
            "kg": as_number(self.kg),
            "density": as_number(self.density),
            "source_remaining_liters": as_number(self.source_remaining_liters),
        }


def exchange_excess_fuel(
    conn: sqlite3.Connection,
    tank_id: int,
    source_lot_id: int,
    source_mrn: str,
    excess_liters: Any,
    density: Any = None,
    *,
    kind: TankKind = MOBILE,
) -> ExchangeResult:
    liters = positive_qty(excess_liters, "excess_liters")
    override = optional_density(density)
    mrn = str(source_mrn or "").strip()
    if not mrn:
        raise ValidationError("source_mrn is required")

    cid = repo.new_correlation_id()
    with write_transaction(conn):
        source_tank = repo.get_tank(conn, kind, tank_id)
        source = repo.get_lot(conn, kind, source_lot_id)
        if source.tank_id != source_tank.id:
            raise NotFoundError(f"Customs lot {source_lot_id} not found in {kind.name} tank {tank_id}")
        if source.mrn != mrn:
            raise ValidationError(f"MRN mismatch for lot {source.id}: expected {source.mrn}, got {mrn}")
        if source.remaining_kg != ZERO:
            raise ValidationError(f"Lot {source.id} still holds {source.remaining_kg} kg; only mass-depleted lots can be exchanged")
        if source.remaining_liters < liters:
            raise InsufficientFuelError(
                f"Lot {source.id} holds only {source.remaining_liters} L of excess",
                requested=liters,
                available=source.remaining_liters,
                unit="liters",
            )

        donor = repo.oldest_active_lot_in_active_tanks(
            conn, FIXED, exclude_lot_id=source.id if kind is FIXED else None
        )
        if donor is None:
            logging.warning("No eligible fixed-tank lot to absorb %s L from lot %s (%s)", liters, source.id, mrn)
            raise NoEligibleDonorError("No active fixed-tank lot available to absorb excess fuel")

        applied = override if override is not None else donor.density
        kg = liters_to_kg(liters, applied)

        source_after = repo.update_lot_remaining(conn, source, source.remaining_liters - liters, source.remaining_kg)
        repo.update_lot_remaining(conn, donor, donor.remaining_liters + liters, donor.remaining_kg + kg)
        repo.apply_delta(conn, kind, source_tank.id, -liters, ZERO)
        repo.apply_delta(conn, FIXED, donor.tank_id, liters, kg)

        ts = now_s()
        repo.record_leg(
            conn, kind, source_tank.id, "EXCESS_EXCHANGE_OUT", ZERO, -liters, cid,
            lot=source, density_applied=applied, created_at=ts,
        )
        repo.record_leg(
            conn, FIXED, donor.tank_id, "EXCESS_EXCHANGE_IN", kg, liters, cid,
            lot=donor, density_applied=applied, created_at=ts,
        )
        cur = conn.execute(
            """
            INSERT INTO excess_exchanges
              (correlation_id, source_kind, source_tank_id, source_lot_id, source_mrn,
               target_tank_id, target_lot_id, target_mrn, liters, kg, density, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                cid, kind.name, source_tank.id, source.id, source.mrn,
                donor.tank_id, donor.id, donor.mrn, to_db(liters), to_db(kg), to_db(applied), ts,
            ),
        )
        exchange_id = int(cur.lastrowid)
        repo.log_operation(
            conn,
            "EXCESS_FUEL_EXCHANGE",
            f"Exchanged {liters} L excess from lot {source.mrn} ({kind.name} tank {source_tank.name}) "
            f"into lot {donor.mrn} (fixed tank {donor.tank_id}) as {kg} kg",
            entity_type=kind.entity_type,
            entity_id=source_tank.id,
            details={"exchange_id": exchange_id, "correlation_id": cid, "density": str(applied)},
            state_before={"source_liters": str(source.remaining_liters), "donor_liters": str(donor.remaining_liters),
                          "donor_kg": str(donor.remaining_kg)},
            state_after={"source_liters": str(source_after.remaining_liters),
                         "donor_liters": str(donor.remaining_liters + liters),
                         "donor_kg": str(donor.remaining_kg + kg)},
            quantity_liters=liters,
        )

    logging.info(
        "Excess exchange %s: %s L from lot %s -> lot %s at %s kg/L",
        exchange_id, liters, source.id, donor.id, applied,
    )
    return ExchangeResult(
        exchange_id=exchange_id,
        correlation_id=cid,
        source_kind=kind.name,
        source_tank_id=source_tank.id,
        source_lot_id=source.id,
        source_mrn=source.mrn,
        target_tank_id=donor.tank_id,
        target_lot_id=donor.id,
        target_mrn=donor.mrn,
        liters=liters,
        kg=kg,
        density=applied,
        source_remaining_liters=source_after.remaining_liters,
    )


def sweep_excess_fuel(
    conn: sqlite3.Connection,
    min_excess_liters: Any = EXCESS_SWAP_MIN_LITERS,
    batch_size: int = EXCESS_SWAP_BATCH_SIZE,
    kind: TankKind = MOBILE,
    *,
    retries: int = TX_RETRIES,
) -> Dict[str, Any]:
    """Exchange every mass-depleted lot above the threshold, one transaction each."""
    threshold = qty(min_excess_liters, "min_excess_liters")
    limit = int(batch_size)
    if limit <= 0:
        raise ValidationError("batch_size must be positive")

    outcomes = []
    for lot in repo.list_excess_lots(conn, kind, threshold, limit):
        try:
            res = run_with_retry(
                exchange_excess_fuel, conn, lot.tank_id, lot.id, lot.mrn, lot.remaining_liters,
                kind=kind, retries=retries,
            )
            outcomes.append({"lot_id": lot.id, "mrn": lot.mrn, "success": True, "exchange": res.to_dict()})
        except (LedgerError, sqlite3.Error, InvalidOperation) as e:
            logging.exception("Excess sweep failed for %s lot %s (%s)", kind.name, lot.id, lot.mrn)
            outcomes.append({"lot_id": lot.id, "mrn": lot.mrn, "success": False, "error": str(e)})

    ok = sum(1 for o in outcomes if o["success"])
    logging.info("Excess sweep over %s lots: %d processed, %d exchanged", kind.name, len(outcomes), ok)
    return {
        "processed": len(outcomes),
        "successful": ok,
        "failed": len(outcomes) - ok,
        "results": outcomes,
    }


def _exchange_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": int(row["id"]),
        "correlation_id": row["correlation_id"],
        "source_kind": row["source_kind"],
        "source_tank_id": int(row["source_tank_id"]),
        "source_lot_id": int(row["source_lot_id"]),
        "source_mrn": row["source_mrn"],
        "target_tank_id": int(row["target_tank_id"]),
        "target_lot_id": int(row["target_lot_id"]),
        "target_mrn": row["target_mrn"],
        "liters": as_number(from_db(row["liters"])),
        "kg": as_number(from_db(row["kg"])),
        "density": as_number(from_db(row["density"])),
        "created_at": float(row["created_at"]),
    }


def get_exchange(conn: sqlite3.Connection, exchange_id: int) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM excess_exchanges WHERE id = ?", (int(exchange_id),)).fetchone()
    if not row:
        raise NotFoundError(f"Excess exchange {exchange_id} not found")
    payload = _exchange_row_to_dict(row)
    payload["legs"] = [
        {**leg, "kg": as_number(leg["kg"]), "liters": as_number(leg["liters"]),
         "density_applied": as_number(leg["density_applied"]), "liter_variance": as_number(leg["liter_variance"])}
        for leg in repo.list_legs(conn, correlation_id=row["correlation_id"])
    ]
    return payload


def list_exchanges(
    conn: sqlite3.Connection,
    tank_id: Optional[int] = None,
    kind: Any = None,
    page: int = 1,
    page_size: int = 20,
) -> Dict[str, Any]:
    """Exchange history, newest first.  tank_id filters on the source tank."""
    page = max(1, int(page))
    page_size = max(1, min(int(page_size), 200))

    where = []
    params: List[Any] = []
    if kind is not None:
        where.append("source_kind = ?")
        params.append(tank_kind(kind).name)
    if tank_id is not None:
        where.append("source_tank_id = ?")
        params.append(int(tank_id))
    clause = (" WHERE " + " AND ".join(where)) if where else ""

    total = int(conn.execute(f"SELECT COUNT(*) AS n FROM excess_exchanges{clause}", params).fetchone()["n"])
    rows = conn.execute(
        f"SELECT * FROM excess_exchanges{clause} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
        params + [page_size, (page - 1) * page_size],
    ).fetchall()
    return {
        "items": [_exchange_row_to_dict(r) for r in rows],
        "page": page,
        "page_size": page_size,
        "total": total,
        "pages": (total + page_size - 1) // page_size,
    }
