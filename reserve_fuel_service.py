"""
Reserve fuel service — fuel held back from ordinary issuance.

Reserve entries stay physically in their tank (the tank's cached liters
include them) until dispensed.  Dispensing walks undispensed entries
oldest-first and splits the boundary entry so every row is either wholly
dispensed or wholly available.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from clock_service import iso_utc, now_s
from constants import DEFAULT_DENSITY_KG_PER_L, ZERO
from db import write_transaction
from ledger_errors import InsufficientFuelError
from quantities import as_number, from_db, optional_density, positive_qty, qty, to_db
import tank_repository as repo
from tank_repository import tank_kind


@dataclass
class DispenseResult:
    tank_id: int
    tank_type: str
    requested_liters: Decimal
    dispensed_liters: Decimal = ZERO
    dispensed_kg: Decimal = ZERO
    entries: List[Dict[str, Any]] = field(default_factory=list)
    remaining_available_liters: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tank_id": self.tank_id,
            "tank_type": self.tank_type,
            "requested_liters": as_number(self.requested_liters),
            "dispensed_liters": as_number(self.dispensed_liters),
            "dispensed_kg": as_number(self.dispensed_kg),
            "entries": self.entries,
            "remaining_available_liters": as_number(self.remaining_available_liters),
        }


def _entry_density(row: sqlite3.Row) -> Decimal:
    raw = row["density"]
    return from_db(raw) if raw not in (None, "") else DEFAULT_DENSITY_KG_PER_L


def _entry_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    liters = from_db(row["quantity_liters"])
    return {
        "id": int(row["id"]),
        "tank_id": int(row["tank_id"]),
        "tank_type": row["tank_type"],
        "source_mrn": row["source_mrn"],
        "source_lot_id": row["source_lot_id"],
        "quantity_liters": as_number(liters),
        "quantity_kg": as_number(qty(liters * _entry_density(row))),
        "density": as_number(from_db(row["density"])) if row["density"] else None,
        "is_excess": bool(row["is_excess"]),
        "is_dispensed": bool(row["is_dispensed"]),
        "dispensed_at": iso_utc(row["dispensed_at"]),
        "dispensed_by": row["dispensed_by"],
        "reference_operation_id": row["reference_operation_id"],
        "notes": row["notes"],
        "created_at": float(row["created_at"]),
    }


def _undispensed_rows(conn: sqlite3.Connection, tank_type: str, tank_id: int) -> List[sqlite3.Row]:
    return conn.execute(
        """
        SELECT * FROM reserve_fuel
        WHERE tank_type = ? AND tank_id = ? AND is_dispensed = 0
        ORDER BY created_at ASC, id ASC
        """,
        (tank_type, int(tank_id)),
    ).fetchall()


def insert_reserve_entry(
    conn: sqlite3.Connection,
    tank_id: int,
    tank_type: str,
    quantity_liters: Decimal,
    *,
    source_mrn: Optional[str] = None,
    source_lot_id: Optional[int] = None,
    density: Optional[Decimal] = None,
    is_excess: bool = False,
    notes: Optional[str] = None,
) -> int:
    """Insert an entry inside the caller's transaction.  No validation."""
    cur = conn.execute(
        """
        INSERT INTO reserve_fuel
          (tank_id, tank_type, source_mrn, source_lot_id, quantity_liters, density,
           is_excess, is_dispensed, notes, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
        """,
        (
            int(tank_id), tank_type, source_mrn, source_lot_id, to_db(quantity_liters),
            to_db(density) if density is not None else None,
            1 if is_excess else 0, notes, now_s(),
        ),
    )
    return int(cur.lastrowid)


def set_aside_reserve(
    conn: sqlite3.Connection,
    tank_id: int,
    tank_type: Any,
    quantity_liters: Any,
    *,
    source_mrn: Optional[str] = None,
    source_lot_id: Optional[int] = None,
    density: Any = None,
    is_excess: bool = False,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    kind = tank_kind(tank_type)
    liters = positive_qty(quantity_liters, "quantity_liters")
    d = optional_density(density)

    with write_transaction(conn):
        tank = repo.get_tank(conn, kind, tank_id)
        reserve_id = insert_reserve_entry(
            conn, tank.id, kind.name, liters,
            source_mrn=source_mrn, source_lot_id=source_lot_id,
            density=d, is_excess=is_excess, notes=notes,
        )
        repo.log_operation(
            conn,
            "RESERVE_SET_ASIDE",
            f"Set aside {liters} L reserve in {kind.name} tank {tank.name}",
            entity_type=kind.entity_type,
            entity_id=tank.id,
            details={"reserve_id": reserve_id, "source_mrn": source_mrn, "is_excess": is_excess},
            quantity_liters=liters,
        )
        row = conn.execute("SELECT * FROM reserve_fuel WHERE id = ?", (reserve_id,)).fetchone()

    logging.info("Reserve %s: %s L set aside in %s tank %s", reserve_id, liters, kind.name, tank.id)
    return _entry_to_dict(row)


def dispense_reserve(
    conn: sqlite3.Connection,
    tank_id: int,
    tank_type: Any,
    quantity_liters: Any,
    *,
    dispensed_by: str = "system",
    reference_operation_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> DispenseResult:
    """Dispense reserve liters oldest entry first.

    The boundary entry is split: the original row keeps the remainder and
    a new dispensed row records the part taken.  Only the tank's cached
    liters are decremented.
    """
    kind = tank_kind(tank_type)
    requested = positive_qty(quantity_liters, "quantity_liters")
    who = str(dispensed_by or "").strip() or "system"

    with write_transaction(conn):
        tank = repo.get_tank(conn, kind, tank_id)
        rows = _undispensed_rows(conn, kind.name, tank.id)
        available = sum((from_db(r["quantity_liters"]) for r in rows), ZERO)
        if available < requested:
            logging.warning(
                "Reserve shortfall on %s tank %s: requested %s L, available %s L",
                kind.name, tank.id, requested, available,
            )
            raise InsufficientFuelError(
                f"Insufficient reserve fuel in tank {tank.name}",
                requested=requested,
                available=available,
                unit="liters",
            )

        ts = now_s()
        result = DispenseResult(tank_id=tank.id, tank_type=kind.name, requested_liters=requested)
        outstanding = requested
        for row in rows:
            if outstanding <= ZERO:
                break
            entry_liters = from_db(row["quantity_liters"])
            take = min(outstanding, entry_liters)
            density = _entry_density(row)

            if take == entry_liters:
                conn.execute(
                    """
                    UPDATE reserve_fuel
                    SET is_dispensed = 1, dispensed_at = ?, dispensed_by = ?, reference_operation_id = ?,
                        notes = COALESCE(?, notes)
                    WHERE id = ?
                    """,
                    (ts, who, reference_operation_id, notes, int(row["id"])),
                )
                result.entries.append({"reserve_id": int(row["id"]), "liters": as_number(take), "split": False})
            else:
                conn.execute(
                    "UPDATE reserve_fuel SET quantity_liters = ? WHERE id = ?",
                    (to_db(entry_liters - take), int(row["id"])),
                )
                cur = conn.execute(
                    """
                    INSERT INTO reserve_fuel
                      (tank_id, tank_type, source_mrn, source_lot_id, quantity_liters, density, is_excess,
                       is_dispensed, dispensed_at, dispensed_by, reference_operation_id, notes, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)
                    """,
                    (
                        int(row["tank_id"]), row["tank_type"], row["source_mrn"], row["source_lot_id"],
                        to_db(take), row["density"], int(row["is_excess"]),
                        ts, who, reference_operation_id, notes, ts,
                    ),
                )
                result.entries.append({
                    "reserve_id": int(row["id"]),
                    "dispensed_row_id": int(cur.lastrowid),
                    "liters": as_number(take),
                    "split": True,
                })

            result.dispensed_liters += take
            result.dispensed_kg += qty(take * density)
            outstanding -= take

        before, after = repo.apply_delta(conn, kind, tank.id, -requested, ZERO)
        result.remaining_available_liters = available - requested
        repo.log_operation(
            conn,
            "RESERVE_DISPENSE",
            f"Dispensed {requested} L of reserve fuel from {kind.name} tank {tank.name}",
            entity_type=kind.entity_type,
            entity_id=tank.id,
            details={
                "entries": result.entries,
                "dispensed_by": who,
                "reference_operation_id": reference_operation_id,
            },
            state_before={"current_liters": str(before.current_liters), "reserve_available": str(available)},
            state_after={
                "current_liters": str(after.current_liters),
                "reserve_available": str(result.remaining_available_liters),
            },
            quantity_liters=requested,
        )

    logging.info("Reserve dispense: %s L from %s tank %s by %s", requested, kind.name, tank.id, who)
    return result


def list_reserve(conn: sqlite3.Connection, tank_id: int, tank_type: Any) -> Dict[str, Any]:
    kind = tank_kind(tank_type)
    tank = repo.get_tank(conn, kind, tank_id)
    rows = conn.execute(
        "SELECT * FROM reserve_fuel WHERE tank_type = ? AND tank_id = ? ORDER BY created_at ASC, id ASC",
        (kind.name, tank.id),
    ).fetchall()

    available_liters = ZERO
    available_kg = ZERO
    dispensed_liters = ZERO
    undispensed = 0
    for r in rows:
        liters = from_db(r["quantity_liters"])
        if int(r["is_dispensed"]):
            dispensed_liters += liters
        else:
            undispensed += 1
            available_liters += liters
            available_kg += qty(liters * _entry_density(r))

    return {
        "tank_id": tank.id,
        "tank_type": kind.name,
        "tank_name": tank.name,
        "entries": [_entry_to_dict(r) for r in rows],
        "summary": {
            "available_liters": as_number(available_liters),
            "available_kg": as_number(available_kg),
            "dispensed_liters": as_number(dispensed_liters),
            "entry_count": len(rows),
            "undispensed_count": undispensed,
        },
    }


def reserve_summary(conn: sqlite3.Connection) -> Dict[str, Any]:
    rows = conn.execute(
        "SELECT * FROM reserve_fuel WHERE is_dispensed = 0 ORDER BY tank_type, tank_id, created_at, id"
    ).fetchall()

    per_type: Dict[str, Dict[str, Any]] = {}
    per_tank: Dict[tuple, Dict[str, Any]] = {}
    total_liters = ZERO
    total_kg = ZERO
    for r in rows:
        liters = from_db(r["quantity_liters"])
        kg = qty(liters * _entry_density(r))
        total_liters += liters
        total_kg += kg

        t = per_type.setdefault(r["tank_type"], {"liters": ZERO, "kg": ZERO, "count": 0})
        t["liters"] += liters
        t["kg"] += kg
        t["count"] += 1

        key = (r["tank_type"], int(r["tank_id"]))
        k = per_tank.setdefault(key, {"liters": ZERO, "kg": ZERO, "count": 0, "excess_count": 0})
        k["liters"] += liters
        k["kg"] += kg
        k["count"] += 1
        if int(r["is_excess"]):
            k["excess_count"] += 1

    return {
        "per_tank_type": {
            name: {"liters": as_number(v["liters"]), "kg": as_number(v["kg"]), "count": v["count"]}
            for name, v in per_type.items()
        },
        "tanks": [
            {
                "tank_type": tank_type,
                "tank_id": tank_id,
                "liters": as_number(v["liters"]),
                "kg": as_number(v["kg"]),
                "count": v["count"],
                "excess_count": v["excess_count"],
            }
            for (tank_type, tank_id), v in per_tank.items()
        ],
        "total": {"liters": as_number(total_liters), "kg": as_number(total_kg), "count": len(rows)},
    }
