"""
FIFO service — lot-creating and lot-consuming events.

Handles:
  - allocate_fifo: remove a quantity (kg or liters) from a tank's active
    lots oldest-first, returning one leg per lot touched
  - receive_intake: create or top up a customs lot
  - transfer_fuel: move liters between tanks, carrying MRN and intake
    density with each portion
  - reverse_drain: return filtered fuel from a drain to the lots it came from

All of them run under one write transaction; a failure leaves no lot, leg
or tank change behind.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from clock_service import now_s
from constants import CONSUMING_LEG_TYPES, QUANTITY_UNITS, ZERO
from db import write_transaction
from density_service import kg_to_liters, liters_to_kg
from ledger_errors import InsufficientFuelError, NotFoundError, ValidationError
from quantities import as_number, dens, from_db, optional_density, positive_qty, qty, to_db
from reserve_fuel_service import insert_reserve_entry
import tank_repository as repo
from tank_repository import FIXED, MOBILE, Lot, TankKind


@dataclass
class AllocationLeg:
    lot_id: int
    mrn: str
    kg: Decimal
    liters: Decimal
    density_applied: Decimal
    liter_variance: Decimal
    lot_remaining_kg: Decimal
    lot_remaining_liters: Decimal
    received_at: float
    intake_density: Decimal
    leg_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leg_id": self.leg_id,
            "lot_id": self.lot_id,
            "mrn": self.mrn,
            "kg": as_number(self.kg),
            "liters": as_number(self.liters),
            "density_applied": as_number(self.density_applied),
            "liter_variance": as_number(self.liter_variance),
            "lot_remaining_kg": as_number(self.lot_remaining_kg),
            "lot_remaining_liters": as_number(self.lot_remaining_liters),
        }


@dataclass
class AllocationResult:
    correlation_id: str
    tank_id: int
    kind: TankKind
    unit: str
    requested: Decimal
    legs: List[AllocationLeg] = field(default_factory=list)
    total_kg: Decimal = ZERO
    total_liters: Decimal = ZERO
    excess: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "tank_id": self.tank_id,
            "kind": self.kind.name,
            "unit": self.unit,
            "requested": as_number(self.requested),
            "legs": [leg.to_dict() for leg in self.legs],
            "total_kg": as_number(self.total_kg),
            "total_liters": as_number(self.total_liters),
            "excess": self.excess,
        }


def _check_unit(unit: str) -> str:
    u = str(unit or "").strip().lower()
    if u not in QUANTITY_UNITS:
        raise ValidationError("unit must be 'kg' or 'liters'")
    return u


def _take_from_lot(lot: Lot, take: Decimal, unit: str, op_density: Optional[Decimal]):
    """(kg, liters, variance) removed from a lot for a take of `take` in `unit`.

    The other unit is converted at the operational density when given, else
    at the lot's intake density.  Neither unit is driven below zero.  The
    variance is the liters actually removed minus the liters the mass
    corresponds to at the applied density, so a shortfall is negative.
    """
    density = op_density if op_density is not None else lot.density
    full = take == lot.remaining(unit)

    if unit == "kg":
        take_kg = take
        if full and op_density is None:
            take_liters = lot.remaining_liters
        else:
            take_liters = min(kg_to_liters(take_kg, density), lot.remaining_liters)
    else:
        take_liters = take
        if full and op_density is None:
            take_kg = lot.remaining_kg
        else:
            take_kg = min(liters_to_kg(take_liters, density), lot.remaining_kg)

    variance = take_liters - kg_to_liters(take_kg, density)
    return take_kg, take_liters, variance


def _handle_excess(
    conn: sqlite3.Connection, kind: TankKind, tank_id: int, lot: Lot, leg_type: str, correlation_id: str
) -> Dict[str, Any]:
    """Deal with liters left on a lot whose mass is gone.

    Fixed tanks move them to an excess reserve entry and record the lot-side
    removal as an EXCESS_TO_RESERVE leg.  Mobile lots keep them until the
    exchange sweep picks them up.
    """
    excess_liters = lot.remaining_liters
    logging.warning(
        "Lot %s (%s) in %s tank %s depleted by mass with %s L left over",
        lot.id, lot.mrn, kind.name, tank_id, excess_liters,
    )
    excess = {
        "lot_id": lot.id,
        "mrn": lot.mrn,
        "tank_id": tank_id,
        "kind": kind.name,
        "liters": as_number(excess_liters),
    }
    if kind is not FIXED:
        excess["handled"] = "exchange_pending"
        return excess

    reserve_id = insert_reserve_entry(
        conn, tank_id, kind.name, excess_liters,
        source_mrn=lot.mrn, source_lot_id=lot.id, density=lot.density,
        is_excess=True, notes=f"Excess liters from {leg_type} {correlation_id}",
    )
    repo.update_lot_remaining(conn, lot, ZERO, ZERO)
    leg_id = repo.record_leg(
        conn, kind, tank_id, "EXCESS_TO_RESERVE", ZERO, -excess_liters, correlation_id,
        lot=lot, density_applied=lot.density,
    )
    excess.update({"handled": "reserve", "reserve_id": reserve_id, "leg_id": leg_id})
    return excess


def _allocate_locked(
    conn: sqlite3.Connection,
    kind: TankKind,
    tank_id: int,
    requested: Decimal,
    unit: str,
    op_density: Optional[Decimal],
    leg_type: str,
    correlation_id: str,
) -> AllocationResult:
    """Allocation body.  Caller holds the write transaction."""
    tank = repo.get_tank(conn, kind, tank_id)
    lots = repo.list_active_lots(conn, kind, tank.id)
    available = sum((lot.remaining(unit) for lot in lots), ZERO)
    if available < requested:
        logging.warning(
            "Insufficient fuel in %s tank %s: requested %s %s, available %s %s",
            kind.name, tank.id, requested, unit, available, unit,
        )
        raise InsufficientFuelError(
            f"Insufficient fuel in tank {tank.name}",
            requested=requested,
            available=available,
            unit=unit,
        )

    result = AllocationResult(
        correlation_id=correlation_id, tank_id=tank.id, kind=kind, unit=unit, requested=requested
    )
    outstanding = requested
    for lot in lots:
        if outstanding <= ZERO:
            break
        take = min(outstanding, lot.remaining(unit))
        if take <= ZERO:
            continue

        take_kg, take_liters, variance = _take_from_lot(lot, take, unit, op_density)
        updated = repo.update_lot_remaining(
            conn, lot, lot.remaining_liters - take_liters, lot.remaining_kg - take_kg
        )

        leg = AllocationLeg(
            lot_id=lot.id,
            mrn=lot.mrn,
            kg=take_kg,
            liters=take_liters,
            density_applied=op_density if op_density is not None else lot.density,
            liter_variance=variance,
            lot_remaining_kg=updated.remaining_kg,
            lot_remaining_liters=updated.remaining_liters,
            received_at=lot.received_at,
            intake_density=lot.density,
        )
        leg.leg_id = repo.record_leg(
            conn, kind, tank.id, leg_type, -take_kg, -take_liters, correlation_id,
            lot=lot, density_applied=leg.density_applied, liter_variance=variance,
        )
        result.legs.append(leg)
        result.total_kg += take_kg
        result.total_liters += take_liters
        outstanding -= take

        # Mass ran out before volume, whichever unit was requested.
        if updated.has_excess_liters:
            result.excess.append(_handle_excess(conn, kind, tank.id, updated, leg_type, correlation_id))

    before, after = repo.apply_delta(conn, kind, tank.id, -result.total_liters, -result.total_kg)
    repo.log_operation(
        conn,
        f"FIFO_{leg_type}",
        f"{leg_type} of {requested} {unit} from {kind.name} tank {tank.name} across {len(result.legs)} lot(s)",
        entity_type=kind.entity_type,
        entity_id=tank.id,
        details={"correlation_id": correlation_id, "legs": [leg.to_dict() for leg in result.legs], "excess": result.excess},
        state_before={"current_kg": str(before.current_kg), "current_liters": str(before.current_liters)},
        state_after={"current_kg": str(after.current_kg), "current_liters": str(after.current_liters)},
        quantity_liters=result.total_liters,
    )
    return result


def allocate_fifo(
    conn: sqlite3.Connection,
    tank_id: int,
    requested_quantity: Any,
    *,
    kind: TankKind = FIXED,
    unit: str = "kg",
    operational_density: Any = None,
    transaction_type: str = "FUELING",
    correlation_id: Optional[str] = None,
) -> AllocationResult:
    u = _check_unit(unit)
    requested = positive_qty(requested_quantity, "requested_quantity")
    op_density = optional_density(operational_density, "operational_density")
    leg_type = str(transaction_type or "").strip().upper()
    if leg_type not in CONSUMING_LEG_TYPES:
        raise ValidationError(f"transaction_type must be one of {sorted(CONSUMING_LEG_TYPES)}")
    cid = correlation_id or repo.new_correlation_id()

    with write_transaction(conn):
        result = _allocate_locked(conn, kind, tank_id, requested, u, op_density, leg_type, cid)

    logging.info(
        "%s %s: %s %s from %s tank %s in %d leg(s)",
        leg_type, cid, requested, u, kind.name, tank_id, len(result.legs),
    )
    return result


def receive_intake(
    conn: sqlite3.Connection,
    tank_id: int,
    mrn: str,
    quantity_liters: Any,
    *,
    kind: TankKind = FIXED,
    density: Any = None,
    quantity_kg: Any = None,
    received_at: Optional[float] = None,
    supplier: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Receive fuel under an MRN.  A repeated MRN in the same tank tops the lot up."""
    clean_mrn = str(mrn or "").strip()
    if not clean_mrn:
        raise ValidationError("mrn is required")
    liters = positive_qty(quantity_liters, "quantity_liters")
    d = optional_density(density)
    if d is None and quantity_kg is None:
        raise ValidationError("density or quantity_kg is required")
    kg = positive_qty(quantity_kg, "quantity_kg") if quantity_kg is not None else liters_to_kg(liters, d)
    if d is None:
        d = dens(kg / liters)

    cid = repo.new_correlation_id()
    with write_transaction(conn):
        tank = repo.get_tank(conn, kind, tank_id)
        if tank.status != "active":
            raise ValidationError(f"Tank {tank.name} is not active")

        existing = repo.find_lot_by_mrn(conn, kind, tank.id, clean_mrn)
        if existing is not None:
            lot = repo.top_up_lot(conn, existing, liters, kg)
        else:
            lot = repo.insert_lot(
                conn, kind, tank.id, clean_mrn, liters, kg, d,
                received_at=received_at, supplier=supplier, notes=notes,
            )
        repo.record_leg(
            conn, kind, tank.id, "INTAKE", kg, liters, cid, lot=lot, density_applied=d,
            liter_variance=liters - kg_to_liters(kg, lot.density),
        )
        before, after = repo.apply_delta(conn, kind, tank.id, liters, kg, enforce_capacity=True)
        repo.log_operation(
            conn,
            "INTAKE",
            f"Received {liters} L / {kg} kg under MRN {clean_mrn} into {kind.name} tank {tank.name}",
            entity_type=kind.entity_type,
            entity_id=tank.id,
            details={"lot_id": lot.id, "mrn": clean_mrn, "density": str(d), "topped_up": existing is not None},
            state_before={"current_kg": str(before.current_kg), "current_liters": str(before.current_liters)},
            state_after={"current_kg": str(after.current_kg), "current_liters": str(after.current_liters)},
            quantity_liters=liters,
        )

    logging.info("Intake %s: %s L MRN %s into %s tank %s", cid, liters, clean_mrn, kind.name, tank.id)
    return {"correlation_id": cid, "lot": lot.to_dict(), "tank": after.to_dict(), "topped_up": existing is not None}


def transfer_fuel(
    conn: sqlite3.Connection,
    source_id: int,
    dest_id: int,
    quantity_liters: Any,
    *,
    source_kind: TankKind = FIXED,
    dest_kind: TankKind = MOBILE,
) -> Dict[str, Any]:
    liters = positive_qty(quantity_liters, "quantity_liters")
    if source_kind is dest_kind and int(source_id) == int(dest_id):
        raise ValidationError("Source and destination tank must differ")

    cid = repo.new_correlation_id()
    with write_transaction(conn):
        dest = repo.get_tank(conn, dest_kind, dest_id)
        if dest.status != "active":
            raise ValidationError(f"Tank {dest.name} is not active")
        if dest.current_liters + liters > dest.capacity_liters:
            raise ValidationError(
                f"Tank {dest.name} capacity exceeded: {dest.current_liters + liters} L > {dest.capacity_liters} L"
            )

        out = _allocate_locked(conn, source_kind, source_id, liters, "liters", None, "TRANSFER_OUT", cid)

        moved = []
        for leg in out.legs:
            existing = repo.find_lot_by_mrn(conn, dest_kind, dest.id, leg.mrn)
            if existing is not None:
                lot = repo.top_up_lot(conn, existing, leg.liters, leg.kg)
            else:
                lot = repo.insert_lot(
                    conn, dest_kind, dest.id, leg.mrn, leg.liters, leg.kg, leg.intake_density,
                    received_at=leg.received_at, notes=f"Transferred from {source_kind.name} tank {source_id}",
                )
            repo.record_leg(
                conn, dest_kind, dest.id, "TRANSFER_IN", leg.kg, leg.liters, cid,
                lot=lot, density_applied=leg.intake_density,
            )
            moved.append({"mrn": leg.mrn, "source_lot_id": leg.lot_id, "dest_lot_id": lot.id,
                          "liters": as_number(leg.liters), "kg": as_number(leg.kg)})

        _, dest_after = repo.apply_delta(conn, dest_kind, dest.id, out.total_liters, out.total_kg, enforce_capacity=True)
        repo.log_operation(
            conn,
            "TRANSFER",
            f"Transferred {liters} L from {source_kind.name} tank {source_id} to {dest_kind.name} tank {dest.name}",
            entity_type=dest_kind.entity_type,
            entity_id=dest.id,
            details={"correlation_id": cid, "portions": moved},
            quantity_liters=liters,
        )

    logging.info(
        "Transfer %s: %s L %s tank %s -> %s tank %s (%d lot portion(s))",
        cid, liters, source_kind.name, source_id, dest_kind.name, dest.id, len(moved),
    )
    return {
        "correlation_id": cid,
        "quantity_liters": as_number(liters),
        "total_kg": as_number(qty(out.total_kg)),
        "portions": moved,
        "source": out.to_dict(),
        "destination": dest_after.to_dict(),
    }


def _reversed_liters(conn: sqlite3.Connection, drain_correlation_id: str) -> Decimal:
    rows = conn.execute(
        "SELECT liters FROM drain_reversals WHERE drain_correlation_id = ?", (drain_correlation_id,)
    ).fetchall()
    return sum((from_db(r["liters"]) for r in rows), ZERO)


def _credit_lot(
    conn: sqlite3.Connection, dest_kind: TankKind, dest_id: int, leg: Dict[str, Any], liters: Decimal, kg: Decimal
) -> Lot:
    """Put drained fuel back on the lot it came from, else on a lot of the same MRN."""
    source_kind = repo.tank_kind(leg["lot_kind"])
    source = repo.get_lot(conn, source_kind, leg["lot_id"])
    if source_kind is dest_kind and source.tank_id == int(dest_id):
        return repo.update_lot_remaining(conn, source, source.remaining_liters + liters, source.remaining_kg + kg)

    existing = repo.find_lot_by_mrn(conn, dest_kind, dest_id, source.mrn)
    if existing is not None:
        return repo.top_up_lot(conn, existing, liters, kg)
    return repo.insert_lot(
        conn, dest_kind, dest_id, source.mrn, liters, kg, source.density,
        received_at=source.received_at, notes=f"Returned from drain {leg['correlation_id']}",
    )


def reverse_drain(
    conn: sqlite3.Connection,
    drain_correlation_id: str,
    quantity_liters: Any,
    *,
    dest_kind: Optional[TankKind] = None,
    dest_tank_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Return filtered fuel from an earlier drain to a tank.

    The returned liters are split over the drained lots in proportion to
    what each one gave up, so every portion keeps its MRN.  Repeated
    reversals of one drain can never return more than was drained.
    """
    liters = positive_qty(quantity_liters, "quantity_liters")
    cid = repo.new_correlation_id()

    with write_transaction(conn):
        drained_legs = [
            leg for leg in repo.list_legs(conn, correlation_id=drain_correlation_id) if leg["leg_type"] == "DRAIN"
        ]
        if not drained_legs:
            raise NotFoundError(f"Drain {drain_correlation_id} not found")

        kind = dest_kind or repo.tank_kind(drained_legs[0]["lot_kind"])
        tank_id = int(dest_tank_id) if dest_tank_id is not None else drained_legs[0]["tank_id"]
        dest = repo.get_tank(conn, kind, tank_id)
        if dest.status != "active":
            raise ValidationError(f"Tank {dest.name} is not active")

        drained_liters = sum((abs(leg["liters"]) for leg in drained_legs), ZERO)
        drained_kg = sum((abs(leg["kg"]) for leg in drained_legs), ZERO)
        reversible = drained_liters - _reversed_liters(conn, drain_correlation_id)
        if liters > reversible:
            raise ValidationError(
                f"Cannot return {liters} L from drain {drain_correlation_id}: only {reversible} L left to return"
            )

        total_kg = qty(drained_kg * liters / drained_liters)
        portions = []
        credited_liters = ZERO
        credited_kg = ZERO
        for i, leg in enumerate(drained_legs):
            if i == len(drained_legs) - 1:
                part_liters = liters - credited_liters
                part_kg = total_kg - credited_kg
            else:
                part_liters = qty(abs(leg["liters"]) * liters / drained_liters)
                part_kg = qty(abs(leg["kg"]) * liters / drained_liters)
            if part_liters <= ZERO and part_kg <= ZERO:
                continue

            lot = _credit_lot(conn, kind, dest.id, leg, part_liters, part_kg)
            repo.record_leg(
                conn, kind, dest.id, "DRAIN_REVERSAL", part_kg, part_liters, cid,
                lot=lot, density_applied=leg["density_applied"],
            )
            portions.append({"mrn": lot.mrn, "lot_id": lot.id, "liters": as_number(part_liters), "kg": as_number(part_kg)})
            credited_liters += part_liters
            credited_kg += part_kg

        before, after = repo.apply_delta(conn, kind, dest.id, liters, total_kg, enforce_capacity=True)
        conn.execute(
            """
            INSERT INTO drain_reversals
              (correlation_id, drain_correlation_id, tank_kind, tank_id, liters, kg, notes, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (cid, drain_correlation_id, kind.name, dest.id, to_db(liters), to_db(total_kg), notes, now_s()),
        )
        repo.log_operation(
            conn,
            "DRAIN_REVERSAL",
            f"Returned {liters} L from drain {drain_correlation_id} to {kind.name} tank {dest.name}",
            entity_type=kind.entity_type,
            entity_id=dest.id,
            details={"correlation_id": cid, "drain_correlation_id": drain_correlation_id,
                     "portions": portions, "notes": notes},
            state_before={"current_kg": str(before.current_kg), "current_liters": str(before.current_liters)},
            state_after={"current_kg": str(after.current_kg), "current_liters": str(after.current_liters)},
            quantity_liters=liters,
        )

    logging.info(
        "Drain reversal %s: %s L of drain %s back to %s tank %s (%d portion(s))",
        cid, liters, drain_correlation_id, kind.name, dest.id, len(portions),
    )
    return {
        "correlation_id": cid,
        "drain_correlation_id": drain_correlation_id,
        "quantity_liters": as_number(liters),
        "total_kg": as_number(total_kg),
        "portions": portions,
        "tank": after.to_dict(),
        "remaining_reversible_liters": as_number(reversible - liters),
    }
