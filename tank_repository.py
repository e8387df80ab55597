"""
Lot store — persisted tanks, customs lots, transaction legs and the
operation log.

Tank kind is a closed variant: FIXED and MOBILE each carry their own table
mapping, and everything above this module goes through the shared
capability functions (apply_delta, list_active_lots, ...) instead of
branching on a kind string.
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from clock_service import now_s
from constants import LEG_TYPES, ZERO
from ledger_errors import NotFoundError, ValidationError
from quantities import as_number, from_db, to_db


@dataclass(frozen=True)
class TankKind:
    name: str
    tank_table: str
    lot_table: str
    entity_type: str


FIXED = TankKind("fixed", "fixed_tanks", "fixed_tank_lots", "FixedStorageTank")
MOBILE = TankKind("mobile", "mobile_tanks", "mobile_tank_lots", "MobileTank")

TANK_KINDS: Dict[str, TankKind] = {FIXED.name: FIXED, MOBILE.name: MOBILE}


def tank_kind(raw: Any) -> TankKind:
    if isinstance(raw, TankKind):
        return raw
    key = str(raw or "").strip().lower()
    kind = TANK_KINDS.get(key)
    if kind is None:
        raise ValidationError("tank kind must be 'fixed' or 'mobile'")
    return kind


@dataclass(frozen=True)
class Tank:
    id: int
    kind: TankKind
    name: str
    fuel_type: str
    capacity_liters: Decimal
    current_liters: Decimal
    current_kg: Decimal
    status: str
    location: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.name,
            "name": self.name,
            "fuel_type": self.fuel_type,
            "capacity_liters": as_number(self.capacity_liters),
            "current_liters": as_number(self.current_liters),
            "current_kg": as_number(self.current_kg),
            "status": self.status,
            "location": self.location,
        }


@dataclass(frozen=True)
class Lot:
    id: int
    kind: TankKind
    tank_id: int
    mrn: str
    quantity_liters: Decimal
    quantity_kg: Decimal
    remaining_liters: Decimal
    remaining_kg: Decimal
    density: Decimal
    received_at: float
    supplier: Optional[str]
    notes: Optional[str]

    @property
    def is_active(self) -> bool:
        return self.remaining_kg > ZERO

    @property
    def has_excess_liters(self) -> bool:
        return self.remaining_kg == ZERO and self.remaining_liters > ZERO

    def remaining(self, unit: str) -> Decimal:
        return self.remaining_kg if unit == "kg" else self.remaining_liters

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.name,
            "tank_id": self.tank_id,
            "mrn": self.mrn,
            "quantity_liters": as_number(self.quantity_liters),
            "quantity_kg": as_number(self.quantity_kg),
            "remaining_liters": as_number(self.remaining_liters),
            "remaining_kg": as_number(self.remaining_kg),
            "density_at_intake": as_number(self.density),
            "received_at": self.received_at,
            "supplier": self.supplier,
            "notes": self.notes,
        }


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, default=str)


def new_correlation_id() -> str:
    return str(uuid.uuid4())


# ── Tanks ──────────────────────────────────────────────────────────────────────


def _tank_from_row(kind: TankKind, row: sqlite3.Row) -> Tank:
    return Tank(
        id=int(row["id"]),
        kind=kind,
        name=str(row["name"]),
        fuel_type=str(row["fuel_type"]),
        capacity_liters=from_db(row["capacity_liters"]),
        current_liters=from_db(row["current_liters"]),
        current_kg=from_db(row["current_kg"]),
        status=str(row["status"]),
        location=row["location"],
    )


def create_tank(
    conn: sqlite3.Connection,
    kind: TankKind,
    name: str,
    capacity_liters: Decimal,
    *,
    fuel_type: str = "JET A-1",
    location: Optional[str] = None,
    status: str = "active",
) -> Tank:
    clean_name = str(name or "").strip()
    if not clean_name:
        raise ValidationError("Tank name is required")
    if capacity_liters <= ZERO:
        raise ValidationError("capacity_liters must be greater than zero")
    cur = conn.execute(
        f"""
        INSERT INTO {kind.tank_table}
          (name, fuel_type, capacity_liters, current_liters, current_kg, status, location, created_at)
        VALUES (?, ?, ?, '0', '0', ?, ?, ?)
        """,
        (clean_name, fuel_type, to_db(capacity_liters), status, location, now_s()),
    )
    return get_tank(conn, kind, int(cur.lastrowid))


def get_tank(conn: sqlite3.Connection, kind: TankKind, tank_id: int) -> Tank:
    row = conn.execute(f"SELECT * FROM {kind.tank_table} WHERE id = ?", (int(tank_id),)).fetchone()
    if not row:
        raise NotFoundError(f"{kind.name.capitalize()} tank {tank_id} not found")
    return _tank_from_row(kind, row)


def list_tanks(conn: sqlite3.Connection, kind: TankKind, status: Optional[str] = None) -> List[Tank]:
    if status:
        rows = conn.execute(
            f"SELECT * FROM {kind.tank_table} WHERE status = ? ORDER BY id", (status,)
        ).fetchall()
    else:
        rows = conn.execute(f"SELECT * FROM {kind.tank_table} ORDER BY id").fetchall()
    return [_tank_from_row(kind, r) for r in rows]


def set_tank_quantities(
    conn: sqlite3.Connection, kind: TankKind, tank_id: int, liters: Decimal, kg: Decimal
) -> None:
    conn.execute(
        f"UPDATE {kind.tank_table} SET current_liters = ?, current_kg = ? WHERE id = ?",
        (to_db(liters), to_db(kg), int(tank_id)),
    )


def apply_delta(
    conn: sqlite3.Connection,
    kind: TankKind,
    tank_id: int,
    delta_liters: Decimal,
    delta_kg: Decimal,
    *,
    enforce_capacity: bool = False,
) -> Tuple[Tank, Tank]:
    """Add a signed delta to a tank's cached totals.  Returns (before, after).

    The cache is never written below zero: a decrement larger than the cache
    means it has already drifted, which is logged and left for
    reconciliation to repair.
    """
    before = get_tank(conn, kind, tank_id)
    new_liters = before.current_liters + delta_liters
    new_kg = before.current_kg + delta_kg

    if enforce_capacity and delta_liters > ZERO and new_liters > before.capacity_liters:
        raise ValidationError(
            f"Tank {before.name} capacity exceeded: {new_liters} L > {before.capacity_liters} L"
        )
    if new_liters < ZERO or new_kg < ZERO:
        logging.warning(
            "%s tank %s cache would go negative (%s L / %s kg); clamping to zero, reconciliation is due",
            kind.name, tank_id, new_liters, new_kg,
        )
        new_liters = max(new_liters, ZERO)
        new_kg = max(new_kg, ZERO)

    set_tank_quantities(conn, kind, tank_id, new_liters, new_kg)
    after = Tank(**{**before.__dict__, "current_liters": new_liters, "current_kg": new_kg})
    return before, after


# ── Lots ───────────────────────────────────────────────────────────────────────


def _lot_from_row(kind: TankKind, row: sqlite3.Row) -> Lot:
    return Lot(
        id=int(row["id"]),
        kind=kind,
        tank_id=int(row["tank_id"]),
        mrn=str(row["mrn"]),
        quantity_liters=from_db(row["quantity_liters"]),
        quantity_kg=from_db(row["quantity_kg"]),
        remaining_liters=from_db(row["remaining_liters"]),
        remaining_kg=from_db(row["remaining_kg"]),
        density=from_db(row["density_at_intake"]),
        received_at=float(row["received_at"]),
        supplier=row["supplier"],
        notes=row["notes"],
    )


def get_lot(conn: sqlite3.Connection, kind: TankKind, lot_id: int) -> Lot:
    row = conn.execute(f"SELECT * FROM {kind.lot_table} WHERE id = ?", (int(lot_id),)).fetchone()
    if not row:
        raise NotFoundError(f"Customs lot {lot_id} not found")
    return _lot_from_row(kind, row)


def find_lot_by_mrn(conn: sqlite3.Connection, kind: TankKind, tank_id: int, mrn: str) -> Optional[Lot]:
    row = conn.execute(
        f"SELECT * FROM {kind.lot_table} WHERE tank_id = ? AND mrn = ?",
        (int(tank_id), mrn),
    ).fetchone()
    return _lot_from_row(kind, row) if row else None


def list_lots(conn: sqlite3.Connection, kind: TankKind, tank_id: int) -> List[Lot]:
    """All lots of a tank in FIFO order, depleted ones included."""
    rows = conn.execute(
        f"SELECT * FROM {kind.lot_table} WHERE tank_id = ? ORDER BY received_at ASC, id ASC",
        (int(tank_id),),
    ).fetchall()
    return [_lot_from_row(kind, r) for r in rows]


def list_active_lots(conn: sqlite3.Connection, kind: TankKind, tank_id: int) -> List[Lot]:
    """Lots with remaining mass, oldest intake first, ties broken by id."""
    rows = conn.execute(
        f"""
        SELECT * FROM {kind.lot_table}
        WHERE tank_id = ? AND CAST(remaining_kg AS REAL) > 0
        ORDER BY received_at ASC, id ASC
        """,
        (int(tank_id),),
    ).fetchall()
    return [lot for lot in (_lot_from_row(kind, r) for r in rows) if lot.is_active]


def list_excess_lots(conn: sqlite3.Connection, kind: TankKind, min_liters: Decimal, limit: int) -> List[Lot]:
    """Lots with zero mass but volume above min_liters, oldest first, across all tanks."""
    rows = conn.execute(
        f"""
        SELECT * FROM {kind.lot_table}
        WHERE CAST(remaining_kg AS REAL) <= 0 AND CAST(remaining_liters AS REAL) > 0
        ORDER BY received_at ASC, id ASC
        """
    ).fetchall()
    found = []
    for row in rows:
        lot = _lot_from_row(kind, row)
        if lot.has_excess_liters and lot.remaining_liters > min_liters:
            found.append(lot)
            if len(found) >= limit:
                break
    return found


def oldest_active_lot_in_active_tanks(
    conn: sqlite3.Connection, kind: TankKind, exclude_lot_id: Optional[int] = None
) -> Optional[Lot]:
    rows = conn.execute(
        f"""
        SELECT l.* FROM {kind.lot_table} l
        JOIN {kind.tank_table} t ON t.id = l.tank_id
        WHERE t.status = 'active' AND CAST(l.remaining_kg AS REAL) > 0
        ORDER BY l.received_at ASC, l.id ASC
        """
    ).fetchall()
    for row in rows:
        lot = _lot_from_row(kind, row)
        if lot.is_active and lot.id != exclude_lot_id:
            return lot
    return None


def sum_active_lots(conn: sqlite3.Connection, kind: TankKind, tank_id: int) -> Tuple[Decimal, Decimal, int]:
    """(kg, liters, count) summed over the tank's active lots."""
    total_kg = ZERO
    total_liters = ZERO
    lots = list_active_lots(conn, kind, tank_id)
    for lot in lots:
        total_kg += lot.remaining_kg
        total_liters += lot.remaining_liters
    return total_kg, total_liters, len(lots)


def insert_lot(
    conn: sqlite3.Connection,
    kind: TankKind,
    tank_id: int,
    mrn: str,
    liters: Decimal,
    kg: Decimal,
    density: Decimal,
    *,
    received_at: Optional[float] = None,
    supplier: Optional[str] = None,
    notes: Optional[str] = None,
) -> Lot:
    ts = now_s()
    cur = conn.execute(
        f"""
        INSERT INTO {kind.lot_table}
          (tank_id, mrn, quantity_liters, quantity_kg, remaining_liters, remaining_kg,
           density_at_intake, received_at, supplier, notes, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            int(tank_id), mrn, to_db(liters), to_db(kg), to_db(liters), to_db(kg),
            to_db(density), received_at if received_at is not None else ts,
            supplier, notes, ts, ts,
        ),
    )
    return get_lot(conn, kind, int(cur.lastrowid))


def top_up_lot(conn: sqlite3.Connection, lot: Lot, liters: Decimal, kg: Decimal) -> Lot:
    """Add a further intake of the same MRN to an existing lot.  Intake density is kept."""
    conn.execute(
        f"""
        UPDATE {lot.kind.lot_table}
        SET quantity_liters = ?, quantity_kg = ?, remaining_liters = ?, remaining_kg = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            to_db(lot.quantity_liters + liters),
            to_db(lot.quantity_kg + kg),
            to_db(lot.remaining_liters + liters),
            to_db(lot.remaining_kg + kg),
            now_s(),
            lot.id,
        ),
    )
    return get_lot(conn, lot.kind, lot.id)


def update_lot_remaining(conn: sqlite3.Connection, lot: Lot, remaining_liters: Decimal, remaining_kg: Decimal) -> Lot:
    if remaining_liters < ZERO or remaining_kg < ZERO:
        raise ValidationError(
            f"Lot {lot.id} ({lot.mrn}) would go negative: {remaining_liters} L / {remaining_kg} kg"
        )
    conn.execute(
        f"UPDATE {lot.kind.lot_table} SET remaining_liters = ?, remaining_kg = ?, updated_at = ? WHERE id = ?",
        (to_db(remaining_liters), to_db(remaining_kg), now_s(), lot.id),
    )
    return Lot(**{**lot.__dict__, "remaining_liters": remaining_liters, "remaining_kg": remaining_kg})


# ── Transaction legs ───────────────────────────────────────────────────────────


def record_leg(
    conn: sqlite3.Connection,
    kind: TankKind,
    tank_id: int,
    leg_type: str,
    kg: Decimal,
    liters: Decimal,
    correlation_id: str,
    *,
    lot: Optional[Lot] = None,
    density_applied: Optional[Decimal] = None,
    liter_variance: Decimal = ZERO,
    created_at: Optional[float] = None,
) -> int:
    if leg_type not in LEG_TYPES:
        raise ValidationError(f"Unknown leg type {leg_type!r}")
    cur = conn.execute(
        """
        INSERT INTO transaction_legs
          (lot_kind, lot_id, tank_id, mrn, leg_type, kg, liters, density_applied,
           liter_variance, correlation_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            kind.name,
            lot.id if lot else None,
            int(tank_id),
            lot.mrn if lot else None,
            leg_type,
            to_db(kg),
            to_db(liters),
            to_db(density_applied) if density_applied is not None else None,
            to_db(liter_variance),
            correlation_id,
            created_at if created_at is not None else now_s(),
        ),
    )
    return int(cur.lastrowid)


def _leg_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": int(row["id"]),
        "lot_kind": row["lot_kind"],
        "lot_id": row["lot_id"],
        "tank_id": int(row["tank_id"]),
        "mrn": row["mrn"],
        "leg_type": row["leg_type"],
        "kg": from_db(row["kg"]),
        "liters": from_db(row["liters"]),
        "density_applied": from_db(row["density_applied"]) if row["density_applied"] is not None else None,
        "liter_variance": from_db(row["liter_variance"]),
        "correlation_id": row["correlation_id"],
        "created_at": float(row["created_at"]),
    }


def list_legs(
    conn: sqlite3.Connection,
    *,
    correlation_id: Optional[str] = None,
    kind: Optional[TankKind] = None,
    tank_id: Optional[int] = None,
) -> List[Dict[str, Any]]:
    where = []
    params: list = []
    if correlation_id:
        where.append("correlation_id = ?")
        params.append(correlation_id)
    if kind is not None:
        where.append("lot_kind = ?")
        params.append(kind.name)
    if tank_id is not None:
        where.append("tank_id = ?")
        params.append(int(tank_id))
    sql = "SELECT * FROM transaction_legs"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY created_at ASC, id ASC"
    return [_leg_to_dict(r) for r in conn.execute(sql, params).fetchall()]


# ── Operation log ──────────────────────────────────────────────────────────────


def log_operation(
    conn: sqlite3.Connection,
    operation_type: str,
    description: str,
    *,
    entity_type: str,
    entity_id: Optional[int],
    details: Optional[Dict[str, Any]] = None,
    state_before: Optional[Dict[str, Any]] = None,
    state_after: Optional[Dict[str, Any]] = None,
    quantity_liters: Optional[Decimal] = None,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO fuel_operation_log
          (operation_type, description, details_json, state_before_json, state_after_json,
           entity_type, entity_id, quantity_liters, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            operation_type,
            description,
            _json_dumps(details or {}),
            _json_dumps(state_before or {}),
            _json_dumps(state_after or {}),
            entity_type,
            entity_id,
            to_db(quantity_liters) if quantity_liters is not None else None,
            now_s(),
        ),
    )
    return int(cur.lastrowid)


def list_operations(
    conn: sqlite3.Connection, operation_type: Optional[str] = None, limit: int = 100
) -> List[Dict[str, Any]]:
    if operation_type:
        rows = conn.execute(
            "SELECT * FROM fuel_operation_log WHERE operation_type = ? ORDER BY id DESC LIMIT ?",
            (operation_type, int(limit)),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM fuel_operation_log ORDER BY id DESC LIMIT ?", (int(limit),)
        ).fetchall()
    return [
        {
            "id": int(r["id"]),
            "operation_type": r["operation_type"],
            "description": r["description"],
            "details": json.loads(r["details_json"] or "{}"),
            "state_before": json.loads(r["state_before_json"] or "{}"),
            "state_after": json.loads(r["state_after_json"] or "{}"),
            "entity_type": r["entity_type"],
            "entity_id": r["entity_id"],
            "quantity_liters": r["quantity_liters"],
            "created_at": float(r["created_at"]),
        }
        for r in rows
    ]
