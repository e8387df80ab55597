import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, List


@dataclass(frozen=True)
class Migration:
    migration_id: str
    description: str
    apply: Callable[[sqlite3.Connection], None]


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table});").fetchall()
    return {str(r["name"]) for r in rows}


# Quantities are TEXT so Decimal values are stored exactly.


def _migration_0001_tanks_and_lots(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS fixed_tanks (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL,
          fuel_type TEXT NOT NULL DEFAULT 'JET A-1',
          capacity_liters TEXT NOT NULL,
          current_liters TEXT NOT NULL DEFAULT '0',
          current_kg TEXT NOT NULL DEFAULT '0',
          status TEXT NOT NULL DEFAULT 'active',
          location TEXT,
          created_at REAL NOT NULL
        );

        CREATE TABLE IF NOT EXISTS mobile_tanks (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL,
          fuel_type TEXT NOT NULL DEFAULT 'JET A-1',
          capacity_liters TEXT NOT NULL,
          current_liters TEXT NOT NULL DEFAULT '0',
          current_kg TEXT NOT NULL DEFAULT '0',
          status TEXT NOT NULL DEFAULT 'active',
          location TEXT,
          created_at REAL NOT NULL
        );

        CREATE TABLE IF NOT EXISTS fixed_tank_lots (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          tank_id INTEGER NOT NULL REFERENCES fixed_tanks(id) ON DELETE RESTRICT,
          mrn TEXT NOT NULL,
          quantity_liters TEXT NOT NULL,
          quantity_kg TEXT NOT NULL,
          remaining_liters TEXT NOT NULL,
          remaining_kg TEXT NOT NULL,
          density_at_intake TEXT NOT NULL,
          received_at REAL NOT NULL,
          supplier TEXT,
          notes TEXT,
          created_at REAL NOT NULL,
          updated_at REAL NOT NULL,
          UNIQUE (tank_id, mrn)
        );
        CREATE INDEX IF NOT EXISTS idx_fixed_lots_fifo
          ON fixed_tank_lots(tank_id, received_at, id);

        CREATE TABLE IF NOT EXISTS mobile_tank_lots (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          tank_id INTEGER NOT NULL REFERENCES mobile_tanks(id) ON DELETE RESTRICT,
          mrn TEXT NOT NULL,
          quantity_liters TEXT NOT NULL,
          quantity_kg TEXT NOT NULL,
          remaining_liters TEXT NOT NULL,
          remaining_kg TEXT NOT NULL,
          density_at_intake TEXT NOT NULL,
          received_at REAL NOT NULL,
          supplier TEXT,
          notes TEXT,
          created_at REAL NOT NULL,
          updated_at REAL NOT NULL,
          UNIQUE (tank_id, mrn)
        );
        CREATE INDEX IF NOT EXISTS idx_mobile_lots_fifo
          ON mobile_tank_lots(tank_id, received_at, id);
        """
    )


def _migration_0002_transaction_legs(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS transaction_legs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          lot_kind TEXT NOT NULL,
          lot_id INTEGER,
          tank_id INTEGER NOT NULL,
          mrn TEXT,
          leg_type TEXT NOT NULL,
          kg TEXT NOT NULL,
          liters TEXT NOT NULL,
          density_applied TEXT,
          liter_variance TEXT NOT NULL DEFAULT '0',
          correlation_id TEXT NOT NULL,
          created_at REAL NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_legs_correlation ON transaction_legs(correlation_id);
        CREATE INDEX IF NOT EXISTS idx_legs_lot ON transaction_legs(lot_kind, lot_id);
        CREATE INDEX IF NOT EXISTS idx_legs_tank ON transaction_legs(lot_kind, tank_id, created_at);

        CREATE TRIGGER IF NOT EXISTS trg_legs_no_update
        BEFORE UPDATE ON transaction_legs
        BEGIN
          SELECT RAISE(ABORT, 'transaction legs are append-only');
        END;

        CREATE TRIGGER IF NOT EXISTS trg_legs_no_delete
        BEFORE DELETE ON transaction_legs
        BEGIN
          SELECT RAISE(ABORT, 'transaction legs are append-only');
        END;
        """
    )


def _migration_0003_reserve_fuel(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS reserve_fuel (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          tank_id INTEGER NOT NULL,
          tank_type TEXT NOT NULL,
          source_mrn TEXT,
          source_lot_id INTEGER,
          quantity_liters TEXT NOT NULL,
          density TEXT,
          is_excess INTEGER NOT NULL DEFAULT 0,
          is_dispensed INTEGER NOT NULL DEFAULT 0,
          dispensed_at REAL,
          dispensed_by TEXT,
          reference_operation_id TEXT,
          notes TEXT,
          created_at REAL NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_reserve_queue
          ON reserve_fuel(tank_type, tank_id, is_dispensed, created_at, id);
        """
    )


def _migration_0004_excess_exchanges(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS excess_exchanges (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          correlation_id TEXT NOT NULL UNIQUE,
          source_kind TEXT NOT NULL,
          source_tank_id INTEGER NOT NULL,
          source_lot_id INTEGER NOT NULL,
          source_mrn TEXT NOT NULL,
          target_tank_id INTEGER NOT NULL,
          target_lot_id INTEGER NOT NULL,
          target_mrn TEXT NOT NULL,
          liters TEXT NOT NULL,
          kg TEXT NOT NULL,
          density TEXT NOT NULL,
          created_at REAL NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_exchanges_source
          ON excess_exchanges(source_kind, source_tank_id);
        CREATE INDEX IF NOT EXISTS idx_exchanges_target
          ON excess_exchanges(target_tank_id);
        """
    )


def _migration_0005_operation_log(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS fuel_operation_log (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          operation_type TEXT NOT NULL,
          description TEXT NOT NULL,
          details_json TEXT NOT NULL DEFAULT '{}',
          state_before_json TEXT NOT NULL DEFAULT '{}',
          state_after_json TEXT NOT NULL DEFAULT '{}',
          entity_type TEXT NOT NULL,
          entity_id INTEGER,
          quantity_liters TEXT,
          created_at REAL NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_operation_log_entity
          ON fuel_operation_log(entity_type, entity_id, created_at);
        """
    )


def _migration_0006_drain_reversals(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS drain_reversals (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          correlation_id TEXT NOT NULL UNIQUE,
          drain_correlation_id TEXT NOT NULL,
          tank_kind TEXT NOT NULL,
          tank_id INTEGER NOT NULL,
          liters TEXT NOT NULL,
          kg TEXT NOT NULL,
          notes TEXT,
          created_at REAL NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_drain_reversals_drain
          ON drain_reversals(drain_correlation_id);
        """
    )


def _migrations() -> List[Migration]:
    return [
        Migration("0001_tanks_and_lots", "Create fixed/mobile tanks and customs lot tables", _migration_0001_tanks_and_lots),
        Migration("0002_transaction_legs", "Add append-only transaction leg table", _migration_0002_transaction_legs),
        Migration("0003_reserve_fuel", "Add reserve fuel ledger", _migration_0003_reserve_fuel),
        Migration("0004_excess_exchanges", "Add excess fuel exchange records", _migration_0004_excess_exchanges),
        Migration("0005_operation_log", "Add fuel operation audit log", _migration_0005_operation_log),
        Migration("0006_drain_reversals", "Track drained fuel credited back to lots", _migration_0006_drain_reversals),
    ]


def apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          migration_id TEXT PRIMARY KEY,
          description TEXT NOT NULL,
          applied_at REAL NOT NULL
        );
        """
    )

    applied = {
        str(r["migration_id"])
        for r in conn.execute("SELECT migration_id FROM schema_migrations").fetchall()
    }

    for migration in _migrations():
        if migration.migration_id in applied:
            continue
        migration.apply(conn)
        conn.execute(
            "INSERT INTO schema_migrations (migration_id,description,applied_at) VALUES (?,?,?)",
            (migration.migration_id, migration.description, time.time()),
        )
    conn.commit()
