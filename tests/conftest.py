"""
Shared pytest fixtures for the fuel ledger tests.

Provides:
  - In-memory SQLite DB with migrations applied
  - FastAPI TestClient backed by a per-test database file
  - A frozen ledger clock
  - Helper functions for seeding tanks and customs lots
"""

import os
import sqlite3
import sys
import tempfile
from decimal import Decimal
from pathlib import Path
from typing import Generator, Optional

import pytest

# ---------------------------------------------------------------------------
# Ensure the project root is on sys.path so we can import app modules
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Use a writable temp directory for the default DB so app startup succeeds.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="fuel_ledger_test_")
os.environ["DB_DIR"] = _TEST_DB_DIR

FROZEN_AT_S = 1_700_000_000.0


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def db_conn() -> Generator[sqlite3.Connection, None, None]:
    """Yield an in-memory SQLite connection with all migrations applied."""
    from db_migrations import apply_migrations

    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    apply_migrations(conn)

    yield conn
    conn.close()


@pytest.fixture()
def db_path(tmp_path, monkeypatch) -> Path:
    """Point the app's default database at a fresh file for this test."""
    import db

    path = tmp_path / "ledger.db"
    monkeypatch.setattr(db, "DB_PATH", path)
    return path


# ---------------------------------------------------------------------------
# FastAPI TestClient
# ---------------------------------------------------------------------------

@pytest.fixture()
def client(db_path):
    """Return a Starlette TestClient wired to the FastAPI app and a fresh DB."""
    from fastapi.testclient import TestClient
    from main import app

    with TestClient(app) as c:
        yield c


# ---------------------------------------------------------------------------
# Test data helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    """Stateless helper methods for common test-data operations."""

    @staticmethod
    def create_tank(
        conn: sqlite3.Connection,
        kind=None,
        *,
        name: str = "Tank",
        capacity_liters: str = "100000",
        status: str = "active",
    ) -> int:
        """Insert a tank and return its id."""
        import tank_repository as repo

        tank = repo.create_tank(conn, kind or repo.FIXED, name, Decimal(capacity_liters), status=status)
        conn.commit()
        return tank.id

    @staticmethod
    def add_lot(
        conn: sqlite3.Connection,
        tank_id: int,
        mrn: str,
        kg: str,
        *,
        kind=None,
        liters: Optional[str] = None,
        density: str = "0.8",
        received_at: Optional[float] = None,
        update_tank: bool = True,
    ) -> int:
        """Insert a customs lot directly and (by default) add it to the tank's cached totals."""
        import tank_repository as repo
        from quantities import qty

        lot_kind = kind or repo.FIXED
        d = Decimal(density)
        kg_d = Decimal(kg)
        liters_d = Decimal(liters) if liters is not None else qty(kg_d / d)
        lot = repo.insert_lot(conn, lot_kind, tank_id, mrn, liters_d, kg_d, d, received_at=received_at)
        if update_tank:
            repo.apply_delta(conn, lot_kind, tank_id, liters_d, kg_d)
        conn.commit()
        return lot.id

    @staticmethod
    def set_tank_totals(conn: sqlite3.Connection, tank_id: int, liters: str, kg: str, kind=None) -> None:
        import tank_repository as repo

        repo.set_tank_quantities(conn, kind or repo.FIXED, tank_id, Decimal(liters), Decimal(kg))
        conn.commit()

    @staticmethod
    def lot(conn: sqlite3.Connection, lot_id: int, kind=None):
        import tank_repository as repo

        return repo.get_lot(conn, kind or repo.FIXED, lot_id)

    @staticmethod
    def tank(conn: sqlite3.Connection, tank_id: int, kind=None):
        import tank_repository as repo

        return repo.get_tank(conn, kind or repo.FIXED, tank_id)


@pytest.fixture()
def helpers() -> TestHelpers:
    return TestHelpers()


# ---------------------------------------------------------------------------
# Ledger clock
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _frozen_clock():
    """Freeze the ledger clock for every test; restore the wall clock afterwards."""
    from clock_service import freeze_clock, reset_clock

    freeze_clock(FROZEN_AT_S)
    yield
    reset_clock()
