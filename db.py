import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generator, Iterator, TypeVar

from ledger_errors import ConcurrentMutationError, LedgerError, StorageFailureError

APP_DIR = Path(__file__).resolve().parent
DB_DIR = Path(os.environ.get("DB_DIR", str(APP_DIR / "data")))
DB_PATH = Path(os.environ.get("DB_PATH", str(DB_DIR / "ledger.db")))

TX_RETRIES = int(os.environ.get("LEDGER_TX_RETRIES", "5"))
TX_BACKOFF_S = float(os.environ.get("LEDGER_TX_BACKOFF_S", "0.05"))

T = TypeVar("T")


def connect_db(path: Any = None) -> sqlite3.Connection:
    db_path = Path(path) if path is not None else DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA busy_timeout=30000;")
    return conn


def get_db() -> Generator[sqlite3.Connection, None, None]:
    """FastAPI dependency that yields a DB connection and closes it after the request."""
    conn = connect_db()
    try:
        yield conn
    finally:
        conn.close()


def _is_lock_conflict(exc: sqlite3.Error) -> bool:
    msg = str(exc).lower()
    return isinstance(exc, sqlite3.OperationalError) and ("locked" in msg or "busy" in msg)


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block as one atomic unit of work.

    The outermost level issues BEGIN IMMEDIATE so the write lock is held
    before the first read; nested levels use a savepoint.  Any exception
    rolls the block back.  sqlite errors other than lock conflicts are
    re-raised as StorageFailureError.
    """
    if conn.in_transaction:
        name = f"sp_{time.monotonic_ns()}"
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield conn
        except BaseException:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        conn.execute(f"RELEASE SAVEPOINT {name}")
        return

    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except sqlite3.Error as exc:
        conn.rollback()
        if _is_lock_conflict(exc):
            raise
        logging.exception("Ledger transaction failed at the storage layer")
        raise StorageFailureError(f"Storage failure: {exc}") from exc
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def run_with_retry(
    fn: Callable[..., T],
    *args: Any,
    retries: int = TX_RETRIES,
    backoff_s: float = TX_BACKOFF_S,
    **kwargs: Any,
) -> T:
    """Call fn, retrying the whole transaction when sqlite reports a lock conflict."""
    attempt = 0
    while True:
        try:
            return fn(*args, **kwargs)
        except LedgerError:
            raise
        except sqlite3.OperationalError as exc:
            if not _is_lock_conflict(exc):
                raise
            attempt += 1
            if attempt > retries:
                logging.warning("Giving up after %d lock conflicts in %s", retries, getattr(fn, "__name__", fn))
                raise ConcurrentMutationError(
                    "Concurrent modification of the same tank; retry later"
                ) from exc
            delay = backoff_s * (2 ** (attempt - 1))
            logging.info("Lock conflict in %s, retry %d/%d in %.3fs", getattr(fn, "__name__", fn), attempt, retries, delay)
            time.sleep(delay)
