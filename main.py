import logging
import os
from typing import Any, Dict

from fastapi import FastAPI

from cleanup_router import router as cleanup_router
from db import connect_db
from db_migrations import apply_migrations
from density_router import router as density_router
from excess_router import router as excess_router
from reserve_router import router as reserve_router
from tank_router import router as tank_router

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Fuel Ledger")
app.include_router(tank_router)
app.include_router(density_router)
app.include_router(excess_router)
app.include_router(reserve_router)
app.include_router(cleanup_router)


@app.on_event("startup")
def _startup():
    conn = connect_db()
    try:
        apply_migrations(conn)
    finally:
        conn.close()
    logging.info("Fuel ledger migrations applied")


@app.get("/api/health")
def api_health() -> Dict[str, Any]:
    conn = connect_db()
    try:
        conn.execute("SELECT 1")
    finally:
        conn.close()
    return {
        "ok": True,
        "service": "fuel-ledger",
    }
