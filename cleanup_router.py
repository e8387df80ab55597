"""
MRN remnant cleanup API routes.

Handles:
  /api/mrn-cleanup/fixed-tank/{tank_id}
  /api/mrn-cleanup/mobile-tank/{tank_id}
  /api/mrn-cleanup/all-tanks
  /api/mrn-cleanup/info
"""

import sqlite3
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from db import get_db, run_with_retry
from ledger_errors import LedgerError
import mrn_cleanup_service
from tank_repository import FIXED, MOBILE, TankKind

router = APIRouter(tags=["mrn-cleanup"])


def _cleanup_one(conn: sqlite3.Connection, tank_id: int, kind: TankKind) -> Dict[str, Any]:
    try:
        result = run_with_retry(mrn_cleanup_service.cleanup_tank_remnants, conn, tank_id, kind)
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    return {"ok": True, **result.to_dict()}


@router.post("/api/mrn-cleanup/fixed-tank/{tank_id}")
def api_cleanup_fixed_tank(tank_id: int, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    return _cleanup_one(conn, tank_id, FIXED)


@router.post("/api/mrn-cleanup/mobile-tank/{tank_id}")
def api_cleanup_mobile_tank(tank_id: int, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    return _cleanup_one(conn, tank_id, MOBILE)


@router.post("/api/mrn-cleanup/all-tanks")
def api_cleanup_all_tanks(conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    return mrn_cleanup_service.cleanup_all_tanks(conn)


@router.get("/api/mrn-cleanup/info")
def api_cleanup_info(conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    return mrn_cleanup_service.cleanup_info(conn)
