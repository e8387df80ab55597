"""
Reserve fuel API routes.

Handles:
  /api/reserve/summary
  /api/reserve/{tank_type}/{tank_id}
  /api/reserve/{tank_type}/{tank_id}/dispense
"""

import sqlite3
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from db import get_db, run_with_retry
from ledger_errors import LedgerError
import reserve_fuel_service

router = APIRouter(tags=["reserve"])


class SetAsideReq(BaseModel):
    quantity_liters: Union[float, str]
    source_mrn: Optional[str] = None
    source_lot_id: Optional[int] = None
    density: Optional[Union[float, str]] = None
    notes: Optional[str] = None


class DispenseReq(BaseModel):
    quantity_liters: Union[float, str]
    dispensed_by: str = "system"
    reference_operation_id: Optional[str] = None
    notes: Optional[str] = None


# Declared before the parameterised routes so "summary" is never read as a tank_type.
@router.get("/api/reserve/summary")
def api_reserve_summary(conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    return reserve_fuel_service.reserve_summary(conn)


@router.get("/api/reserve/{tank_type}/{tank_id}")
def api_list_reserve(tank_type: str, tank_id: int, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    try:
        return reserve_fuel_service.list_reserve(conn, tank_id, tank_type)
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())


@router.post("/api/reserve/{tank_type}/{tank_id}")
def api_set_aside(
    tank_type: str, tank_id: int, body: SetAsideReq, conn: sqlite3.Connection = Depends(get_db)
) -> Dict[str, Any]:
    try:
        entry = run_with_retry(
            reserve_fuel_service.set_aside_reserve,
            conn,
            tank_id,
            tank_type,
            body.quantity_liters,
            source_mrn=body.source_mrn,
            source_lot_id=body.source_lot_id,
            density=body.density,
            notes=body.notes,
        )
        return {"ok": True, "entry": entry}
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())


@router.post("/api/reserve/{tank_type}/{tank_id}/dispense")
def api_dispense(
    tank_type: str, tank_id: int, body: DispenseReq, conn: sqlite3.Connection = Depends(get_db)
) -> Dict[str, Any]:
    try:
        result = run_with_retry(
            reserve_fuel_service.dispense_reserve,
            conn,
            tank_id,
            tank_type,
            body.quantity_liters,
            dispensed_by=body.dispensed_by,
            reference_operation_id=body.reference_operation_id,
            notes=body.notes,
        )
        return {"ok": True, **result.to_dict()}
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
