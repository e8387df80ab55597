"""
Excess fuel API routes.

Handles:
  /api/excess/exchange
  /api/excess/sweep
  /api/excess/exchanges
  /api/excess/exchanges/{exchange_id}
"""

import sqlite3
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from constants import EXCESS_SWAP_BATCH_SIZE, EXCESS_SWAP_MIN_LITERS
from db import get_db, run_with_retry
import excess_exchange_service
from ledger_errors import LedgerError
import tank_repository as repo

router = APIRouter(tags=["excess"])


class ExchangeReq(BaseModel):
    kind: str = "mobile"
    tank_id: int
    source_lot_id: int
    source_mrn: str
    excess_liters: Union[float, str]
    density: Optional[Union[float, str]] = None


class SweepReq(BaseModel):
    kind: str = "mobile"
    min_excess_liters: Union[float, str] = float(EXCESS_SWAP_MIN_LITERS)
    batch_size: int = EXCESS_SWAP_BATCH_SIZE


@router.post("/api/excess/exchange")
def api_exchange(body: ExchangeReq, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    try:
        result = run_with_retry(
            excess_exchange_service.exchange_excess_fuel,
            conn,
            body.tank_id,
            body.source_lot_id,
            body.source_mrn,
            body.excess_liters,
            body.density,
            kind=repo.tank_kind(body.kind),
        )
        return {"ok": True, **result.to_dict()}
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())


@router.post("/api/excess/sweep")
def api_sweep(body: SweepReq, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    try:
        return excess_exchange_service.sweep_excess_fuel(
            conn, body.min_excess_liters, body.batch_size, repo.tank_kind(body.kind)
        )
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())


@router.get("/api/excess/exchanges")
def api_list_exchanges(
    tank_id: Optional[int] = None,
    kind: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return excess_exchange_service.list_exchanges(conn, tank_id, kind, page, page_size)
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())


@router.get("/api/excess/exchanges/{exchange_id}")
def api_get_exchange(exchange_id: int, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    try:
        return excess_exchange_service.get_exchange(conn, exchange_id)
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
