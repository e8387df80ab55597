"""
Density and reconciliation API routes.

Handles:
  /api/density/tank/{tank_id}
  /api/density/analyze-variation
  /api/density/report
  /api/reconciliation/tank/{tank_id}
  /api/reconciliation/all
"""

import sqlite3
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from db import get_db, run_with_retry
import density_service
from ledger_errors import LedgerError
import reconciliation_service
import tank_repository as repo

router = APIRouter(tags=["density"])


class AnalyzeVariationReq(BaseModel):
    tank_id: Optional[int] = None
    kind: str = "fixed"
    weighted_density: Optional[Union[float, str]] = None
    operational_density: Union[float, str]
    quantity_kg: Union[float, str]


@router.get("/api/density/tank/{tank_id}")
def api_tank_density(tank_id: int, kind: str = "fixed", conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    try:
        return density_service.tank_density_info(conn, tank_id, repo.tank_kind(kind))
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())


@router.post("/api/density/analyze-variation")
def api_analyze_variation(body: AnalyzeVariationReq, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    """Analyze against a tank's weighted density, or an explicit weighted_density when no tank is given."""
    try:
        if body.tank_id is not None:
            return density_service.analyze_tank_density_variation(
                conn, body.tank_id, body.operational_density, body.quantity_kg, repo.tank_kind(body.kind)
            )
        if body.weighted_density is None:
            raise HTTPException(status_code=400, detail="tank_id or weighted_density is required")
        analysis = density_service.analyze_density_variation(
            body.weighted_density, body.operational_density, body.quantity_kg
        )
        return {"tank_info": None, "analysis": analysis.to_dict()}
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())


@router.get("/api/density/report")
def api_density_report(conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    return reconciliation_service.density_analysis_report(conn)


@router.post("/api/reconciliation/tank/{tank_id}")
def api_reconcile_tank(tank_id: int, kind: str = "fixed", conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    try:
        result = run_with_retry(reconciliation_service.reconcile_tank, conn, tank_id, repo.tank_kind(kind))
        return {"ok": True, **result.to_dict()}
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())


@router.post("/api/reconciliation/all")
def api_reconcile_all(kind: str = "fixed", conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    try:
        tank_kind = repo.tank_kind(kind)
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    results = reconciliation_service.reconcile_all_tanks(conn, tank_kind)
    return {
        "summary": reconciliation_service.reconciliation_summary(results),
        "results": [r.to_dict() for r in results],
    }
