"""
Tank and lot API routes.

Handles:
  /api/tanks
  /api/tanks/{kind}/{tank_id}
  /api/tanks/{kind}/{tank_id}/lots
  /api/tanks/{kind}/{tank_id}/intake
  /api/tanks/{kind}/{tank_id}/allocate
  /api/transfers
  /api/drains/{correlation_id}/reverse
"""

import sqlite3
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from db import get_db, run_with_retry, write_transaction
import fifo_service
from ledger_errors import LedgerError
from quantities import positive_qty
import tank_repository as repo

router = APIRouter(tags=["tanks"])

Quantity = Union[float, str]


class CreateTankReq(BaseModel):
    kind: str
    name: str
    capacity_liters: Quantity
    fuel_type: str = "JET A-1"
    location: Optional[str] = None


class IntakeReq(BaseModel):
    mrn: str
    quantity_liters: Quantity
    density: Optional[Quantity] = None
    quantity_kg: Optional[Quantity] = None
    received_at: Optional[float] = None
    supplier: Optional[str] = None
    notes: Optional[str] = None


class AllocateReq(BaseModel):
    quantity: Quantity
    unit: str = "kg"
    operational_density: Optional[Quantity] = None
    transaction_type: str = "FUELING"
    correlation_id: Optional[str] = None


class TransferReq(BaseModel):
    source_kind: str = "fixed"
    source_tank_id: int
    dest_kind: str = "mobile"
    dest_tank_id: int
    quantity_liters: Quantity


class DrainReverseReq(BaseModel):
    quantity_liters: Quantity
    dest_kind: Optional[str] = None
    dest_tank_id: Optional[int] = None
    notes: Optional[str] = None


@router.post("/api/tanks")
def api_create_tank(body: CreateTankReq, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    try:
        kind = repo.tank_kind(body.kind)
        capacity = positive_qty(body.capacity_liters, "capacity_liters")
        with write_transaction(conn):
            tank = repo.create_tank(
                conn, kind, body.name, capacity, fuel_type=body.fuel_type, location=body.location
            )
            repo.log_operation(
                conn,
                "TANK_CREATE",
                f"Created {kind.name} tank {tank.name} ({capacity} L)",
                entity_type=kind.entity_type,
                entity_id=tank.id,
                state_after=tank.to_dict(),
            )
        return {"ok": True, "tank": tank.to_dict()}
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())


@router.get("/api/tanks/{kind}/{tank_id}")
def api_get_tank(kind: str, tank_id: int, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    try:
        tank = repo.get_tank(conn, repo.tank_kind(kind), tank_id)
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    return tank.to_dict()


@router.get("/api/tanks/{kind}/{tank_id}/lots")
def api_tank_lots(
    kind: str, tank_id: int, include_depleted: bool = False, conn: sqlite3.Connection = Depends(get_db)
) -> Dict[str, Any]:
    try:
        tank_kind = repo.tank_kind(kind)
        tank = repo.get_tank(conn, tank_kind, tank_id)
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())

    if include_depleted:
        lots = repo.list_lots(conn, tank_kind, tank.id)
    else:
        lots = repo.list_active_lots(conn, tank_kind, tank.id)
    return {"tank": tank.to_dict(), "lots": [lot.to_dict() for lot in lots]}


@router.post("/api/tanks/{kind}/{tank_id}/intake")
def api_intake(kind: str, tank_id: int, body: IntakeReq, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    try:
        result = run_with_retry(
            fifo_service.receive_intake,
            conn,
            tank_id,
            body.mrn,
            body.quantity_liters,
            kind=repo.tank_kind(kind),
            density=body.density,
            quantity_kg=body.quantity_kg,
            received_at=body.received_at,
            supplier=body.supplier,
            notes=body.notes,
        )
        return {"ok": True, **result}
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())


@router.post("/api/tanks/{kind}/{tank_id}/allocate")
def api_allocate(kind: str, tank_id: int, body: AllocateReq, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    try:
        result = run_with_retry(
            fifo_service.allocate_fifo,
            conn,
            tank_id,
            body.quantity,
            kind=repo.tank_kind(kind),
            unit=body.unit,
            operational_density=body.operational_density,
            transaction_type=body.transaction_type,
            correlation_id=body.correlation_id,
        )
        return {"ok": True, **result.to_dict()}
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())


@router.post("/api/transfers")
def api_transfer(body: TransferReq, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    try:
        result = run_with_retry(
            fifo_service.transfer_fuel,
            conn,
            body.source_tank_id,
            body.dest_tank_id,
            body.quantity_liters,
            source_kind=repo.tank_kind(body.source_kind),
            dest_kind=repo.tank_kind(body.dest_kind),
        )
        return {"ok": True, **result}
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())


@router.post("/api/drains/{correlation_id}/reverse")
def api_reverse_drain(
    correlation_id: str, body: DrainReverseReq, conn: sqlite3.Connection = Depends(get_db)
) -> Dict[str, Any]:
    try:
        result = run_with_retry(
            fifo_service.reverse_drain,
            conn,
            correlation_id,
            body.quantity_liters,
            dest_kind=repo.tank_kind(body.dest_kind) if body.dest_kind else None,
            dest_tank_id=body.dest_tank_id,
            notes=body.notes,
        )
        return {"ok": True, **result}
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
