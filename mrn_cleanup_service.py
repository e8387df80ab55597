"""
MRN cleanup service — tidy up customs lots that have shrunk to remnants.

Fixed tanks:
  - dust lots (at or under the dust thresholds) are written off
  - two or more other remnants whose liters fit under the consolidation
    limit are folded into one MISC lot; the tank total does not change
Mobile tanks:
  - every remnant is written off, there is no consolidation

Write-offs leave the ledger through MRN_CLEANUP legs and decrement the
tank's cached totals, so a reconciliation run afterwards is a no-op.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from constants import (
    MRN_CLEANUP_KG_THRESHOLD,
    MRN_CLEANUP_LITERS_THRESHOLD,
    MRN_CONSOLIDATION_MAX_LITERS,
    MRN_DUST_KG_THRESHOLD,
    MRN_DUST_LITERS_THRESHOLD,
    ZERO,
)
from db import TX_RETRIES, run_with_retry, write_transaction
from ledger_errors import LedgerError
from quantities import as_number, dens
import tank_repository as repo
from tank_repository import FIXED, MOBILE, Lot, TankKind


@dataclass
class CleanupResult:
    tank_id: int
    tank_name: str
    kind: str
    operation_type: str
    correlation_id: str = ""
    lots: List[Dict[str, Any]] = field(default_factory=list)
    written_off_liters: Decimal = ZERO
    written_off_kg: Decimal = ZERO
    consolidated_lot_id: Optional[int] = None
    consolidated_mrn: Optional[str] = None
    success: bool = True
    details: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tank_id": self.tank_id,
            "tank_name": self.tank_name,
            "kind": self.kind,
            "operation_type": self.operation_type,
            "correlation_id": self.correlation_id,
            "lots": self.lots,
            "written_off_liters": as_number(self.written_off_liters),
            "written_off_kg": as_number(self.written_off_kg),
            "consolidated_lot_id": self.consolidated_lot_id,
            "consolidated_mrn": self.consolidated_mrn,
            "success": self.success,
            "details": self.details,
        }


def should_cleanup(liters: Decimal, kg: Decimal) -> bool:
    """A lot at or under either remnant threshold."""
    return liters <= MRN_CLEANUP_LITERS_THRESHOLD or kg <= MRN_CLEANUP_KG_THRESHOLD


def _is_dust(lot: Lot) -> bool:
    return lot.remaining_liters <= MRN_DUST_LITERS_THRESHOLD or lot.remaining_kg <= MRN_DUST_KG_THRESHOLD


def _lot_entry(lot: Lot, action: str) -> Dict[str, Any]:
    return {
        "lot_id": lot.id,
        "mrn": lot.mrn,
        "liters": as_number(lot.remaining_liters),
        "kg": as_number(lot.remaining_kg),
        "action": action,
    }


def _write_off(conn: sqlite3.Connection, kind: TankKind, tank_id: int, lots: List[Lot], result: CleanupResult) -> None:
    for lot in lots:
        logging.info(
            "Writing off remnant lot %s (%s) in %s tank %s: %s L / %s kg",
            lot.id, lot.mrn, kind.name, tank_id, lot.remaining_liters, lot.remaining_kg,
        )
        repo.update_lot_remaining(conn, lot, ZERO, ZERO)
        repo.record_leg(
            conn, kind, tank_id, "MRN_CLEANUP", -lot.remaining_kg, -lot.remaining_liters,
            result.correlation_id, lot=lot, density_applied=lot.density,
        )
        result.lots.append(_lot_entry(lot, "CLEANED"))
        result.written_off_liters += lot.remaining_liters
        result.written_off_kg += lot.remaining_kg


def _consolidate(conn: sqlite3.Connection, kind: TankKind, tank_id: int, lots: List[Lot], result: CleanupResult) -> None:
    total_liters = sum((lot.remaining_liters for lot in lots), ZERO)
    total_kg = sum((lot.remaining_kg for lot in lots), ZERO)
    mrn = f"MISC-TANK-{tank_id}-{result.correlation_id[:8]}"
    misc = repo.insert_lot(
        conn, kind, tank_id, mrn, total_liters, total_kg, dens(total_kg / total_liters),
        received_at=min(lot.received_at for lot in lots),
        notes="Consolidated from " + ", ".join(lot.mrn for lot in lots),
    )
    for lot in lots:
        repo.update_lot_remaining(conn, lot, ZERO, ZERO)
        repo.record_leg(
            conn, kind, tank_id, "MRN_CONSOLIDATION", -lot.remaining_kg, -lot.remaining_liters,
            result.correlation_id, lot=lot, density_applied=lot.density,
        )
        result.lots.append(_lot_entry(lot, "CONSOLIDATED"))
    repo.record_leg(
        conn, kind, tank_id, "MRN_CONSOLIDATION", total_kg, total_liters,
        result.correlation_id, lot=misc, density_applied=misc.density,
    )
    result.consolidated_lot_id = misc.id
    result.consolidated_mrn = mrn
    logging.info(
        "Consolidated %d remnant lot(s) in %s tank %s into %s (%s L / %s kg)",
        len(lots), kind.name, tank_id, mrn, total_liters, total_kg,
    )


def cleanup_tank_remnants(
    conn: sqlite3.Connection,
    tank_id: int,
    kind: TankKind = FIXED,
    operation_type: str = "MANUAL_CLEANUP",
) -> CleanupResult:
    """Write off or consolidate a tank's remnant lots in one transaction."""
    cid = repo.new_correlation_id()
    with write_transaction(conn):
        tank = repo.get_tank(conn, kind, tank_id)
        result = CleanupResult(
            tank_id=tank.id, tank_name=tank.name, kind=kind.name,
            operation_type=operation_type, correlation_id=cid,
        )
        remnants = [
            lot for lot in repo.list_active_lots(conn, kind, tank.id)
            if should_cleanup(lot.remaining_liters, lot.remaining_kg)
        ]

        if kind is FIXED:
            _write_off(conn, kind, tank.id, [lot for lot in remnants if _is_dust(lot)], result)
            small = [lot for lot in remnants if not _is_dust(lot)]
            if len(small) > 1 and sum((lot.remaining_liters for lot in small), ZERO) <= MRN_CONSOLIDATION_MAX_LITERS:
                _consolidate(conn, kind, tank.id, small, result)
        else:
            _write_off(conn, kind, tank.id, remnants, result)

        if not result.lots:
            result.details = "Nothing to clean"
            return result

        before, after = repo.apply_delta(conn, kind, tank.id, -result.written_off_liters, -result.written_off_kg)
        repo.log_operation(
            conn,
            "MRN_CLEANUP",
            f"{operation_type}: {len(result.lots)} remnant lot(s) in {kind.name} tank {tank.name}",
            entity_type=kind.entity_type,
            entity_id=tank.id,
            details={"correlation_id": cid, "lots": result.lots, "consolidated_mrn": result.consolidated_mrn},
            state_before={"current_kg": str(before.current_kg), "current_liters": str(before.current_liters)},
            state_after={"current_kg": str(after.current_kg), "current_liters": str(after.current_liters)},
            quantity_liters=result.written_off_liters,
        )

    logging.info(
        "MRN cleanup of %s tank %s: %d lot(s), %s L / %s kg written off",
        kind.name, tank.id, len(result.lots), result.written_off_liters, result.written_off_kg,
    )
    return result


def cleanup_all_tanks(
    conn: sqlite3.Connection,
    operation_type: str = "BATCH_CLEANUP",
    *,
    retries: int = TX_RETRIES,
) -> Dict[str, Any]:
    """Clean every active fixed and mobile tank.  A failing tank does not stop the batch."""
    results: List[CleanupResult] = []
    for kind in (FIXED, MOBILE):
        for tank in repo.list_tanks(conn, kind, status="active"):
            try:
                results.append(run_with_retry(
                    cleanup_tank_remnants, conn, tank.id, kind, operation_type, retries=retries
                ))
            except (LedgerError, sqlite3.Error, InvalidOperation) as e:
                logging.exception("MRN cleanup failed for %s tank %s", kind.name, tank.id)
                results.append(CleanupResult(
                    tank_id=tank.id, tank_name=tank.name, kind=kind.name,
                    operation_type=operation_type, success=False, details=str(e),
                ))

    ok = [r for r in results if r.success]
    return {
        "processed": len(results),
        "successful": len(ok),
        "failed": len(results) - len(ok),
        "cleaned_lots": sum(len(r.lots) for r in ok),
        "written_off_liters": as_number(sum((r.written_off_liters for r in ok), ZERO)),
        "written_off_kg": as_number(sum((r.written_off_kg for r in ok), ZERO)),
        "results": [r.to_dict() for r in results],
    }


def cleanup_info(conn: sqlite3.Connection) -> Dict[str, Any]:
    """Current thresholds plus how many active lots each kind would have cleaned."""
    candidates: Dict[str, Dict[str, int]] = {}
    for kind in (FIXED, MOBILE):
        remnant = dust = 0
        for tank in repo.list_tanks(conn, kind, status="active"):
            for lot in repo.list_active_lots(conn, kind, tank.id):
                if should_cleanup(lot.remaining_liters, lot.remaining_kg):
                    remnant += 1
                    if _is_dust(lot):
                        dust += 1
        candidates[kind.name] = {"remnant_lots": remnant, "dust_lots": dust}

    return {
        "config": {
            "liters_threshold": as_number(MRN_CLEANUP_LITERS_THRESHOLD),
            "kg_threshold": as_number(MRN_CLEANUP_KG_THRESHOLD),
            "dust_liters_threshold": as_number(MRN_DUST_LITERS_THRESHOLD),
            "dust_kg_threshold": as_number(MRN_DUST_KG_THRESHOLD),
            "consolidation_max_liters": as_number(MRN_CONSOLIDATION_MAX_LITERS),
        },
        "candidates": candidates,
    }
