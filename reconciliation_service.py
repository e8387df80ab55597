"""
Reconciliation service — realign a tank's cached totals with its lots.

The sum of active lots is authoritative; the tank row is overwritten with
it.  Running it twice in a row is a no-op the second time.
"""

import logging
import sqlite3
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

from constants import (
    DEFAULT_DENSITY_KG_PER_L,
    DENSITY_PLACES,
    SEVERITY_LOW_MAX_KG,
    SEVERITY_MEDIUM_MAX_KG,
    ZERO,
)
from db import TX_RETRIES, run_with_retry, write_transaction
from density_service import weighted_average_density
from ledger_errors import LedgerError
from quantities import as_number
import tank_repository as repo
from tank_repository import FIXED, TankKind


@dataclass
class ReconciliationResult:
    tank_id: int
    tank_name: str
    kind: str
    before_kg: Decimal = ZERO
    after_kg: Decimal = ZERO
    before_liters: Decimal = ZERO
    after_liters: Decimal = ZERO
    adjustment_kg: Decimal = ZERO
    adjustment_liters: Decimal = ZERO
    success: bool = True
    details: str = ""
    lot_count: int = 0
    correlation_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tank_id": self.tank_id,
            "tank_name": self.tank_name,
            "kind": self.kind,
            "before_kg": as_number(self.before_kg),
            "after_kg": as_number(self.after_kg),
            "before_liters": as_number(self.before_liters),
            "after_liters": as_number(self.after_liters),
            "adjustment_kg": as_number(self.adjustment_kg),
            "adjustment_liters": as_number(self.adjustment_liters),
            "success": self.success,
            "details": self.details,
            "lot_count": self.lot_count,
        }


def reconcile_tank(conn: sqlite3.Connection, tank_id: int, kind: TankKind = FIXED) -> ReconciliationResult:
    with write_transaction(conn):
        tank = repo.get_tank(conn, kind, tank_id)
        lot_kg, lot_liters, lot_count = repo.sum_active_lots(conn, kind, tank.id)

        result = ReconciliationResult(
            tank_id=tank.id,
            tank_name=tank.name,
            kind=kind.name,
            before_kg=tank.current_kg,
            before_liters=tank.current_liters,
            after_kg=lot_kg,
            after_liters=lot_liters,
            adjustment_kg=lot_kg - tank.current_kg,
            adjustment_liters=lot_liters - tank.current_liters,
            lot_count=lot_count,
        )

        if result.adjustment_kg == ZERO and result.adjustment_liters == ZERO:
            result.details = f"Tank {tank.name} already matches its {lot_count} active lot(s)"
            return result

        repo.set_tank_quantities(conn, kind, tank.id, lot_liters, lot_kg)
        result.correlation_id = repo.new_correlation_id()
        repo.record_leg(
            conn, kind, tank.id, "RECONCILIATION",
            result.adjustment_kg, result.adjustment_liters, result.correlation_id,
        )
        result.details = (
            f"Tank {tank.name} adjusted by {result.adjustment_kg} kg / {result.adjustment_liters} L "
            f"to match {lot_count} active lot(s)"
        )
        repo.log_operation(
            conn,
            "RECONCILIATION",
            result.details,
            entity_type=kind.entity_type,
            entity_id=tank.id,
            details={"correlation_id": result.correlation_id, "lot_count": lot_count},
            state_before={"current_kg": str(result.before_kg), "current_liters": str(result.before_liters)},
            state_after={"current_kg": str(result.after_kg), "current_liters": str(result.after_liters)},
            quantity_liters=result.adjustment_liters,
        )

    logging.info(
        "Reconciled %s tank %s: %s kg / %s L adjustment",
        kind.name, tank.id, result.adjustment_kg, result.adjustment_liters,
    )
    return result


def reconcile_all_tanks(
    conn: sqlite3.Connection, kind: TankKind = FIXED, *, retries: int = TX_RETRIES
) -> List[ReconciliationResult]:
    """Reconcile every active tank, one transaction each.

    Each tank gets its own lock-conflict retries.  A tank that still fails
    (busy, storage error, unreadable quantity) is reported with
    success=False and the batch moves on.
    """
    results: List[ReconciliationResult] = []
    for tank in repo.list_tanks(conn, kind, status="active"):
        try:
            results.append(run_with_retry(reconcile_tank, conn, tank.id, kind, retries=retries))
        except (LedgerError, sqlite3.Error, InvalidOperation) as e:
            logging.exception("Reconciliation failed for %s tank %s", kind.name, tank.id)
            results.append(ReconciliationResult(
                tank_id=tank.id,
                tank_name=tank.name,
                kind=kind.name,
                before_kg=tank.current_kg,
                before_liters=tank.current_liters,
                after_kg=tank.current_kg,
                after_liters=tank.current_liters,
                success=False,
                details=str(e),
            ))
    return results


def reconciliation_summary(results: List[ReconciliationResult]) -> Dict[str, Any]:
    ok = [r for r in results if r.success]
    return {
        "total_tanks": len(results),
        "successful": len(ok),
        "failed": len(results) - len(ok),
        "adjusted": sum(1 for r in ok if r.adjustment_kg != ZERO or r.adjustment_liters != ZERO),
        "total_adjustment_kg": as_number(sum((r.adjustment_kg for r in ok), ZERO)),
        "total_adjustment_liters": as_number(sum((r.adjustment_liters for r in ok), ZERO)),
    }


def _severity(variation_kg: Decimal) -> str:
    if variation_kg < SEVERITY_LOW_MAX_KG:
        return "LOW"
    if variation_kg < SEVERITY_MEDIUM_MAX_KG:
        return "MEDIUM"
    return "HIGH"


def density_analysis_report(conn: sqlite3.Connection) -> Dict[str, Any]:
    """Read-only drift report over active fixed tanks."""
    details = []
    total_variation = ZERO
    total_density_dev = ZERO
    for tank in repo.list_tanks(conn, FIXED, status="active"):
        lot_kg, lot_liters, lot_count = repo.sum_active_lots(conn, FIXED, tank.id)
        info = weighted_average_density(conn, tank.id, FIXED)
        variation = abs(tank.current_kg - lot_kg)
        total_variation += variation
        total_density_dev += abs(info.density - DEFAULT_DENSITY_KG_PER_L)
        details.append({
            "tank_id": tank.id,
            "tank_name": tank.name,
            "current_kg": as_number(tank.current_kg),
            "current_liters": as_number(tank.current_liters),
            "calculated_kg": as_number(lot_kg),
            "calculated_liters": as_number(lot_liters),
            "variation_kg": as_number(variation),
            "weighted_density": as_number(info.density),
            "lot_count": lot_count,
            "severity": _severity(variation),
        })

    avg_dev = (total_density_dev / len(details)).quantize(DENSITY_PLACES) if details else ZERO
    return {
        "summary": {
            "total_tanks": len(details),
            "tanks_with_issues": sum(1 for d in details if d["severity"] == "HIGH"),
            "total_variation_kg": as_number(total_variation),
            "avg_density_variation": as_number(avg_dev),
        },
        "tank_details": details,
    }
