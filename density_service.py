"""
Density service — weighted average density of a tank's lots, liters/kg
conversion, and operational-vs-lot density variation analysis.
"""

import sqlite3
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict

from constants import (
    DEFAULT_DENSITY_KG_PER_L,
    DENSITY_ACCEPT_MAX_PERCENT,
    DENSITY_ACTIONS,
    DENSITY_PLACES,
    DENSITY_WARN_MAX_PERCENT,
    PERCENT_PLACES,
    ZERO,
)
from ledger_errors import ValidationError
from quantities import as_number, dens, positive_density, positive_qty, qty
import tank_repository as repo
from tank_repository import FIXED, TankKind


@dataclass(frozen=True)
class DensityInfo:
    density: Decimal
    total_kg: Decimal
    total_liters: Decimal
    lot_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "density": as_number(self.density),
            "total_kg": as_number(self.total_kg),
            "total_liters": as_number(self.total_liters),
            "lot_count": self.lot_count,
        }


@dataclass(frozen=True)
class VariationResult:
    weighted_density: Decimal
    operational_density: Decimal
    variation: Decimal
    variation_percent: Decimal
    volume_impact_liters: Decimal
    recommended_action: str
    details: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weighted_density": as_number(self.weighted_density),
            "operational_density": as_number(self.operational_density),
            "variation": as_number(self.variation),
            "variation_percent": as_number(self.variation_percent),
            "volume_impact_liters": as_number(self.volume_impact_liters),
            "recommended_action": self.recommended_action,
            "details": self.details,
        }


# ── Conversions ────────────────────────────────────────────────────────────────


def liters_to_kg(liters: Decimal, density: Decimal) -> Decimal:
    if density <= ZERO:
        raise ValidationError("density must be greater than zero")
    return qty(liters * density)


def kg_to_liters(kg: Decimal, density: Decimal) -> Decimal:
    if density <= ZERO:
        raise ValidationError("density must be greater than zero")
    return qty(kg / density)


# ── Weighted density ───────────────────────────────────────────────────────────


def weighted_average_density(conn: sqlite3.Connection, tank_id: int, kind: TankKind = FIXED) -> DensityInfo:
    """Σkg / Σliters over active lots that still hold volume.

    Lots with mass but no volume are skipped.  With no volume at all the
    configured fallback density is returned.
    """
    total_kg = ZERO
    total_liters = ZERO
    count = 0
    for lot in repo.list_active_lots(conn, kind, tank_id):
        if lot.remaining_liters <= ZERO:
            continue
        total_kg += lot.remaining_kg
        total_liters += lot.remaining_liters
        count += 1

    if total_liters <= ZERO:
        return DensityInfo(dens(DEFAULT_DENSITY_KG_PER_L), ZERO, ZERO, 0)
    return DensityInfo(dens(total_kg / total_liters), total_kg, total_liters, count)


def tank_density_info(conn: sqlite3.Connection, tank_id: int, kind: TankKind = FIXED) -> Dict[str, Any]:
    tank = repo.get_tank(conn, kind, tank_id)
    info = weighted_average_density(conn, tank_id, kind)
    return {
        "tank_id": tank.id,
        "tank_name": tank.name,
        "kind": kind.name,
        "weighted_density": as_number(info.density),
        "total_kg": as_number(info.total_kg),
        "total_liters": as_number(info.total_liters),
        "lot_count": info.lot_count,
        "current_kg": as_number(tank.current_kg),
        "current_liters": as_number(tank.current_liters),
    }


# ── Variation analysis ─────────────────────────────────────────────────────────


def _classify(variation_percent: Decimal) -> str:
    """ACCEPT strictly below 1.0%; a variation of exactly 1.0% already warns."""
    accept, warn, adjust = DENSITY_ACTIONS
    if variation_percent < DENSITY_ACCEPT_MAX_PERCENT:
        return accept
    if variation_percent <= DENSITY_WARN_MAX_PERCENT:
        return warn
    return adjust


def analyze_density_variation(
    weighted_density: Any, operational_density: Any, quantity_kg: Any
) -> VariationResult:
    """Compare the density measured at fueling with the tank's weighted density.

    variation_percent is relative to the weighted density; volume impact is
    the difference in liters the same mass occupies at the two densities.
    """
    w = positive_density(weighted_density, "weighted_density")
    op = positive_density(operational_density, "operational_density")
    q = positive_qty(quantity_kg, "quantity_kg")

    variation = abs(op - w)
    raw_percent = variation / w * Decimal(100)
    percent = raw_percent.quantize(PERCENT_PLACES, rounding=ROUND_HALF_UP)
    volume_impact = qty(abs(q / op - q / w))
    action = _classify(raw_percent)

    details = (
        f"Operational density {op} kg/L vs weighted {w} kg/L: "
        f"variation {variation.quantize(DENSITY_PLACES)} kg/L ({percent}%), "
        f"{volume_impact} L impact on {q} kg. Recommended action: {action}."
    )
    return VariationResult(
        weighted_density=w,
        operational_density=op,
        variation=variation.quantize(DENSITY_PLACES, rounding=ROUND_HALF_UP),
        variation_percent=percent,
        volume_impact_liters=volume_impact,
        recommended_action=action,
        details=details,
    )


def analyze_tank_density_variation(
    conn: sqlite3.Connection,
    tank_id: int,
    operational_density: Any,
    quantity_kg: Any,
    kind: TankKind = FIXED,
) -> Dict[str, Any]:
    op = positive_density(operational_density, "operational_density")
    q = positive_qty(quantity_kg, "quantity_kg")
    tank_info = tank_density_info(conn, tank_id, kind)
    weighted = weighted_average_density(conn, tank_id, kind).density
    analysis = analyze_density_variation(weighted, op, q)
    return {"tank_info": tank_info, "analysis": analysis.to_dict()}
