"""
Shared constants for the fuel ledger.

Thresholds that operators tune live in the environment; the classification
limits below are fixed business rules.
"""

import os
from decimal import Decimal
from typing import Dict, FrozenSet, Tuple

# ---------------------------------------------------------------------------
# Precision
# ---------------------------------------------------------------------------

QUANTITY_PLACES = Decimal("0.001")
DENSITY_PLACES = Decimal("0.0001")
PERCENT_PLACES = Decimal("0.0001")
ZERO = Decimal("0")

# Tolerance when comparing summed legs against a requested amount.
CONSERVATION_EPSILON = Decimal("0.000001")

# ---------------------------------------------------------------------------
# Density
# ---------------------------------------------------------------------------

# Fallback only: used when a tank has no active lot with volume, or a
# reserve entry was recorded without a density.
DEFAULT_DENSITY_KG_PER_L = Decimal(os.environ.get("LEDGER_DEFAULT_DENSITY", "0.8"))

DENSITY_ACCEPT_MAX_PERCENT = Decimal("1.0")
DENSITY_WARN_MAX_PERCENT = Decimal("3.0")

DENSITY_ACTIONS: Tuple[str, str, str] = ("ACCEPT", "WARN", "ADJUST")

# ---------------------------------------------------------------------------
# Reconciliation report severity (absolute kg difference)
# ---------------------------------------------------------------------------

SEVERITY_LOW_MAX_KG = Decimal("50")
SEVERITY_MEDIUM_MAX_KG = Decimal("500")

# ---------------------------------------------------------------------------
# Excess fuel sweep
# ---------------------------------------------------------------------------

EXCESS_SWAP_MIN_LITERS = Decimal(os.environ.get("EXCESS_SWAP_MIN_LITERS", "0.1"))
EXCESS_SWAP_BATCH_SIZE = int(os.environ.get("EXCESS_SWAP_BATCH_SIZE", "10"))

# ---------------------------------------------------------------------------
# Transaction legs
# ---------------------------------------------------------------------------

LEG_TYPES: FrozenSet[str] = frozenset({
    "INTAKE",
    "FUELING",
    "TRANSFER_OUT",
    "TRANSFER_IN",
    "DRAIN",
    "EXCESS_EXCHANGE_OUT",
    "EXCESS_EXCHANGE_IN",
    "RECONCILIATION",
    "EXCESS_TO_RESERVE",
    "DRAIN_REVERSAL",
    "MRN_CLEANUP",
    "MRN_CONSOLIDATION",
})

# Leg types the FIFO allocator may be asked to record.
CONSUMING_LEG_TYPES = {"FUELING", "TRANSFER_OUT", "DRAIN"}

QUANTITY_UNITS: Dict[str, str] = {
    "kg": "remaining_kg",
    "liters": "remaining_liters",
}

# ---------------------------------------------------------------------------
# MRN remnant cleanup
# ---------------------------------------------------------------------------

# A lot at or under either small threshold is a remnant.  Fixed tanks write
# off dust and fold the other remnants into one MISC lot; mobile tanks write
# off every remnant.
MRN_CLEANUP_LITERS_THRESHOLD = Decimal(os.environ.get("MRN_CLEANUP_LITERS_THRESHOLD", "2.0"))
MRN_CLEANUP_KG_THRESHOLD = Decimal(os.environ.get("MRN_CLEANUP_KG_THRESHOLD", "1.5"))
MRN_DUST_LITERS_THRESHOLD = Decimal(os.environ.get("MRN_DUST_LITERS_THRESHOLD", "0.5"))
MRN_DUST_KG_THRESHOLD = Decimal(os.environ.get("MRN_DUST_KG_THRESHOLD", "0.3"))
MRN_CONSOLIDATION_MAX_LITERS = Decimal(os.environ.get("MRN_CONSOLIDATION_MAX_LITERS", "5.0"))
