"""
Error taxonomy for the fuel ledger.

Every error is a ValueError carrying the HTTP-class status code that the
routers hand to HTTPException.
"""

from decimal import Decimal
from typing import Any, Dict


class LedgerError(ValueError):
    status_code = 500

    def to_detail(self) -> Any:
        return str(self)


class NotFoundError(LedgerError):
    status_code = 404


class ValidationError(LedgerError):
    status_code = 400


class InsufficientFuelError(LedgerError):
    """Requested quantity exceeds what the lot ledger (or reserve queue) holds.

    Usually means the tank's cached total has drifted ahead of its lots and a
    reconciliation is due.
    """

    status_code = 400

    def __init__(self, message: str, requested: Decimal, available: Decimal, unit: str = "kg"):
        super().__init__(message)
        self.requested = requested
        self.available = available
        self.unit = unit

    def to_detail(self) -> Dict[str, Any]:
        return {
            "message": str(self),
            "requested": str(self.requested),
            "available": str(self.available),
            "unit": self.unit,
        }


class NoEligibleDonorError(LedgerError):
    status_code = 409


class ConcurrentMutationError(LedgerError):
    status_code = 503


class StorageFailureError(LedgerError):
    status_code = 500
