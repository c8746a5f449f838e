"""
Portfolio ledger and the store-backed capital flow around it.
"""

from .capital_manager import CapitalManager, ClosedPosition
from .ledger import (
    InvariantCheckResult,
    LedgerPosition,
    LedgerState,
    PortfolioLedger,
    TierAllocation,
)

__all__ = [
    "CapitalManager",
    "ClosedPosition",
    "InvariantCheckResult",
    "LedgerPosition",
    "LedgerState",
    "PortfolioLedger",
    "TierAllocation",
]
