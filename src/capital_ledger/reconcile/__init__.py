"""
Startup reconciliation and PnL drift auditing.
"""

from .pnl import (
    OpenPositionMark,
    PnLReconciliationResult,
    PnLReconciliationService,
    RealizedPnLResult,
    TradePnL,
)
from .startup import (
    RECOVERY_EXIT,
    ReconcileSummary,
    ReconcilerState,
    ReconciliationSeal,
    StartupReconciler,
)

__all__ = [
    "OpenPositionMark",
    "PnLReconciliationResult",
    "PnLReconciliationService",
    "RealizedPnLResult",
    "TradePnL",
    "RECOVERY_EXIT",
    "ReconcileSummary",
    "ReconcilerState",
    "ReconciliationSeal",
    "StartupReconciler",
]
