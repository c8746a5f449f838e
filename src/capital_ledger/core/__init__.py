"""
Core utilities for the capital ledger.
"""

from .config_manager import ConfigManager
from .errors import (
    CapitalLedgerError,
    DuplicatePosition,
    HybridStateBlocked,
    InsufficientCapital,
    InvalidCapital,
    InvariantViolation,
    PhantomEquityDetected,
    ReconciliationSealError,
    StartupAborted,
    StoreUnavailable,
)
from .logging_utils import LoggerMixin, get_logger, setup_logging
from .money import format_usd, round_usd

__all__ = [
    "ConfigManager",
    "LoggerMixin",
    "get_logger",
    "setup_logging",
    "format_usd",
    "round_usd",
    "CapitalLedgerError",
    "DuplicatePosition",
    "HybridStateBlocked",
    "InsufficientCapital",
    "InvalidCapital",
    "InvariantViolation",
    "PhantomEquityDetected",
    "ReconciliationSealError",
    "StartupAborted",
    "StoreUnavailable",
]
