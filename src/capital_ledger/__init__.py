"""
Capital Ledger - run-scoped capital accounting and crash recovery for trading bots.

This package provides the portfolio ledger, run epoch management, startup
reconciliation and PnL drift auditing that sit beneath a trading loop.
"""

__version__ = "0.1.0"

from .bootstrap import BootContext, bootstrap, shutdown
from .core.config_manager import ConfigManager
from .core.logging_utils import setup_logging

__all__ = [
    "BootContext",
    "ConfigManager",
    "bootstrap",
    "setup_logging",
    "shutdown",
]
