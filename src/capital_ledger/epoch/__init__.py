"""
Run epoch management.
"""

from .run_epoch import (
    MODE_CONTINUATION,
    MODE_FRESH_START,
    MODE_HYBRID_BLOCKED,
    EquitySanityCheck,
    HistoricalDataReport,
    RunEpoch,
    RunEpochManager,
    RunEpochState,
    StartupValidation,
    generate_run_id,
)

__all__ = [
    "MODE_CONTINUATION",
    "MODE_FRESH_START",
    "MODE_HYBRID_BLOCKED",
    "EquitySanityCheck",
    "HistoricalDataReport",
    "RunEpoch",
    "RunEpochManager",
    "RunEpochState",
    "StartupValidation",
    "generate_run_id",
]
