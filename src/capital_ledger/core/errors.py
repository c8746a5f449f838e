"""
Exception taxonomy for capital accounting and startup recovery.
"""

from typing import Any, Optional


class CapitalLedgerError(Exception):
    """Base class for all capital ledger errors."""
    pass


class InvalidCapital(CapitalLedgerError):
    """Raised when a capital amount is zero, negative or not a number."""

    def __init__(self, amount: Any, message: Optional[str] = None):
        self.amount = amount
        super().__init__(message or f"Invalid capital: ${amount} - must be positive")


class InsufficientCapital(CapitalLedgerError):
    """Raised when a position needs more capital than is available."""

    def __init__(self, requested_usd: float, available_usd: float):
        self.requested_usd = requested_usd
        self.available_usd = available_usd
        super().__init__(
            f"Insufficient capital: trying to deploy ${requested_usd:.2f} "
            f"but only ${available_usd:.2f} available"
        )


class DuplicatePosition(CapitalLedgerError):
    """Raised when a trade id is opened twice and updating is not allowed."""

    def __init__(self, trade_id: str):
        self.trade_id = trade_id
        super().__init__(f"Position {trade_id} is already tracked")


class InvariantViolation(CapitalLedgerError):
    """Raised when ledger or reconciled capital numbers do not balance."""

    def __init__(self, message: str, result: Any = None):
        self.result = result
        super().__init__(message)


class HybridStateBlocked(CapitalLedgerError):
    """Raised when fresh capital is supplied while prior positions are still open."""

    def __init__(self, message: str, validation: Any = None):
        self.validation = validation
        super().__init__(message)


class PhantomEquityDetected(CapitalLedgerError):
    """Raised when net equity exceeds what the run could possibly have earned."""
    pass


class StoreUnavailable(CapitalLedgerError):
    """Raised when the persistent store cannot be read or written."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Store unavailable during {operation}{detail}")


class StartupAborted(CapitalLedgerError):
    """Fatal boot error. Trading must not start."""

    def __init__(
        self,
        summary: str,
        cause: Optional[BaseException] = None,
        result: Any = None,
    ):
        self.summary = summary
        self.cause = cause
        self.result = result
        super().__init__(summary)


class ReconciliationSealError(CapitalLedgerError):
    """Raised when the post-reconciliation seal contract is broken."""
    pass
