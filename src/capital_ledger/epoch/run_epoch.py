"""
Run epoch management.

Every boot creates a new run epoch. Realized PnL, net equity and every other
accounting aggregate is scoped to the active run id so that trades from a
previous process lifetime can never inflate current equity.
"""

import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..core.errors import InvalidCapital, PhantomEquityDetected, StoreUnavailable
from ..core.logging_utils import LoggerMixin
from ..core.money import D, format_usd, round_usd, sum_usd
from ..state.store import StateStore, utc_now_iso

MODE_FRESH_START = "fresh_start"
MODE_CONTINUATION = "continuation"
MODE_HYBRID_BLOCKED = "hybrid_blocked"


@dataclass(frozen=True)
class RunEpoch:
    """One bootstrap-to-shutdown lifetime of the process."""

    run_id: str
    started_at: str
    starting_capital_usd: float
    fresh_capital_provided: bool
    parent_run_id: Optional[str] = None
    status: str = "active"

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RunEpoch":
        return cls(
            run_id=row["run_id"],
            started_at=row["started_at"],
            starting_capital_usd=float(row["starting_capital"]),
            fresh_capital_provided=bool(row["fresh_capital_provided"]),
            parent_run_id=row.get("parent_run_id"),
            status=row["status"],
        )


@dataclass
class StartupValidation:
    """Outcome of the boot mode decision."""

    valid: bool
    mode: str
    run_id: str
    starting_capital_usd: float
    fresh_capital_provided: bool
    error: Optional[str] = None
    prior_run_id: Optional[str] = None
    prior_net_equity_usd: Optional[float] = None
    open_positions_from_prior: int = 0
    locked_capital_from_prior: float = 0.0
    store_error: Optional[StoreUnavailable] = None


@dataclass
class RunEpochState:
    """Run-scoped equity view."""

    run_id: str
    starting_capital: float
    realized_pnl: float
    unrealized_pnl: float
    net_equity: float
    open_positions: int
    closed_trades: int
    updated_at: str


@dataclass
class EquitySanityCheck:
    """Result of the phantom equity check."""

    valid: bool
    net_equity: float
    max_allowed: float
    error: Optional[str] = None


@dataclass
class HistoricalDataReport:
    """Data from other runs, for diagnostics only."""

    prior_run_count: int = 0
    prior_closed_trades: int = 0
    prior_realized_pnl: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_historical_data(self) -> bool:
        return self.prior_run_count > 0 or self.prior_closed_trades > 0


_run_id_lock = threading.Lock()
_last_run_ms = 0


def generate_run_id() -> str:
    """Generate ``run_<epoch-ms>_<8 hex>``; the millisecond part never goes backwards."""
    global _last_run_ms
    with _run_id_lock:
        now_ms = int(time.time() * 1000)
        if now_ms <= _last_run_ms:
            now_ms = _last_run_ms + 1
        _last_run_ms = now_ms
    return f"run_{now_ms}_{uuid.uuid4().hex[:8]}"


def trade_net_pnl(trade: Dict[str, Any]) -> float:
    """Stored pnl_net wins; otherwise exit - entry - fees - slippage."""
    if trade.get("pnl_net") is not None:
        return float(trade["pnl_net"])
    gross = D(trade.get("exit_asset_value_usd")) - D(trade.get("entry_asset_value_usd"))
    costs = (
        D(trade.get("entry_fees_paid")) + D(trade.get("exit_fees_paid"))
        + D(trade.get("entry_slippage_usd")) + D(trade.get("exit_slippage_usd"))
    )
    return float(gross - costs)


class RunEpochManager(LoggerMixin):
    """Creates and tracks the active run epoch."""

    def __init__(
        self,
        store: StateStore,
        default_capital_usd: float = 10000.0,
        phantom_epsilon_usd: float = 1.0,
        config: Optional[Dict[str, Any]] = None,
    ):
        """Initialize the run epoch manager.

        Args:
            store: Persistent state store
            default_capital_usd: Capital used when nothing was supplied and no prior run exists
            phantom_epsilon_usd: Slack allowed by the phantom equity check
            config: Optional application config (used for logger setup)
        """
        super().__init__()
        self.config = config or {}
        self.store = store
        self.default_capital_usd = default_capital_usd
        self.phantom_epsilon_usd = phantom_epsilon_usd
        self._active_epoch: Optional[RunEpoch] = None
        self._active_mode: Optional[str] = None

    @classmethod
    def from_config(cls, store: StateStore, config_manager) -> "RunEpochManager":
        validated = config_manager.get_validated_config()
        return cls(
            store,
            default_capital_usd=validated.capital.default_capital_usd,
            phantom_epsilon_usd=validated.epoch.phantom_equity_epsilon_usd,
            config=config_manager.to_dict(),
        )

    # ------------------------------------------------------------------
    # boot
    # ------------------------------------------------------------------

    def validate_startup_conditions(
        self,
        fresh_capital_provided: bool,
        amount_usd: Optional[float] = None,
    ) -> StartupValidation:
        """Decide the boot mode.

        - fresh capital + open positions from a prior run -> hybrid_blocked
        - fresh capital, nothing open -> fresh_start
        - no capital, prior epoch exists -> continuation at prior net equity
        - neither -> fresh_start with the configured default

        A store failure fails closed as ``hybrid_blocked``.

        Raises:
            InvalidCapital: If fresh capital is provided but not positive
        """
        if fresh_capital_provided and (amount_usd is None or amount_usd <= 0):
            raise InvalidCapital(amount_usd)

        run_id = generate_run_id()

        try:
            open_positions = self.store.get_open_positions()
            prior_epoch = self.store.get_latest_epoch()
            capital_state = self.store.get_capital_state()
            derived_equity = (
                self._derive_prior_equity(prior_epoch)
                if prior_epoch is not None and capital_state is None
                else None
            )
        except StoreUnavailable as e:
            self.logger.error(f"[RUN-EPOCH] Startup validation failed: {e}")
            return StartupValidation(
                valid=False,
                mode=MODE_HYBRID_BLOCKED,
                run_id=run_id,
                starting_capital_usd=0.0,
                fresh_capital_provided=fresh_capital_provided,
                error=f"Could not read prior state: {e}",
                store_error=e,
            )

        prior_run_id = prior_epoch["run_id"] if prior_epoch else None
        locked_from_prior = sum_usd(p["size_usd"] for p in open_positions)

        if fresh_capital_provided:
            if open_positions:
                error = (
                    f"HYBRID STATE BLOCKED: fresh capital {format_usd(amount_usd)} provided but "
                    f"{len(open_positions)} open position(s) ({format_usd(locked_from_prior)}) remain "
                    f"from run {prior_run_id or 'unknown'}. Close them or restart without capital."
                )
                self.logger.error(f"[RUN-EPOCH] {error}")
                return StartupValidation(
                    valid=False,
                    mode=MODE_HYBRID_BLOCKED,
                    run_id=run_id,
                    starting_capital_usd=float(amount_usd),
                    fresh_capital_provided=True,
                    error=error,
                    prior_run_id=prior_run_id,
                    open_positions_from_prior=len(open_positions),
                    locked_capital_from_prior=locked_from_prior,
                )

            self.logger.info(f"[RUN-EPOCH] Fresh start with {format_usd(amount_usd)}")
            return StartupValidation(
                valid=True,
                mode=MODE_FRESH_START,
                run_id=run_id,
                starting_capital_usd=float(amount_usd),
                fresh_capital_provided=True,
                prior_run_id=prior_run_id,
            )

        if prior_epoch is not None:
            if capital_state is not None:
                prior_equity = round_usd(
                    D(capital_state["available_balance"]) + D(capital_state["locked_balance"])
                )
            else:
                prior_equity = derived_equity

            if prior_equity > 0:
                self.logger.info(
                    f"[RUN-EPOCH] Continuation of {prior_run_id} with inherited equity "
                    f"{format_usd(prior_equity)} ({len(open_positions)} open position(s))"
                )
                return StartupValidation(
                    valid=True,
                    mode=MODE_CONTINUATION,
                    run_id=run_id,
                    starting_capital_usd=prior_equity,
                    fresh_capital_provided=False,
                    prior_run_id=prior_run_id,
                    prior_net_equity_usd=prior_equity,
                    open_positions_from_prior=len(open_positions),
                    locked_capital_from_prior=locked_from_prior,
                )

            self.logger.warning(
                f"[RUN-EPOCH] Prior run {prior_run_id} left no positive equity, "
                f"falling back to default capital"
            )

        self.logger.info(f"[RUN-EPOCH] Fresh start with default capital {format_usd(self.default_capital_usd)}")
        return StartupValidation(
            valid=True,
            mode=MODE_FRESH_START,
            run_id=run_id,
            starting_capital_usd=float(self.default_capital_usd),
            fresh_capital_provided=False,
            prior_run_id=prior_run_id,
            open_positions_from_prior=len(open_positions),
            locked_capital_from_prior=locked_from_prior,
        )

    def _derive_prior_equity(self, prior_epoch: Dict[str, Any]) -> float:
        """Prior starting capital plus the prior run's closed-trade PnL."""
        trades = self.store.get_closed_trades(prior_epoch["run_id"])
        realized = sum_usd(trade_net_pnl(t) for t in trades)
        return round_usd(D(prior_epoch["starting_capital"]) + D(realized))

    def initialize_run_epoch(self, validation: StartupValidation) -> RunEpoch:
        """Persist the new epoch and make it the active run.

        Supersedes any other active epoch. Callable once per manager.

        Raises:
            RuntimeError: If an epoch is already active or the validation failed
            InvalidCapital: If the starting capital is not positive
            StoreUnavailable: If the epoch cannot be persisted
        """
        if self._active_epoch is not None:
            raise RuntimeError(f"Run epoch already initialized: {self._active_epoch.run_id}")
        if not validation.valid:
            raise RuntimeError(f"Cannot initialize run epoch from invalid validation: {validation.error}")
        if validation.starting_capital_usd <= 0:
            raise InvalidCapital(validation.starting_capital_usd)

        parent_run_id = validation.prior_run_id if validation.mode == MODE_CONTINUATION else None
        epoch = RunEpoch(
            run_id=validation.run_id,
            started_at=utc_now_iso(),
            starting_capital_usd=round_usd(validation.starting_capital_usd),
            fresh_capital_provided=validation.fresh_capital_provided,
            parent_run_id=parent_run_id,
        )

        with self.store.transaction():
            superseded = self.store.close_active_epochs(except_run_id=epoch.run_id)
            self.store.insert_run_epoch(
                run_id=epoch.run_id,
                started_at=epoch.started_at,
                starting_capital=epoch.starting_capital_usd,
                fresh_capital_provided=epoch.fresh_capital_provided,
                parent_run_id=epoch.parent_run_id,
            )

        self._active_epoch = epoch
        self._active_mode = validation.mode
        self.logger.info(
            f"[RUN-EPOCH] Started {epoch.run_id} mode={validation.mode} "
            f"starting_capital={format_usd(epoch.starting_capital_usd)} "
            f"parent={epoch.parent_run_id or '-'} superseded={superseded}"
        )
        return epoch

    # ------------------------------------------------------------------
    # accessors
    # ------------------------------------------------------------------

    def get_active_epoch(self) -> Optional[RunEpoch]:
        return self._active_epoch

    def get_active_mode(self) -> Optional[str]:
        """Boot mode (fresh_start or continuation) of the active epoch."""
        return self._active_mode

    def get_active_run_id(self) -> Optional[str]:
        return self._active_epoch.run_id if self._active_epoch else None

    def require_active_run_id(self) -> str:
        """Active run id, or RuntimeError if no epoch was initialized."""
        if self._active_epoch is None:
            raise RuntimeError("No active run epoch; initialize_run_epoch() must run first")
        return self._active_epoch.run_id

    def get_starting_capital(self) -> float:
        return self._active_epoch.starting_capital_usd if self._active_epoch else 0.0

    def is_fresh_start(self) -> bool:
        return bool(self._active_epoch and self._active_epoch.fresh_capital_provided)

    # ------------------------------------------------------------------
    # run-scoped aggregates
    # ------------------------------------------------------------------

    def get_run_scoped_realized_pnl(self) -> float:
        """Realized PnL of closed trades owned by the active run."""
        run_id = self.get_active_run_id()
        if run_id is None:
            self.logger.warning("[RUN-EPOCH] No active run, realized PnL is 0")
            return 0.0
        trades = self.store.get_closed_trades(run_id)
        return sum_usd(trade_net_pnl(t) for t in trades)

    def get_run_scoped_net_equity(self, unrealized_pnl_usd: float = 0.0) -> RunEpochState:
        """starting capital + run realized PnL + unrealized PnL."""
        run_id = self.require_active_run_id()
        starting = self.get_starting_capital()
        realized = self.get_run_scoped_realized_pnl()
        net_equity = round_usd(D(starting) + D(realized) + D(unrealized_pnl_usd))

        return RunEpochState(
            run_id=run_id,
            starting_capital=round_usd(starting),
            realized_pnl=round_usd(realized),
            unrealized_pnl=round_usd(unrealized_pnl_usd),
            net_equity=net_equity,
            open_positions=len(self.store.get_open_positions(run_id=run_id)),
            closed_trades=self.store.count_closed_trades(run_id),
            updated_at=datetime.now(timezone.utc).isoformat(),
        )

    def sanity_check_equity(
        self,
        net_equity_usd: float,
        starting_capital_usd: float,
        max_unrealized_usd: float,
        epsilon_usd: Optional[float] = None,
    ) -> EquitySanityCheck:
        """Flag phantom equity: net equity above starting + max unrealized + epsilon."""
        epsilon = self.phantom_epsilon_usd if epsilon_usd is None else epsilon_usd
        max_allowed = round_usd(D(starting_capital_usd) + D(max_unrealized_usd) + D(epsilon))

        if net_equity_usd > max_allowed:
            error = (
                f"PHANTOM EQUITY DETECTED: net equity {format_usd(net_equity_usd)} exceeds "
                f"starting {format_usd(starting_capital_usd)} + max unrealized "
                f"{format_usd(max_unrealized_usd)} + epsilon {format_usd(epsilon)} = {format_usd(max_allowed)}"
            )
            self.logger.error(f"[RUN-EPOCH] {error}")
            return EquitySanityCheck(False, net_equity_usd, max_allowed, error)

        return EquitySanityCheck(True, net_equity_usd, max_allowed)

    def assert_no_phantom_equity(
        self,
        net_equity_usd: float,
        starting_capital_usd: float,
        max_unrealized_usd: float,
        epsilon_usd: Optional[float] = None,
    ) -> EquitySanityCheck:
        """Raising variant of ``sanity_check_equity``.

        Raises:
            PhantomEquityDetected: If the check fails
        """
        result = self.sanity_check_equity(
            net_equity_usd, starting_capital_usd, max_unrealized_usd, epsilon_usd
        )
        if not result.valid:
            raise PhantomEquityDetected(result.error)
        return result

    def check_historical_data_outside_run(self) -> HistoricalDataReport:
        """Report data from other runs. Never folded into equity."""
        run_id = self.get_active_run_id()
        if run_id is None:
            return HistoricalDataReport()

        prior_trades = self.store.get_closed_trades_outside_run(run_id)
        report = HistoricalDataReport(
            prior_run_count=self.store.count_run_epochs_excluding(run_id),
            prior_closed_trades=len(prior_trades),
            prior_realized_pnl=sum_usd(trade_net_pnl(t) for t in prior_trades),
            details={
                "run_ids": sorted({t["run_id"] for t in prior_trades}),
            },
        )
        if report.has_historical_data:
            self.logger.info(
                f"[RUN-EPOCH] Excluding {report.prior_closed_trades} closed trade(s) "
                f"({format_usd(report.prior_realized_pnl)}) from {report.prior_run_count} prior run(s)"
            )
        return report

    def close_run_epoch(self) -> bool:
        """Mark the active epoch closed (graceful shutdown)."""
        if self._active_epoch is None:
            return False

        closed = self.store.close_run_epoch(self._active_epoch.run_id)
        self.logger.info(f"[RUN-EPOCH] Closed {self._active_epoch.run_id}")
        self._active_epoch = replace(self._active_epoch, status="closed")
        return closed
