"""
Startup reconciliation.

Runs once per process, after the run epoch is initialized and before any
trading entry point is reachable:

1. force-close every open position and trade with a PnL-neutral recovery exit
2. delete capital locks whose trade is no longer open
3. derive capital from durable aggregates
4. apply the run-mode override (fresh starts inherit nothing)
5. validate the numbers; any violation aborts startup
6. persist capital_state and seed the portfolio ledger
7. emit one ``[RECONCILE-SUMMARY]`` audit line
"""

import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.errors import (
    InvalidCapital,
    InvariantViolation,
    ReconciliationSealError,
    StartupAborted,
    StoreUnavailable,
)
from ..core.logging_utils import LoggerMixin, audit_line
from ..core.money import D, ZERO, format_usd, round_usd, sum_usd, within_tolerance
from ..epoch.run_epoch import MODE_CONTINUATION, MODE_FRESH_START, RunEpochManager, trade_net_pnl
from ..portfolio.ledger import LedgerPosition, PortfolioLedger
from ..state.store import StateStore

RECOVERY_EXIT = "RECOVERY_EXIT"

STATUS_OK = "OK"
STATUS_ERROR = "ERROR"


class ReconcilerState(Enum):
    """One-shot lifecycle of the startup reconciler."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class DerivedCapitalSnapshot:
    """Capital recomputed from the store. Never persisted as authoritative."""

    initial_capital: float
    total_realized_pnl: float
    total_unrealized_pnl: float
    open_position_count: int
    total_locked_capital: float
    deployed_capital: float
    external_locked_capital: float
    positions: Tuple[Dict[str, Any], ...] = ()

    @property
    def total_capital(self) -> float:
        return round_usd(D(self.initial_capital) + D(self.total_realized_pnl))

    @property
    def available_capital(self) -> float:
        return round_usd(
            D(self.total_capital) - D(self.deployed_capital) - D(self.external_locked_capital)
        )


@dataclass(frozen=True)
class ReconcileSummary:
    """Audit record of one reconciliation pass."""

    run_id: str
    mode: str
    status: str
    positions_recovered: int = 0
    trades_recovered: int = 0
    orphaned_locks_cleared: int = 0
    capital_released_usd: float = 0.0
    total_capital_usd: float = 0.0
    deployed_usd: float = 0.0
    available_usd: float = 0.0
    locked_usd: float = 0.0
    realized_pnl_usd: float = 0.0
    open_positions_after: int = 0
    open_position_ids: Tuple[str, ...] = ()
    errors: Tuple[str, ...] = ()
    is_repeat: bool = False
    completed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["open_position_ids"] = list(self.open_position_ids)
        data["errors"] = list(self.errors)
        return data

    def describe(self) -> str:
        """One human-readable line for operators."""
        breakdown = (
            f"total={format_usd(self.total_capital_usd)} deployed={format_usd(self.deployed_usd)} "
            f"available={format_usd(self.available_usd)} locked={format_usd(self.locked_usd)}"
        )
        if self.errors:
            return f"Startup reconciliation {self.status}: {'; '.join(self.errors)} ({breakdown})"
        return f"Startup reconciliation {self.status}: {breakdown}"


@dataclass(frozen=True)
class ReconciliationSeal:
    """Frozen reconciled state that later hydration must agree with."""

    run_id: str
    open_position_ids: Tuple[str, ...]
    locked_total_usd: float
    total_capital_usd: float
    sealed_at: str


class StartupReconciler(LoggerMixin):
    """
    Repairs durable state after an ungraceful shutdown and seeds the ledger.

    ``run()`` performs recovery exactly once. Later calls (or a concurrent
    call while the first is running) only recompute derived capital.
    """

    def __init__(
        self,
        store: StateStore,
        ledger: PortfolioLedger,
        epoch_manager: RunEpochManager,
        grace_period_sec: float = 300.0,
        tolerance_usd: float = 0.01,
        clock: Callable[[], float] = time.monotonic,
        config: Optional[Dict[str, Any]] = None,
    ):
        """Initialize the reconciler.

        Args:
            store: Persistent state store
            ledger: Ledger seeded once reconciliation succeeds
            epoch_manager: Provides the active run id and boot mode
            grace_period_sec: Window after completion during which PnL drift is not corrected
            tolerance_usd: Slack for invariant checks
            clock: Monotonic clock (injectable for tests)
            config: Optional application config (used for logger setup)
        """
        super().__init__()
        self.config = config or {}
        self.store = store
        self.ledger = ledger
        self.epoch_manager = epoch_manager
        self.grace_period_sec = grace_period_sec
        self.tolerance_usd = tolerance_usd
        self._clock = clock

        self._state = ReconcilerState.NOT_STARTED
        self._state_lock = threading.Lock()
        self._state_changed = threading.Condition(self._state_lock)
        self._completed_at: Optional[float] = None
        self._last_summary: Optional[ReconcileSummary] = None
        self._seal: Optional[ReconciliationSeal] = None

    @classmethod
    def from_config(
        cls,
        store: StateStore,
        ledger: PortfolioLedger,
        epoch_manager: RunEpochManager,
        config_manager,
    ) -> "StartupReconciler":
        validated = config_manager.get_validated_config()
        return cls(
            store,
            ledger,
            epoch_manager,
            grace_period_sec=validated.reconciliation.grace_period_sec,
            tolerance_usd=validated.ledger.invariant_tolerance_usd,
            config=config_manager.to_dict(),
        )

    @property
    def state(self) -> ReconcilerState:
        return self._state

    @property
    def last_summary(self) -> Optional[ReconcileSummary]:
        return self._last_summary

    @property
    def seal(self) -> Optional[ReconciliationSeal]:
        return self._seal

    def is_completed(self) -> bool:
        return self._state == ReconcilerState.COMPLETED

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    def run(self, mode: Optional[str] = None) -> ReconcileSummary:
        """Reconcile once; later calls only recompute derived state.

        A call made while another is still running blocks until that run
        finishes and then reports its outcome.

        Args:
            mode: ``fresh_start`` or ``continuation``; defaults to the epoch's boot mode

        Raises:
            StartupAborted: If reconciliation fails (now or on an earlier call)
            RuntimeError: If no run epoch is active
            ValueError: If ``mode`` is not fresh_start or continuation
        """
        self.epoch_manager.require_active_run_id()
        mode = self._resolve_mode(mode)

        with self._state_changed:
            previous = self._state
            if previous == ReconcilerState.NOT_STARTED:
                self._state = ReconcilerState.RUNNING
            elif previous == ReconcilerState.RUNNING:
                self.logger.info("[RECONCILE] Reconciliation in progress, waiting for it to finish")
                self._state_changed.wait_for(lambda: self._state != ReconcilerState.RUNNING)
                previous = self._state

        if previous == ReconcilerState.FAILED:
            summary = self._last_summary
            raise StartupAborted(
                summary.describe() if summary else "Startup reconciliation previously failed",
                result=summary,
            )
        if previous == ReconcilerState.COMPLETED:
            self.logger.info("[RECONCILE] Already completed, recomputing derived state only")
            return self._recompute_only(mode)

        return self._run_once(mode)

    def _resolve_mode(self, mode: Optional[str]) -> str:
        resolved = mode or self.epoch_manager.get_active_mode() or MODE_CONTINUATION
        if resolved not in (MODE_FRESH_START, MODE_CONTINUATION):
            raise ValueError(f"Unsupported reconciliation mode: {resolved}")
        return resolved

    def _run_once(self, mode: str) -> ReconcileSummary:
        run_id = self.epoch_manager.require_active_run_id()
        self.logger.info(f"[RECONCILE] Starting startup reconciliation run={run_id} mode={mode}")

        errors: List[str] = []
        counters = {"positions": 0, "trades": 0, "locks": 0, "released": ZERO}
        derived: Optional[DerivedCapitalSnapshot] = None

        try:
            self._recover_open_positions(counters, errors)
            self._clear_orphaned_locks(counters, errors)
            derived = self._apply_mode_override(self.derive_capital_state(), mode)

            violations = self._validate(derived)
            if violations:
                raise InvariantViolation("; ".join(violations))

            self._persist_and_seed(derived)
            summary = self._build_summary(run_id, mode, STATUS_OK, derived, counters, errors)
            self._apply_seal(summary)
        except BaseException as e:
            # Any failure, expected or not, ends in FAILED
            errors.append(str(e) or type(e).__name__)
            summary = self._build_summary(run_id, mode, STATUS_ERROR, derived, counters, errors)
            self._finish(ReconcilerState.FAILED, summary)
            expected = isinstance(e, (StoreUnavailable, InvariantViolation, InvalidCapital, ValueError))
            self.logger.error(f"[RECONCILE] {summary.describe()}", exc_info=not expected)
            if isinstance(e, Exception):
                raise StartupAborted(summary.describe(), cause=e, result=summary) from e
            raise

        self._finish(ReconcilerState.COMPLETED, summary)
        return summary

    def _finish(self, state: ReconcilerState, summary: ReconcileSummary) -> None:
        with self._state_changed:
            self._state = state
            self._last_summary = summary
            if state == ReconcilerState.COMPLETED:
                self._completed_at = self._clock()
            self._state_changed.notify_all()
        self.logger.info(audit_line("RECONCILE-SUMMARY", summary.to_dict()))

    def _recompute_only(self, mode: str) -> ReconcileSummary:
        run_id = self.epoch_manager.require_active_run_id()
        derived = self._apply_mode_override(self.derive_capital_state(), mode)
        counters = {"positions": 0, "trades": 0, "locks": 0, "released": ZERO}
        summary = self._build_summary(run_id, mode, STATUS_OK, derived, counters, [], is_repeat=True)
        self.logger.info(summary.describe())
        return summary

    # ------------------------------------------------------------------
    # steps
    # ------------------------------------------------------------------

    def _recover_open_positions(self, counters: Dict[str, Any], errors: List[str]) -> None:
        """Step 1: force-close open positions and orphaned open trades at zero PnL."""
        open_positions = self.store.get_open_positions()
        open_trades = {t["id"]: t for t in self.store.get_open_trades()}

        for position in open_positions:
            trade_id = position["trade_id"]
            trade = open_trades.pop(trade_id, None)
            try:
                with self.store.transaction():
                    self.store.close_position(trade_id, RECOVERY_EXIT, pnl_usd=0.0)
                    if trade is not None:
                        self._close_trade_neutral(trade)
                    released = self.store.release_lock(trade_id)
            except StoreUnavailable as e:
                message = f"Could not recover position {trade_id}: {e}"
                self.logger.error(f"[RECONCILE] {message}")
                errors.append(message)
                continue

            counters["positions"] += 1
            if trade is not None:
                counters["trades"] += 1
            counters["released"] += D(released)
            self.logger.info(
                f"[RECONCILE] Recovered position {trade_id} pool={position['pool_address']} "
                f"size={format_usd(position['size_usd'])} exit={RECOVERY_EXIT} pnl=$0.00"
            )

        # Open trades with no position row
        for trade_id, trade in open_trades.items():
            try:
                with self.store.transaction():
                    self._close_trade_neutral(trade)
                    released = self.store.release_lock(trade_id)
            except StoreUnavailable as e:
                message = f"Could not recover orphaned trade {trade_id}: {e}"
                self.logger.error(f"[RECONCILE] {message}")
                errors.append(message)
                continue

            counters["trades"] += 1
            counters["released"] += D(released)
            self.logger.info(f"[RECONCILE] Recovered orphaned trade {trade_id} exit={RECOVERY_EXIT}")

    def _close_trade_neutral(self, trade: Dict[str, Any]) -> None:
        """Exit at entry: the PnL of an unobserved exit is never guessed."""
        self.store.close_trade(
            trade["id"],
            exit_value_usd=float(trade["entry_asset_value_usd"]),
            pnl_net=0.0,
            exit_reason=RECOVERY_EXIT,
            exit_fees=0.0,
            exit_slippage=0.0,
            exit_price=trade.get("entry_price"),
        )

    def _clear_orphaned_locks(self, counters: Dict[str, Any], errors: List[str]) -> None:
        """Step 2: delete locks whose trade is not open. Failures are logged, not fatal."""
        try:
            open_trade_ids = {t["id"] for t in self.store.get_open_trades()}
            locks = self.store.get_capital_locks()
        except StoreUnavailable as e:
            self.logger.warning(f"[RECONCILE] Skipping orphaned lock sweep: {e}")
            return

        for lock in locks:
            if lock["trade_id"] in open_trade_ids:
                continue
            try:
                self.store.release_lock(lock["trade_id"])
            except StoreUnavailable as e:
                self.logger.warning(f"[RECONCILE] Could not clear lock {lock['trade_id']}: {e}")
                continue
            counters["locks"] += 1
            self.logger.info(
                f"[RECONCILE] Cleared orphaned lock {lock['trade_id']} ({format_usd(lock['amount'])})"
            )

    def derive_capital_state(self) -> DerivedCapitalSnapshot:
        """Step 3: recompute capital from durable aggregates only.

        Raises:
            StoreUnavailable: If trades or positions cannot be read
        """
        epoch = self.epoch_manager.get_active_epoch()
        if epoch is None:
            raise RuntimeError("No active run epoch; initialize_run_epoch() must run first")

        closed_trades = self.store.get_closed_trades(epoch.run_id)
        positions = self.store.get_open_positions()

        try:
            locks = self.store.get_capital_locks()
        except StoreUnavailable as e:
            self.logger.warning(f"[RECONCILE] Capital locks unreadable, treating as zero: {e}")
            locks = []

        position_ids = {p["trade_id"] for p in positions}
        external_locked = sum_usd(l["amount"] for l in locks if l["trade_id"] not in position_ids)

        return DerivedCapitalSnapshot(
            initial_capital=round_usd(epoch.starting_capital_usd),
            total_realized_pnl=sum_usd(trade_net_pnl(t) for t in closed_trades),
            total_unrealized_pnl=sum_usd(p.get("pnl_usd") or 0.0 for p in positions),
            open_position_count=len(positions),
            total_locked_capital=sum_usd(l["amount"] for l in locks),
            deployed_capital=sum_usd(p["size_usd"] for p in positions),
            external_locked_capital=external_locked,
            positions=tuple(positions),
        )

    def _apply_mode_override(self, derived: DerivedCapitalSnapshot, mode: str) -> DerivedCapitalSnapshot:
        """Step 4: a fresh start inherits no realized PnL, locks or positions."""
        if mode != MODE_FRESH_START:
            return derived
        return DerivedCapitalSnapshot(
            initial_capital=derived.initial_capital,
            total_realized_pnl=0.0,
            total_unrealized_pnl=0.0,
            open_position_count=0,
            total_locked_capital=0.0,
            deployed_capital=0.0,
            external_locked_capital=0.0,
            positions=(),
        )

    def _validate(self, derived: DerivedCapitalSnapshot) -> List[str]:
        """Step 5: return every violated equation (empty when balanced)."""
        tol = self.tolerance_usd
        violations = []

        if derived.total_capital <= 0:
            violations.append(
                f"INVALID CAPITAL: initial ({format_usd(derived.initial_capital)}) + realized "
                f"({format_usd(derived.total_realized_pnl)}) = {format_usd(derived.total_capital)} is not positive"
            )
        if derived.open_position_count != len(derived.positions):
            violations.append(
                f"INVARIANT VIOLATED: open position count ({derived.open_position_count}) != "
                f"position rows ({len(derived.positions)})"
            )

        sum_positions = sum_usd(p["size_usd"] for p in derived.positions)
        if not within_tolerance(derived.deployed_capital, sum_positions, tol):
            violations.append(
                f"INVARIANT 1 VIOLATED: deployed ({format_usd(derived.deployed_capital)}) != "
                f"sum of positions ({format_usd(sum_positions)})"
            )

        accounting_sum = (
            D(derived.available_capital) + D(derived.deployed_capital) + D(derived.external_locked_capital)
        )
        if not within_tolerance(accounting_sum, derived.total_capital, tol):
            violations.append(
                f"INVARIANT 2 VIOLATED: available + deployed + locked ({format_usd(accounting_sum)}) != "
                f"total ({format_usd(derived.total_capital)})"
            )
        if derived.available_capital < -tol:
            violations.append(
                f"INVARIANT 2 VIOLATED: available capital is negative ({format_usd(derived.available_capital)}): "
                f"total {format_usd(derived.total_capital)} - deployed {format_usd(derived.deployed_capital)} "
                f"- locked {format_usd(derived.external_locked_capital)}"
            )
        if derived.total_locked_capital < 0:
            violations.append(
                f"INVARIANT VIOLATED: locked capital is negative ({format_usd(derived.total_locked_capital)})"
            )

        for position in derived.positions:
            size = position["size_usd"]
            if size is None or size <= 0:
                violations.append(
                    f"INVARIANT 5 VIOLATED: position {position['trade_id']} has non-positive notional (${size})"
                )
            tier = position.get("tier")
            if tier is not None and tier not in self.ledger.tiers:
                violations.append(
                    f"INVARIANT 3 VIOLATED: position {position['trade_id']} has unknown tier '{tier}'"
                )

        return violations

    def _persist_and_seed(self, derived: DerivedCapitalSnapshot) -> None:
        """Step 6: write capital_state, then seed the ledger."""
        locked_balance = round_usd(D(derived.deployed_capital) + D(derived.external_locked_capital))
        self.store.save_capital_state(
            initial_capital=derived.initial_capital,
            available_balance=derived.available_capital,
            locked_balance=locked_balance,
            total_realized_pnl=derived.total_realized_pnl,
        )

        result = self.ledger.sync_from_external(
            [self._to_ledger_position(row) for row in derived.positions],
            total_capital_usd=derived.total_capital,
            locked_capital_usd=derived.external_locked_capital,
            realized_pnl_usd=derived.total_realized_pnl,
        )
        if not result.valid:
            raise InvariantViolation("; ".join(result.errors), result)

    def _to_ledger_position(self, row: Dict[str, Any]) -> LedgerPosition:
        tier = row.get("tier")
        if tier is None:
            tier = self.ledger.tiers[-1]
            self.logger.warning(f"[RECONCILE] Position {row['trade_id']} has no tier, seeding as {tier}")
        return LedgerPosition(
            trade_id=row["trade_id"],
            pool=row["pool_address"],
            tier=tier,
            notional_usd=float(row["size_usd"]),
            opened_at=datetime.fromisoformat(row["opened_at"]),
        )

    def _build_summary(
        self,
        run_id: str,
        mode: str,
        status: str,
        derived: Optional[DerivedCapitalSnapshot],
        counters: Dict[str, Any],
        errors: List[str],
        is_repeat: bool = False,
    ) -> ReconcileSummary:
        base = dict(
            run_id=run_id,
            mode=mode,
            status=status,
            positions_recovered=counters["positions"],
            trades_recovered=counters["trades"],
            orphaned_locks_cleared=counters["locks"],
            capital_released_usd=round_usd(counters["released"]),
            errors=tuple(errors),
            is_repeat=is_repeat,
        )
        if derived is None:
            return ReconcileSummary(**base)
        return ReconcileSummary(
            total_capital_usd=derived.total_capital,
            deployed_usd=derived.deployed_capital,
            available_usd=derived.available_capital,
            locked_usd=derived.external_locked_capital,
            realized_pnl_usd=derived.total_realized_pnl,
            open_positions_after=derived.open_position_count,
            open_position_ids=tuple(p["trade_id"] for p in derived.positions),
            **base,
        )

    # ------------------------------------------------------------------
    # seal
    # ------------------------------------------------------------------

    def _apply_seal(self, summary: ReconcileSummary) -> ReconciliationSeal:
        if self._seal is not None:
            raise ReconciliationSealError(f"Reconciliation already sealed for {self._seal.run_id}")

        self._seal = ReconciliationSeal(
            run_id=summary.run_id,
            open_position_ids=summary.open_position_ids,
            locked_total_usd=round_usd(D(summary.deployed_usd) + D(summary.locked_usd)),
            total_capital_usd=summary.total_capital_usd,
            sealed_at=summary.completed_at,
        )
        self.ledger.seal()
        self.logger.info(
            f"[RECONCILE] Sealed: positions={len(self._seal.open_position_ids)} "
            f"locked={format_usd(self._seal.locked_total_usd)}"
        )
        return self._seal

    def validate_hydration(self, position_count: int, locked_usd: float) -> None:
        """Check that state hydrated after boot matches the seal.

        Raises:
            ReconciliationSealError: If not sealed or the numbers disagree
        """
        if self._seal is None:
            raise ReconciliationSealError("Hydration attempted before reconciliation was sealed")

        expected_count = len(self._seal.open_position_ids)
        if position_count != expected_count:
            raise ReconciliationSealError(
                f"Hydrated {position_count} open position(s) but reconciliation sealed {expected_count}"
            )
        if not within_tolerance(locked_usd, self._seal.locked_total_usd, self.tolerance_usd):
            raise ReconciliationSealError(
                f"Hydrated locked capital {format_usd(locked_usd)} != sealed "
                f"{format_usd(self._seal.locked_total_usd)}"
            )

    # ------------------------------------------------------------------
    # grace period
    # ------------------------------------------------------------------

    def is_within_grace_period(self) -> bool:
        """True for ``grace_period_sec`` after a successful run."""
        if self._completed_at is None:
            return False
        return self._clock() - self._completed_at < self.grace_period_sec

    def grace_period_remaining(self) -> float:
        """Seconds left in the grace period (0 when outside it)."""
        if self._completed_at is None:
            return 0.0
        return max(0.0, self.grace_period_sec - (self._clock() - self._completed_at))
