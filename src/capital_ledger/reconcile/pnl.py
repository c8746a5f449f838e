"""
PnL reconciliation.

Recomputes realized PnL for the active run from closed trades in the store and
compares it with the figure cached by the portfolio ledger. Drift beyond the
threshold is corrected by overwriting the cache with the store value.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

from ..core.errors import StoreUnavailable
from ..core.logging_utils import LoggerMixin, audit_line
from ..core.money import D, ZERO, format_usd, round_usd
from ..epoch.run_epoch import RunEpochManager
from ..portfolio.ledger import PortfolioLedger
from ..state.store import StateStore


@dataclass
class TradePnL:
    """Economics of one closed trade."""

    trade_id: str
    pool_address: str
    entry_value_usd: float
    exit_value_usd: float
    fees_usd: float
    slippage_usd: float
    gross_pnl_usd: float
    net_pnl_usd: float
    pnl_pct: float
    entry_time: Optional[str]
    exit_time: Optional[str]
    hold_time_sec: Optional[float]
    exit_reason: Optional[str]

    @property
    def is_win(self) -> bool:
        return self.net_pnl_usd >= 0


@dataclass
class RealizedPnLResult:
    """Realized PnL of the active run, computed from the store."""

    total_gross_pnl: float = 0.0
    total_net_pnl: float = 0.0
    total_fees: float = 0.0
    total_slippage: float = 0.0
    trade_count: int = 0
    win_count: int = 0
    loss_count: int = 0
    trades: List[TradePnL] = field(default_factory=list)

    @property
    def win_rate(self) -> float:
        return self.win_count / self.trade_count * 100 if self.trade_count else 0.0


@dataclass
class OpenPositionMark:
    """An open position with its current mark price."""

    trade_id: str
    pool_address: str
    size_usd: float
    entry_price: float
    current_price: float
    opened_at: Optional[str] = None


@dataclass
class UnrealizedPnLResult:
    total_unrealized_pnl: float = 0.0
    position_count: int = 0
    positions: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class TotalPnL:
    realized: RealizedPnLResult
    unrealized: UnrealizedPnLResult

    @property
    def total_pnl(self) -> float:
        return round_usd(D(self.realized.total_net_pnl) + D(self.unrealized.total_unrealized_pnl))


@dataclass
class PnLReconciliationResult:
    """Outcome of one drift check."""

    has_drift: bool
    drift_usd: float
    drift_percent: float
    cached_realized_pnl: float
    store_realized_pnl: float
    trade_count: int
    correction_needed: bool
    in_grace_period: bool = False
    checked_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def _hold_time_sec(entry_time: Optional[str], exit_time: Optional[str]) -> Optional[float]:
    if not entry_time or not exit_time:
        return None
    try:
        return (datetime.fromisoformat(exit_time) - datetime.fromisoformat(entry_time)).total_seconds()
    except ValueError:
        return None


class PnLReconciliationService(LoggerMixin):
    """Detects and corrects drift between cached and stored realized PnL."""

    def __init__(
        self,
        store: StateStore,
        ledger: PortfolioLedger,
        epoch_manager: RunEpochManager,
        reconciler=None,
        drift_threshold_usd: float = 0.01,
        audit_interval_sec: float = 300.0,
        config: Optional[Dict[str, Any]] = None,
    ):
        """Initialize the PnL reconciliation service.

        Args:
            store: Persistent state store
            ledger: Ledger holding the cached realized PnL
            epoch_manager: Provides the active run id
            reconciler: Startup reconciler whose completion starts the grace period
            drift_threshold_usd: Absolute drift that counts as drift
            audit_interval_sec: Default cadence of ``run_periodic``
            config: Optional application config (used for logger setup)
        """
        super().__init__()
        self.config = config or {}
        self.store = store
        self.ledger = ledger
        self.epoch_manager = epoch_manager
        self.reconciler = reconciler
        self.drift_threshold_usd = drift_threshold_usd
        self.audit_interval_sec = audit_interval_sec
        self.last_result: Optional[PnLReconciliationResult] = None

    @classmethod
    def from_config(cls, store, ledger, epoch_manager, reconciler, config_manager) -> "PnLReconciliationService":
        validated = config_manager.get_validated_config()
        return cls(
            store,
            ledger,
            epoch_manager,
            reconciler=reconciler,
            drift_threshold_usd=validated.reconciliation.drift_threshold_usd,
            audit_interval_sec=validated.reconciliation.audit_interval_sec,
            config=config_manager.to_dict(),
        )

    # ------------------------------------------------------------------
    # computation
    # ------------------------------------------------------------------

    def compute_realized_pnl_from_store(
        self, since: Optional[Union[str, datetime]] = None
    ) -> RealizedPnLResult:
        """Walk closed trades of the active run and total their PnL.

        Per trade: gross = exit - entry, net = gross - fees - slippage (a stored
        ``pnl_net`` takes precedence), rounded to cents. Wins are net >= 0.
        """
        run_id = self.epoch_manager.get_active_run_id()
        if run_id is None:
            self.logger.warning("[PNL-AUDIT] No active run, realized PnL is 0")
            return RealizedPnLResult()

        if isinstance(since, datetime):
            since = since.isoformat()

        result = RealizedPnLResult()
        gross_total = net_total = fees_total = slippage_total = ZERO

        for trade in self.store.get_closed_trades(run_id, since=since):
            entry_value = D(trade.get("entry_asset_value_usd"))
            exit_value = D(trade.get("exit_asset_value_usd"))
            fees = D(trade.get("entry_fees_paid")) + D(trade.get("exit_fees_paid"))
            slippage = D(trade.get("entry_slippage_usd")) + D(trade.get("exit_slippage_usd"))
            gross = exit_value - entry_value

            if trade.get("pnl_net") is not None:
                net = D(round_usd(trade["pnl_net"]))
            else:
                net = D(round_usd(gross - fees - slippage))

            trade_pnl = TradePnL(
                trade_id=trade["id"],
                pool_address=trade["pool_address"],
                entry_value_usd=float(entry_value),
                exit_value_usd=float(exit_value),
                fees_usd=round_usd(fees),
                slippage_usd=round_usd(slippage),
                gross_pnl_usd=round_usd(gross),
                net_pnl_usd=float(net),
                pnl_pct=float(net / entry_value * 100) if entry_value else 0.0,
                entry_time=trade.get("created_at"),
                exit_time=trade.get("exit_time"),
                hold_time_sec=_hold_time_sec(trade.get("created_at"), trade.get("exit_time")),
                exit_reason=trade.get("exit_reason"),
            )
            result.trades.append(trade_pnl)

            gross_total += gross
            net_total += net
            fees_total += fees
            slippage_total += slippage
            if trade_pnl.is_win:
                result.win_count += 1
            else:
                result.loss_count += 1

        result.trade_count = len(result.trades)
        result.total_gross_pnl = round_usd(gross_total)
        result.total_net_pnl = round_usd(net_total)
        result.total_fees = round_usd(fees_total)
        result.total_slippage = round_usd(slippage_total)
        return result

    def compute_unrealized_pnl_from_positions(
        self, open_positions: Sequence[OpenPositionMark]
    ) -> UnrealizedPnLResult:
        """Mark open positions to market: (current - entry) / entry * size."""
        result = UnrealizedPnLResult()
        total = ZERO

        for mark in open_positions:
            if mark.entry_price <= 0:
                self.logger.warning(f"[PNL-AUDIT] Skipping {mark.trade_id}: invalid entry price {mark.entry_price}")
                continue
            change = (D(mark.current_price) - D(mark.entry_price)) / D(mark.entry_price)
            pnl = change * D(mark.size_usd)
            total += pnl
            result.positions.append({
                "trade_id": mark.trade_id,
                "pool_address": mark.pool_address,
                "size_usd": mark.size_usd,
                "entry_price": mark.entry_price,
                "current_price": mark.current_price,
                "unrealized_pnl": round_usd(pnl),
                "unrealized_pnl_pct": float(change * 100),
            })

        result.position_count = len(result.positions)
        result.total_unrealized_pnl = round_usd(total)
        return result

    def get_total_pnl(self, open_positions: Sequence[OpenPositionMark] = ()) -> TotalPnL:
        return TotalPnL(
            realized=self.compute_realized_pnl_from_store(),
            unrealized=self.compute_unrealized_pnl_from_positions(open_positions),
        )

    # ------------------------------------------------------------------
    # drift
    # ------------------------------------------------------------------

    def _in_grace_period(self) -> bool:
        return bool(self.reconciler is not None and self.reconciler.is_within_grace_period())

    def reconcile(self, drift_threshold_usd: Optional[float] = None) -> PnLReconciliationResult:
        """Compare the ledger's cached realized PnL with the store.

        With no closed trades, any nonzero cache is drift (the store is
        authoritative). Inside the reconciler grace period drift is reported
        but ``correction_needed`` stays False.
        """
        threshold = self.drift_threshold_usd if drift_threshold_usd is None else drift_threshold_usd
        cached = round_usd(self.ledger.get_state().realized_pnl_usd)
        realized = self.compute_realized_pnl_from_store()
        stored = realized.total_net_pnl

        if realized.trade_count == 0 and cached != 0:
            drift = abs(cached)
            has_drift = True
            drift_percent = 100.0
        else:
            drift = round_usd(abs(D(cached) - D(stored)))
            has_drift = drift > threshold
            if stored:
                drift_percent = drift / abs(stored) * 100
            else:
                drift_percent = 100.0 if drift > 0 else 0.0

        in_grace = self._in_grace_period()
        result = PnLReconciliationResult(
            has_drift=has_drift,
            drift_usd=drift,
            drift_percent=drift_percent,
            cached_realized_pnl=cached,
            store_realized_pnl=stored,
            trade_count=realized.trade_count,
            correction_needed=has_drift and not in_grace,
            in_grace_period=in_grace,
        )
        self.last_result = result

        if has_drift:
            self.logger.warning(audit_line("PNL-AUDIT", {
                "event": "DRIFT",
                "run_id": self.epoch_manager.get_active_run_id(),
                "cached": cached,
                "store": stored,
                "drift_usd": drift,
                "drift_pct": round(drift_percent, 2),
                "trade_count": realized.trade_count,
                "in_grace_period": in_grace,
            }))
            if in_grace:
                self.logger.info(
                    f"[PNL-AUDIT] Within startup grace period "
                    f"({self.reconciler.grace_period_remaining():.0f}s left), not correcting"
                )
        else:
            self.logger.debug(
                f"[PNL-AUDIT] No drift: cached={format_usd(cached)} store={format_usd(stored)} "
                f"trades={realized.trade_count}"
            )
        return result

    def correct_drift(self) -> bool:
        """Overwrite the cached realized PnL with the store value.

        Returns:
            True if a correction was written
        """
        before = round_usd(self.ledger.get_state().realized_pnl_usd)
        after = self.compute_realized_pnl_from_store().total_net_pnl
        if before == after:
            self.logger.debug(f"[PNL-AUDIT] Nothing to correct (realized {format_usd(after)})")
            return False

        self.store.update_realized_pnl(after)
        self.ledger.set_realized_pnl(after)

        self.logger.warning(audit_line("PNL-AUDIT", {
            "event": "CORRECTED",
            "run_id": self.epoch_manager.get_active_run_id(),
            "before": before,
            "after": after,
            "delta": round_usd(D(after) - D(before)),
            "corrected_at": datetime.now(timezone.utc).isoformat(),
        }))
        return True

    async def run_periodic(
        self,
        interval_sec: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None,
        max_iterations: Optional[int] = None,
    ) -> int:
        """Reconcile on a cadence, correcting drift outside the grace period.

        Store errors are logged and the loop keeps going.

        Returns:
            Number of audits performed
        """
        interval = self.audit_interval_sec if interval_sec is None else interval_sec
        stop_event = stop_event or asyncio.Event()
        iterations = 0

        self.logger.info(f"[PNL-AUDIT] Periodic audit started (every {interval:.0f}s)")
        while not stop_event.is_set():
            try:
                result = self.reconcile()
                if result.correction_needed:
                    self.correct_drift()
            except StoreUnavailable as e:
                self.logger.error(f"[PNL-AUDIT] Audit skipped: {e}")

            iterations += 1
            if max_iterations is not None and iterations >= max_iterations:
                break

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        self.logger.info(f"[PNL-AUDIT] Periodic audit stopped after {iterations} run(s)")
        return iterations
