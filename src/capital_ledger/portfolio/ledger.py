"""
Portfolio ledger: the single authoritative in-memory view of capital allocation.

All capital reads go through ``PortfolioLedger.get_state()``. The snapshot is
versioned: every mutation bumps ``_version`` and the next read recomputes the
snapshot only when its version is stale.

Invariants checked after every mutation (within ``tolerance``):

1. deployed == sum of open position notional
2. available + deployed + locked == total
3. per-tier sums == deployed
4. per-pool sums == deployed
5. no position has non-positive notional
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..core.errors import (
    DuplicatePosition,
    InsufficientCapital,
    InvalidCapital,
    InvariantViolation,
    ReconciliationSealError,
)
from ..core.logging_utils import LoggerMixin, audit_line
from ..core.money import D, ZERO, format_usd, round_usd, within_tolerance

DEFAULT_TIERS = ("A", "B", "C", "D")
DEFAULT_TOLERANCE_USD = 0.01


@dataclass
class LedgerPosition:
    """One open position tracked by the ledger."""

    trade_id: str
    pool: str
    tier: str
    notional_usd: float
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    pool_name: Optional[str] = None


@dataclass(frozen=True)
class TierAllocation:
    """Capital deployed in one tier."""

    tier: str
    deployed_usd: float
    position_count: int


@dataclass(frozen=True)
class LedgerState:
    """Read-only snapshot of the ledger, rebuilt when the version changes."""

    total_capital_usd: float
    deployed_usd: float
    available_usd: float
    locked_usd: float
    realized_pnl_usd: float
    tiers: Dict[str, TierAllocation]
    pools: Dict[str, float]
    positions: Dict[str, LedgerPosition]
    position_count: int
    version: int
    computed_at: datetime

    @property
    def overdrawn(self) -> bool:
        """True when more capital is deployed than the ledger holds."""
        return self.available_usd < 0


@dataclass
class InvariantCheckResult:
    """Structured outcome of an invariant check."""

    valid: bool
    errors: List[str] = field(default_factory=list)
    total_capital_usd: float = 0.0
    deployed_usd: float = 0.0
    available_usd: float = 0.0
    locked_usd: float = 0.0
    sum_positions_usd: float = 0.0
    sum_tiers_usd: float = 0.0
    sum_pools_usd: float = 0.0

    def breakdown(self) -> Dict[str, float]:
        """Numeric breakdown for error reporting."""
        return {
            "total": self.total_capital_usd,
            "deployed": self.deployed_usd,
            "available": self.available_usd,
            "locked": self.locked_usd,
            "sum_positions": self.sum_positions_usd,
            "sum_tiers": self.sum_tiers_usd,
            "sum_pools": self.sum_pools_usd,
            "accounting_sum": round_usd(
                D(self.available_usd) + D(self.deployed_usd) + D(self.locked_usd)
            ),
        }


def _validate_amount(value: Any) -> bool:
    """A usable money amount: a finite number."""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        return False
    return math.isfinite(float(value))


class PortfolioLedger(LoggerMixin):
    """
    Authoritative in-memory projection of capital and open positions.

    Construct one per process (tests construct as many as they like).
    ``initialize()`` or ``sync_from_external()`` must run before use.
    """

    def __init__(
        self,
        tiers: Sequence[str] = DEFAULT_TIERS,
        tolerance_usd: float = DEFAULT_TOLERANCE_USD,
        dev_mode: bool = False,
        verbose_logging: bool = False,
        config: Optional[Dict[str, Any]] = None,
    ):
        """Initialize an empty, uninitialized ledger.

        Args:
            tiers: Closed set of position tiers
            tolerance_usd: Allowed rounding slack for invariant checks
            dev_mode: Raise on invariant violations instead of logging
            verbose_logging: Log every open/update/close at INFO
            config: Optional application config (used for logger setup)
        """
        super().__init__()
        self.config = config or {}
        self.tiers = tuple(tiers)
        self.tolerance_usd = tolerance_usd
        self.dev_mode = dev_mode
        self.verbose_logging = verbose_logging

        self._positions: Dict[str, LedgerPosition] = {}
        self._total_capital = ZERO
        self._locked_capital = ZERO
        self._realized_pnl = ZERO
        self._initialized = False
        self._sealed = False

        self._version = 0
        self._snapshot: Optional[LedgerState] = None

    @classmethod
    def from_config(cls, config_manager) -> "PortfolioLedger":
        """Build a ledger from a ``ConfigManager``."""
        ledger_config = config_manager.get_validated_config().ledger
        return cls(
            tiers=ledger_config.tiers,
            tolerance_usd=ledger_config.invariant_tolerance_usd,
            dev_mode=config_manager.is_dev_mode(),
            verbose_logging=ledger_config.verbose_logging,
            config=config_manager.to_dict(),
        )

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def initialize(self, total_capital_usd: float) -> None:
        """Reset all state and start from ``total_capital_usd``.

        Raises:
            InvalidCapital: If the amount is not a positive number
            ReconciliationSealError: If the ledger has been sealed
        """
        self._require_unsealed("initialize")
        if not _validate_amount(total_capital_usd) or total_capital_usd <= 0:
            raise InvalidCapital(total_capital_usd)

        self._positions.clear()
        self._total_capital = D(total_capital_usd)
        self._locked_capital = ZERO
        self._realized_pnl = ZERO
        self._initialized = True
        self._invalidate()

        self.logger.info(f"[LEDGER] Initialized with {format_usd(total_capital_usd)} total capital")
        self.assert_invariants("initialize")

    def reset(self) -> None:
        """Drop every position and mark the ledger uninitialized."""
        self._require_unsealed("reset")
        self._positions.clear()
        self._total_capital = ZERO
        self._locked_capital = ZERO
        self._realized_pnl = ZERO
        self._initialized = False
        self._invalidate()
        self.logger.info("[LEDGER] Reset")

    def is_initialized(self) -> bool:
        return self._initialized

    def _invalidate(self) -> None:
        self._version += 1

    def _require_initialized(self, operation: str) -> None:
        if not self._initialized:
            raise RuntimeError(f"PortfolioLedger.{operation} called before initialize()")

    def _require_unsealed(self, operation: str) -> None:
        if self._sealed:
            raise ReconciliationSealError(
                f"PortfolioLedger.{operation} rejected: capital was sealed by startup reconciliation"
            )

    def seal(self) -> None:
        """Reject further capital rebuilds (initialize, reset, sync_from_external)."""
        self._require_initialized("seal")
        self._sealed = True
        self.logger.info("[LEDGER] Sealed, capital rebuilds are now rejected")

    def is_sealed(self) -> bool:
        return self._sealed

    def unseal_for_tests(self) -> None:
        """Lift the seal. Test fixtures only."""
        self._sealed = False

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------

    def open(self, position: LedgerPosition, allow_update: bool = True) -> None:
        """Track a newly opened position.

        A trade id that is already tracked degrades to ``update`` unless
        ``allow_update`` is False.

        Raises:
            InvalidCapital: If the notional is not a positive number
            ValueError: If the tier is not one of the configured tiers
            DuplicatePosition: If the trade id is tracked and updates are disallowed
            InsufficientCapital: In dev mode, if notional exceeds available capital
        """
        self._require_initialized("open")

        if not _validate_amount(position.notional_usd) or position.notional_usd <= 0:
            raise InvalidCapital(
                position.notional_usd,
                f"Invalid notional for {position.trade_id}: ${position.notional_usd}",
            )
        if position.tier not in self.tiers:
            raise ValueError(f"Unknown tier '{position.tier}' for {position.trade_id}; expected one of {self.tiers}")

        if position.trade_id in self._positions:
            if not allow_update:
                raise DuplicatePosition(position.trade_id)
            self.logger.warning(
                f"[LEDGER] Position {position.trade_id} already tracked, updating notional instead"
            )
            self.update(position.trade_id, position.notional_usd)
            return

        available = self.get_state().available_usd
        overdrawn = position.notional_usd > available + self.tolerance_usd
        if overdrawn:
            error = InsufficientCapital(position.notional_usd, available)
            if self.dev_mode:
                raise error
            # Recorded anyway: the capital is already committed on-chain
            self.logger.error(f"[LEDGER-ERROR] {error} (recording position, ledger will be overdrawn)")

        self._positions[position.trade_id] = position
        self._invalidate()

        state = self.get_state()
        self.logger.info(audit_line("LEDGER", {
            "event": "OPEN",
            "trade_id": position.trade_id,
            "pool": position.pool,
            "tier": position.tier,
            "notional_usd": round_usd(position.notional_usd),
            "deployed_usd": state.deployed_usd,
            "available_usd": state.available_usd,
            "overdrawn": overdrawn,
        }))

        self.assert_invariants("open")

    def update(self, trade_id: str, new_notional_usd: float) -> None:
        """Resize a tracked position in place (partial close or add)."""
        self._require_initialized("update")

        position = self._positions.get(trade_id)
        if position is None:
            self.logger.warning(f"[LEDGER] Cannot update {trade_id}: position not tracked")
            return
        if not _validate_amount(new_notional_usd) or new_notional_usd <= 0:
            raise InvalidCapital(
                new_notional_usd,
                f"Invalid notional for {trade_id}: ${new_notional_usd} (close the position instead)",
            )

        old_notional = position.notional_usd
        self._positions[trade_id] = replace(position, notional_usd=new_notional_usd)
        self._invalidate()

        if self.verbose_logging:
            self.logger.info(
                f"[LEDGER] UPDATE {trade_id}: {format_usd(old_notional)} -> {format_usd(new_notional_usd)}"
            )

        self.assert_invariants("update")

    def close(self, trade_id: str) -> Optional[LedgerPosition]:
        """Stop tracking a position, releasing its notional back to available.

        Returns:
            The removed position, or None if it was not tracked
        """
        self._require_initialized("close")

        position = self._positions.pop(trade_id, None)
        if position is None:
            self.logger.warning(f"[LEDGER] Cannot close {trade_id}: position not tracked")
            return None

        self._invalidate()
        state = self.get_state()
        self.logger.info(audit_line("LEDGER", {
            "event": "CLOSE",
            "trade_id": trade_id,
            "pool": position.pool,
            "tier": position.tier,
            "released_usd": round_usd(position.notional_usd),
            "deployed_usd": state.deployed_usd,
            "available_usd": state.available_usd,
        }))

        self.assert_invariants("close")
        return position

    def update_total_capital(self, new_total_usd: float) -> None:
        """Replace total capital, e.g. after realized PnL settles.

        Raises:
            InvalidCapital: If the amount is not a positive number
        """
        self._require_initialized("update_total_capital")
        if not _validate_amount(new_total_usd) or new_total_usd <= 0:
            raise InvalidCapital(new_total_usd)

        old_total = self._total_capital
        self._total_capital = D(new_total_usd)
        self._invalidate()

        self.logger.info(
            f"[LEDGER] Total capital updated: {format_usd(old_total)} -> {format_usd(new_total_usd)}"
        )
        self.assert_invariants("update_total_capital")

    def update_locked_capital(self, new_locked_usd: float) -> None:
        """Replace capital locked outside of tracked positions.

        Raises:
            InvalidCapital: If the amount is negative or not a number
        """
        self._require_initialized("update_locked_capital")
        if not _validate_amount(new_locked_usd) or new_locked_usd < 0:
            raise InvalidCapital(new_locked_usd, f"Invalid locked capital: ${new_locked_usd} - must be >= 0")

        self._locked_capital = D(new_locked_usd)
        self._invalidate()

        if self.verbose_logging:
            self.logger.info(f"[LEDGER] Locked capital updated: {format_usd(new_locked_usd)}")
        self.assert_invariants("update_locked_capital")

    def settle_realized_pnl(self, net_pnl_usd: float) -> None:
        """Fold a closed trade's net PnL into realized PnL and total capital."""
        self._require_initialized("settle_realized_pnl")
        self.update_total_capital(float(self._total_capital + D(net_pnl_usd)))
        self._realized_pnl += D(net_pnl_usd)
        self._invalidate()

    def set_realized_pnl(self, realized_pnl_usd: float) -> None:
        """Overwrite the cached realized PnL figure (drift correction)."""
        self._realized_pnl = D(realized_pnl_usd)
        self._invalidate()

    def sync_from_external(
        self,
        positions: Iterable[LedgerPosition],
        total_capital_usd: float,
        locked_capital_usd: float = 0.0,
        realized_pnl_usd: float = 0.0,
    ) -> InvariantCheckResult:
        """Bulk replace all state from reconciled numbers.

        Only the startup reconciler calls this. Ends with a full invariant
        check (raising in dev mode).
        """
        self._require_unsealed("sync_from_external")
        if not _validate_amount(total_capital_usd) or total_capital_usd <= 0:
            raise InvalidCapital(total_capital_usd)
        if not _validate_amount(locked_capital_usd) or locked_capital_usd < 0:
            raise InvalidCapital(locked_capital_usd, f"Invalid locked capital: ${locked_capital_usd} - must be >= 0")

        self._positions = {p.trade_id: p for p in positions}
        self._total_capital = D(total_capital_usd)
        self._locked_capital = D(locked_capital_usd)
        self._realized_pnl = D(realized_pnl_usd)
        self._initialized = True
        self._invalidate()

        state = self.get_state()
        self.logger.info(
            f"[LEDGER] SYNCED positions={state.position_count} total={format_usd(state.total_capital_usd)} "
            f"deployed={format_usd(state.deployed_usd)} locked={format_usd(state.locked_usd)} "
            f"available={format_usd(state.available_usd)}"
        )
        return self.assert_invariants("sync_from_external")

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get_state(self) -> LedgerState:
        """Return the snapshot, recomputing it only if a mutation invalidated it."""
        if self._snapshot is None or self._snapshot.version != self._version:
            self._snapshot = self._compute_state()
        return self._snapshot

    def _compute_state(self) -> LedgerState:
        deployed = ZERO
        tier_totals = {tier: ZERO for tier in self.tiers}
        tier_counts = {tier: 0 for tier in self.tiers}
        pools: Dict[str, Decimal] = {}

        for position in self._positions.values():
            notional = D(position.notional_usd)
            deployed += notional
            tier_totals[position.tier] = tier_totals.get(position.tier, ZERO) + notional
            tier_counts[position.tier] = tier_counts.get(position.tier, 0) + 1
            pools[position.pool] = pools.get(position.pool, ZERO) + notional

        available = self._total_capital - deployed - self._locked_capital

        return LedgerState(
            total_capital_usd=float(self._total_capital),
            deployed_usd=float(deployed),
            available_usd=float(available),
            locked_usd=float(self._locked_capital),
            realized_pnl_usd=float(self._realized_pnl),
            tiers={
                tier: TierAllocation(tier, float(total), tier_counts[tier])
                for tier, total in tier_totals.items()
            },
            pools={pool: float(total) for pool, total in pools.items()},
            positions=dict(self._positions),
            position_count=len(self._positions),
            version=self._version,
            computed_at=datetime.now(timezone.utc),
        )

    def get_position(self, trade_id: str) -> Optional[LedgerPosition]:
        return self._positions.get(trade_id)

    def has_position(self, trade_id: str) -> bool:
        return trade_id in self._positions

    def get_open_positions(self) -> List[LedgerPosition]:
        return list(self._positions.values())

    def get_pool_positions(self, pool: str) -> List[LedgerPosition]:
        return [p for p in self._positions.values() if p.pool == pool]

    def get_tier_positions(self, tier: str) -> List[LedgerPosition]:
        return [p for p in self._positions.values() if p.tier == tier]

    def get_deployed_pct(self) -> float:
        """Deployed capital as a percentage of total capital."""
        state = self.get_state()
        if state.total_capital_usd <= 0:
            return 0.0
        return state.deployed_usd / state.total_capital_usd * 100

    def get_tier_exposure_pct(self, tier: str) -> float:
        """Tier deployment as a percentage of total capital."""
        state = self.get_state()
        allocation = state.tiers.get(tier)
        if allocation is None or state.total_capital_usd <= 0:
            return 0.0
        return allocation.deployed_usd / state.total_capital_usd * 100

    def get_tier_remaining_capacity(self, tier: str, max_tier_pct: float) -> float:
        """USD still deployable in ``tier`` under a percentage cap, bounded by available."""
        state = self.get_state()
        allocation = state.tiers.get(tier)
        deployed = allocation.deployed_usd if allocation else 0.0
        cap = state.total_capital_usd * max_tier_pct / 100
        return max(0.0, min(cap - deployed, state.available_usd))

    def get_portfolio_remaining_capacity(self, max_deployed_pct: float) -> float:
        """USD still deployable under a portfolio-wide percentage cap."""
        state = self.get_state()
        cap = state.total_capital_usd * max_deployed_pct / 100
        return max(0.0, min(cap - state.deployed_usd, state.available_usd))

    # ------------------------------------------------------------------
    # invariants
    # ------------------------------------------------------------------

    def check_invariants(self) -> InvariantCheckResult:
        """Validate the snapshot against an independent recomputation.

        Pure: never raises and never logs.
        """
        state = self.get_state()
        tol = self.tolerance_usd

        sum_positions = sum((D(p.notional_usd) for p in self._positions.values()), start=ZERO)
        sum_tiers = sum((D(a.deployed_usd) for a in state.tiers.values()), start=ZERO)
        sum_pools = sum((D(v) for v in state.pools.values()), start=ZERO)
        accounting_sum = D(state.available_usd) + D(state.deployed_usd) + D(state.locked_usd)

        errors = []
        if not within_tolerance(state.deployed_usd, sum_positions, tol):
            errors.append(
                f"INVARIANT 1 VIOLATED: deployed ({format_usd(state.deployed_usd)}) != "
                f"sum of positions ({format_usd(sum_positions)})"
            )
        if not within_tolerance(accounting_sum, state.total_capital_usd, tol):
            errors.append(
                f"INVARIANT 2 VIOLATED: available + deployed + locked ({format_usd(accounting_sum)}) != "
                f"total ({format_usd(state.total_capital_usd)})"
            )
        if not within_tolerance(sum_tiers, state.deployed_usd, tol):
            errors.append(
                f"INVARIANT 3 VIOLATED: sum of tiers ({format_usd(sum_tiers)}) != "
                f"deployed ({format_usd(state.deployed_usd)})"
            )
        if not within_tolerance(sum_pools, state.deployed_usd, tol):
            errors.append(
                f"INVARIANT 4 VIOLATED: sum of pools ({format_usd(sum_pools)}) != "
                f"deployed ({format_usd(state.deployed_usd)})"
            )
        for position in self._positions.values():
            if not _validate_amount(position.notional_usd) or position.notional_usd <= 0:
                errors.append(
                    f"INVARIANT 5 VIOLATED: position {position.trade_id} has non-positive notional "
                    f"(${position.notional_usd})"
                )
            if position.tier not in self.tiers:
                errors.append(f"INVARIANT 3 VIOLATED: position {position.trade_id} has unknown tier '{position.tier}'")

        return InvariantCheckResult(
            valid=not errors,
            errors=errors,
            total_capital_usd=round_usd(state.total_capital_usd),
            deployed_usd=round_usd(state.deployed_usd),
            available_usd=round_usd(state.available_usd),
            locked_usd=round_usd(state.locked_usd),
            sum_positions_usd=round_usd(sum_positions),
            sum_tiers_usd=round_usd(sum_tiers),
            sum_pools_usd=round_usd(sum_pools),
        )

    def assert_invariants(self, context: str = "check") -> InvariantCheckResult:
        """Check invariants; raise in dev mode, log in production.

        Raises:
            InvariantViolation: In dev mode when any invariant fails
        """
        result = self.check_invariants()
        if result.valid:
            return result

        message = f"Ledger invariants violated after {context}: " + "; ".join(result.errors)
        if self.dev_mode:
            raise InvariantViolation(message, result)

        self.logger.error(f"[LEDGER-ERROR] {message}")
        self.logger.error(f"[LEDGER-ERROR] breakdown={result.breakdown()}")
        return result

    def log_detailed_state(self) -> None:
        """Log the full capital breakdown (tiers, pools, positions) at INFO."""
        state = self.get_state()
        self.logger.info("=" * 60)
        self.logger.info("PORTFOLIO LEDGER STATE")
        self.logger.info("=" * 60)
        self.logger.info(f"Total capital:  {format_usd(state.total_capital_usd)}")
        self.logger.info(
            f"Deployed:       {format_usd(state.deployed_usd)} ({self.get_deployed_pct():.1f}%)"
        )
        self.logger.info(f"Available:      {format_usd(state.available_usd)}")
        self.logger.info(f"Locked:         {format_usd(state.locked_usd)}")
        self.logger.info(f"Realized PnL:   {format_usd(state.realized_pnl_usd)}")
        for tier, allocation in state.tiers.items():
            self.logger.info(
                f"  Tier {tier}: {format_usd(allocation.deployed_usd)} "
                f"({self.get_tier_exposure_pct(tier):.1f}%) positions={allocation.position_count}"
            )
        for pool, deployed in sorted(state.pools.items(), key=lambda item: -item[1]):
            self.logger.info(f"  Pool {pool}: {format_usd(deployed)}")
        for position in state.positions.values():
            self.logger.info(
                f"  {position.trade_id} [{position.tier}] {position.pool} "
                f"{format_usd(position.notional_usd)} opened={position.opened_at.isoformat()}"
            )
        self.logger.info("=" * 60)
