"""
Tests for the portfolio ledger: lifecycle, mutations and invariants.
"""

import random

import pytest

from capital_ledger.core.errors import (
    DuplicatePosition,
    InsufficientCapital,
    InvalidCapital,
    InvariantViolation,
    ReconciliationSealError,
)
from capital_ledger.portfolio.ledger import LedgerPosition, PortfolioLedger


def make_position(trade_id: str, notional: float, tier: str = "A", pool: str = "pool_1") -> LedgerPosition:
    return LedgerPosition(trade_id=trade_id, pool=pool, tier=tier, notional_usd=notional)


def assert_balanced(ledger: PortfolioLedger) -> None:
    state = ledger.get_state()
    sum_positions = sum(p.notional_usd for p in state.positions.values())
    assert state.available_usd + state.deployed_usd + state.locked_usd == pytest.approx(
        state.total_capital_usd, abs=0.01
    )
    assert state.deployed_usd == pytest.approx(sum_positions, abs=0.01)
    assert sum(a.deployed_usd for a in state.tiers.values()) == pytest.approx(state.deployed_usd, abs=0.01)
    assert sum(state.pools.values()) == pytest.approx(state.deployed_usd, abs=0.01)


class TestLedgerLifecycle:
    """Initialization, reset and snapshot caching."""

    def test_initialize_sets_capital(self):
        ledger = PortfolioLedger()
        ledger.initialize(10000.0)

        state = ledger.get_state()
        assert ledger.is_initialized()
        assert state.total_capital_usd == 10000.0
        assert state.available_usd == 10000.0
        assert state.deployed_usd == 0.0
        assert state.position_count == 0

    @pytest.mark.parametrize("amount", [0, -100.0, float("nan"), float("inf")])
    def test_initialize_rejects_invalid_capital(self, amount):
        ledger = PortfolioLedger()
        with pytest.raises(InvalidCapital):
            ledger.initialize(amount)
        assert not ledger.is_initialized()

    def test_initialize_resets_previous_state(self):
        ledger = PortfolioLedger()
        ledger.initialize(1000.0)
        ledger.open(make_position("t1", 200.0))

        ledger.initialize(500.0)

        state = ledger.get_state()
        assert state.position_count == 0
        assert state.total_capital_usd == 500.0

    def test_reset_marks_uninitialized(self):
        ledger = PortfolioLedger()
        ledger.initialize(1000.0)
        ledger.reset()

        assert not ledger.is_initialized()
        with pytest.raises(RuntimeError):
            ledger.open(make_position("t1", 100.0))

    def test_snapshot_is_cached_until_mutation(self):
        ledger = PortfolioLedger()
        ledger.initialize(1000.0)

        first = ledger.get_state()
        assert ledger.get_state() is first

        ledger.open(make_position("t1", 100.0))
        second = ledger.get_state()
        assert second is not first
        assert second.version > first.version
        assert second.deployed_usd == 100.0


class TestLedgerMutations:
    """open / update / close behaviour."""

    def setup_method(self):
        self.ledger = PortfolioLedger()
        self.ledger.initialize(1000.0)

    def test_open_deploys_capital(self):
        self.ledger.open(make_position("t1", 300.0, tier="B", pool="pool_x"))

        state = self.ledger.get_state()
        assert state.deployed_usd == 300.0
        assert state.available_usd == 700.0
        assert state.tiers["B"].deployed_usd == 300.0
        assert state.tiers["B"].position_count == 1
        assert state.pools == {"pool_x": 300.0}

    def test_duplicate_open_degrades_to_update(self):
        self.ledger.open(make_position("t1", 300.0))
        self.ledger.open(make_position("t1", 450.0))

        state = self.ledger.get_state()
        assert state.position_count == 1
        assert state.deployed_usd == 450.0

    def test_duplicate_open_strict_raises(self):
        self.ledger.open(make_position("t1", 300.0))
        with pytest.raises(DuplicatePosition):
            self.ledger.open(make_position("t1", 450.0), allow_update=False)

    @pytest.mark.parametrize("notional", [0.0, -5.0])
    def test_open_rejects_non_positive_notional(self, notional):
        with pytest.raises(InvalidCapital):
            self.ledger.open(make_position("t1", notional))
        assert self.ledger.get_state().position_count == 0

    def test_open_rejects_unknown_tier(self):
        with pytest.raises(ValueError):
            self.ledger.open(make_position("t1", 100.0, tier="Z"))

    def test_insufficient_capital_in_production_records_position(self):
        self.ledger.open(make_position("t1", 1500.0))

        state = self.ledger.get_state()
        assert state.position_count == 1
        assert state.available_usd == -500.0
        assert state.overdrawn
        assert self.ledger.check_invariants().valid

    def test_insufficient_capital_in_dev_mode_raises(self):
        ledger = PortfolioLedger(dev_mode=True)
        ledger.initialize(1000.0)

        with pytest.raises(InsufficientCapital) as exc_info:
            ledger.open(make_position("t1", 1500.0))

        assert exc_info.value.requested_usd == 1500.0
        assert exc_info.value.available_usd == 1000.0
        assert ledger.get_state().position_count == 0

    def test_open_within_tolerance_is_allowed_in_dev_mode(self):
        ledger = PortfolioLedger(dev_mode=True)
        ledger.initialize(1000.0)
        ledger.open(make_position("t1", 1000.005))
        assert ledger.get_state().position_count == 1

    def test_update_resizes_in_place(self):
        self.ledger.open(make_position("t1", 300.0))
        self.ledger.update("t1", 120.0)

        state = self.ledger.get_state()
        assert state.deployed_usd == 120.0
        assert state.available_usd == 880.0

    def test_update_unknown_is_noop(self):
        before = self.ledger.get_state()
        self.ledger.update("missing", 50.0)
        assert self.ledger.get_state().deployed_usd == before.deployed_usd

    def test_update_rejects_non_positive(self):
        self.ledger.open(make_position("t1", 300.0))
        with pytest.raises(InvalidCapital):
            self.ledger.update("t1", 0.0)
        assert self.ledger.get_state().deployed_usd == 300.0

    def test_close_releases_capital(self):
        self.ledger.open(make_position("t1", 300.0))
        closed = self.ledger.close("t1")

        assert closed.trade_id == "t1"
        state = self.ledger.get_state()
        assert state.deployed_usd == 0.0
        assert state.available_usd == 1000.0

    def test_close_unknown_returns_none(self):
        assert self.ledger.close("missing") is None

    def test_update_total_capital(self):
        self.ledger.update_total_capital(1200.0)
        assert self.ledger.get_state().total_capital_usd == 1200.0

    @pytest.mark.parametrize("amount", [0.0, -1.0, float("nan")])
    def test_update_total_capital_rejects_invalid(self, amount):
        with pytest.raises(InvalidCapital):
            self.ledger.update_total_capital(amount)
        assert self.ledger.get_state().total_capital_usd == 1000.0

    def test_update_locked_capital(self):
        self.ledger.open(make_position("t1", 300.0))
        self.ledger.update_locked_capital(200.0)

        state = self.ledger.get_state()
        assert state.locked_usd == 200.0
        assert state.available_usd == 500.0

    def test_update_locked_capital_rejects_negative(self):
        with pytest.raises(InvalidCapital):
            self.ledger.update_locked_capital(-1.0)

    def test_settle_realized_pnl_moves_total(self):
        self.ledger.settle_realized_pnl(25.5)
        self.ledger.settle_realized_pnl(-5.5)

        state = self.ledger.get_state()
        assert state.total_capital_usd == pytest.approx(1020.0)
        assert state.realized_pnl_usd == pytest.approx(20.0)

    def test_settle_realized_pnl_rejects_wiping_out_capital(self):
        with pytest.raises(InvalidCapital):
            self.ledger.settle_realized_pnl(-1000.0)
        state = self.ledger.get_state()
        assert state.total_capital_usd == 1000.0
        assert state.realized_pnl_usd == 0.0


class TestLedgerInvariants:
    """Invariant closure and violation reporting."""

    def test_invariants_hold_for_random_sequences(self):
        rng = random.Random(42)
        ledger = PortfolioLedger()
        ledger.initialize(50000.0)
        open_ids = []

        for i in range(300):
            action = rng.choice(["open", "open", "update", "close", "lock"])
            if action == "open":
                trade_id = f"t{i}"
                ledger.open(make_position(
                    trade_id,
                    round(rng.uniform(1, 900), 2),
                    tier=rng.choice(["A", "B", "C", "D"]),
                    pool=f"pool_{rng.randint(1, 5)}",
                ))
                open_ids.append(trade_id)
            elif action == "update" and open_ids:
                ledger.update(rng.choice(open_ids), round(rng.uniform(1, 900), 2))
            elif action == "close" and open_ids:
                ledger.close(open_ids.pop(rng.randrange(len(open_ids))))
            elif action == "lock":
                ledger.update_locked_capital(round(rng.uniform(0, 500), 2))

            assert_balanced(ledger)
            assert ledger.check_invariants().valid

    def test_sync_from_external_replaces_state(self):
        ledger = PortfolioLedger()
        result = ledger.sync_from_external(
            [make_position("a", 100.0, tier="A"), make_position("b", 250.0, tier="C", pool="pool_2")],
            total_capital_usd=2000.0,
            locked_capital_usd=50.0,
            realized_pnl_usd=12.0,
        )

        assert result.valid
        state = ledger.get_state()
        assert ledger.is_initialized()
        assert state.position_count == 2
        assert state.deployed_usd == 350.0
        assert state.available_usd == 1600.0
        assert state.realized_pnl_usd == 12.0

    def test_violation_is_logged_in_production(self):
        ledger = PortfolioLedger()
        result = ledger.sync_from_external([make_position("bad", -5.0)], total_capital_usd=1000.0)

        assert not result.valid
        assert any("INVARIANT 5" in error for error in result.errors)
        assert result.breakdown()["deployed"] == -5.0

    def test_violation_raises_in_dev_mode(self):
        ledger = PortfolioLedger(dev_mode=True)
        with pytest.raises(InvariantViolation) as exc_info:
            ledger.sync_from_external([make_position("bad", 0.0)], total_capital_usd=1000.0)

        assert not exc_info.value.result.valid


class TestLedgerAccessors:
    """Derived exposure and capacity reads."""

    def setup_method(self):
        self.ledger = PortfolioLedger()
        self.ledger.initialize(1000.0)
        self.ledger.open(make_position("a1", 200.0, tier="A", pool="p1"))
        self.ledger.open(make_position("a2", 100.0, tier="A", pool="p2"))
        self.ledger.open(make_position("b1", 100.0, tier="B", pool="p1"))

    def test_exposure_percentages(self):
        assert self.ledger.get_deployed_pct() == pytest.approx(40.0)
        assert self.ledger.get_tier_exposure_pct("A") == pytest.approx(30.0)
        assert self.ledger.get_tier_exposure_pct("D") == 0.0

    def test_remaining_capacity(self):
        assert self.ledger.get_tier_remaining_capacity("A", 50.0) == pytest.approx(200.0)
        assert self.ledger.get_tier_remaining_capacity("B", 5.0) == 0.0
        # bounded by available capital (600)
        assert self.ledger.get_portfolio_remaining_capacity(100.0) == pytest.approx(600.0)

    def test_pool_and_tier_positions(self):
        assert {p.trade_id for p in self.ledger.get_pool_positions("p1")} == {"a1", "b1"}
        assert {p.trade_id for p in self.ledger.get_tier_positions("A")} == {"a1", "a2"}

    def test_log_detailed_state_does_not_mutate(self):
        before = self.ledger.get_state()
        self.ledger.log_detailed_state()
        assert self.ledger.get_state() is before


class TestLedgerSealGuard:
    def test_seal_requires_initialized_ledger(self):
        with pytest.raises(RuntimeError):
            PortfolioLedger().seal()

    def test_sealed_ledger_still_trades(self):
        ledger = PortfolioLedger()
        ledger.initialize(1000.0)
        ledger.seal()

        ledger.open(make_position("t1", 100.0))
        ledger.close("t1")
        ledger.settle_realized_pnl(5.0)

        assert ledger.get_state().total_capital_usd == 1005.0

    def test_unseal_for_tests_allows_reinitialize(self):
        ledger = PortfolioLedger()
        ledger.initialize(1000.0)
        ledger.seal()
        with pytest.raises(ReconciliationSealError):
            ledger.initialize(2000.0)

        ledger.unseal_for_tests()
        ledger.initialize(2000.0)

        assert not ledger.is_sealed()
        assert ledger.get_state().total_capital_usd == 2000.0
