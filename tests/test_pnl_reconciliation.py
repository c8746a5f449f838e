"""
Tests for PnL reconciliation: realized/unrealized computation and drift correction.
"""

import asyncio
from unittest.mock import patch

import pytest

from capital_ledger.core.errors import StoreUnavailable
from capital_ledger.reconcile.pnl import OpenPositionMark, PnLReconciliationService
from capital_ledger.reconcile.startup import StartupReconciler

from store_helpers import add_closed_trade, add_open_position, seed_prior_run


class TestPnLReconciliation:
    """Drift detection against the active run's closed trades."""

    @pytest.fixture(autouse=True)
    def _booted(self, store, ledger, epoch_manager, clock):
        self.store = store
        self.ledger = ledger
        self.clock = clock
        validation = epoch_manager.validate_startup_conditions(True, 1000.0)
        self.epoch = epoch_manager.initialize_run_epoch(validation)
        self.reconciler = StartupReconciler(store, ledger, epoch_manager, clock=clock)
        self.reconciler.run()
        self.service = PnLReconciliationService(store, ledger, epoch_manager, reconciler=self.reconciler)

    def _add_run_trades(self):
        add_closed_trade(self.store, self.epoch.run_id, "t1", 100.0, 105.0, pnl_net=5.00)
        add_closed_trade(self.store, self.epoch.run_id, "t2", 100.0, 104.0, pnl_net=4.00)
        add_closed_trade(self.store, self.epoch.run_id, "t3", 100.0, 103.34, pnl_net=3.34)

    def test_realized_pnl_from_store(self):
        self._add_run_trades()

        result = self.service.compute_realized_pnl_from_store()

        assert result.trade_count == 3
        assert result.total_net_pnl == 12.34
        assert result.win_count == 3
        assert result.win_rate == 100.0

    def test_computed_net_when_pnl_net_missing(self):
        add_closed_trade(
            self.store, self.epoch.run_id, "t1", 100.0, 112.0,
            entry_fees=0.5, exit_fees=0.5, exit_slippage=1.0,
        )
        add_closed_trade(self.store, self.epoch.run_id, "t2", 100.0, 90.0)

        result = self.service.compute_realized_pnl_from_store()

        nets = {t.trade_id: t.net_pnl_usd for t in result.trades}
        assert nets == {"t1": 10.0, "t2": -10.0}
        assert result.total_gross_pnl == 2.0
        assert result.total_fees == 1.0
        assert result.total_slippage == 1.0
        assert result.loss_count == 1

    def test_other_runs_are_excluded(self):
        seed_prior_run(self.store, run_id="run_other", status="closed")
        add_closed_trade(self.store, "run_other", "old", 100.0, 600.0, pnl_net=500.0)

        assert self.service.compute_realized_pnl_from_store().total_net_pnl == 0.0

    def test_drift_detected_and_corrected(self):
        self._add_run_trades()
        self.clock.advance(301)

        result = self.service.reconcile()

        assert result.has_drift
        assert result.drift_usd == 12.34
        assert result.cached_realized_pnl == 0.0
        assert result.store_realized_pnl == 12.34
        assert result.correction_needed

        assert self.service.correct_drift() is True
        assert self.ledger.get_state().realized_pnl_usd == 12.34
        assert self.store.get_capital_state()["total_realized_pnl"] == 12.34
        assert not self.service.reconcile().has_drift
        assert self.service.correct_drift() is False

    def test_no_trades_with_cached_pnl_is_drift(self):
        self.ledger.set_realized_pnl(5.0)
        self.clock.advance(301)

        result = self.service.reconcile()

        assert result.has_drift
        assert result.drift_usd == 5.0
        assert result.drift_percent == 100.0
        assert result.trade_count == 0

        self.service.correct_drift()
        assert self.ledger.get_state().realized_pnl_usd == 0.0

    def test_drift_below_threshold_is_ignored(self):
        add_closed_trade(self.store, self.epoch.run_id, "t1", 100.0, 105.0, pnl_net=5.00)
        self.ledger.set_realized_pnl(4.995)

        assert not self.service.reconcile(drift_threshold_usd=0.05).has_drift

    def test_grace_period_defers_correction(self):
        self._add_run_trades()

        result = self.service.reconcile()

        assert result.has_drift
        assert result.in_grace_period
        assert not result.correction_needed

        self.clock.advance(301)
        assert self.service.reconcile().correction_needed

    def test_periodic_audit_corrects_after_grace(self):
        self._add_run_trades()
        self.clock.advance(301)

        iterations = asyncio.run(self.service.run_periodic(interval_sec=0.01, max_iterations=2))

        assert iterations == 2
        assert self.ledger.get_state().realized_pnl_usd == 12.34

    def test_periodic_audit_stops_on_event(self):
        async def run():
            stop = asyncio.Event()
            stop.set()
            return await self.service.run_periodic(interval_sec=60, stop_event=stop)

        assert asyncio.run(run()) == 0

    def test_periodic_audit_survives_store_errors(self):
        with patch.object(self.store, "get_closed_trades", side_effect=StoreUnavailable("get_closed_trades")):
            iterations = asyncio.run(self.service.run_periodic(interval_sec=0.01, max_iterations=3))

        assert iterations == 3


class TestUnrealizedPnL:
    def test_marks_open_positions(self, store, ledger, epoch_manager):
        service = PnLReconciliationService(store, ledger, epoch_manager)

        result = service.compute_unrealized_pnl_from_positions([
            OpenPositionMark("t1", "pool_a", 1000.0, 2.0, 2.2),
            OpenPositionMark("t2", "pool_b", 500.0, 10.0, 9.0),
        ])

        assert result.position_count == 2
        assert result.positions[0]["unrealized_pnl"] == 100.0
        assert result.positions[1]["unrealized_pnl"] == -50.0
        assert result.total_unrealized_pnl == 50.0

    def test_invalid_entry_price_is_skipped(self, store, ledger, epoch_manager):
        service = PnLReconciliationService(store, ledger, epoch_manager)

        result = service.compute_unrealized_pnl_from_positions([OpenPositionMark("t1", "pool_a", 1000.0, 0.0, 2.2)])

        assert result.position_count == 0
        assert result.total_unrealized_pnl == 0.0

    def test_total_pnl(self, store, ledger, epoch_manager):
        epoch = epoch_manager.initialize_run_epoch(epoch_manager.validate_startup_conditions(True, 1000.0))
        add_closed_trade(store, epoch.run_id, "t1", 100.0, 110.0, pnl_net=10.0)
        add_open_position(store, epoch.run_id, "t2", 1000.0, entry_price=2.0)
        service = PnLReconciliationService(store, ledger, epoch_manager)

        total = service.get_total_pnl([OpenPositionMark("t2", "pool_sol_usdc", 1000.0, 2.0, 2.2)])

        assert total.realized.total_net_pnl == 10.0
        assert total.unrealized.total_unrealized_pnl == 100.0
        assert total.total_pnl == 110.0

    def test_no_active_run_yields_zero(self, store, ledger, epoch_manager):
        service = PnLReconciliationService(store, ledger, epoch_manager)
        assert service.compute_realized_pnl_from_store().trade_count == 0
