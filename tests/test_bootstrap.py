"""
End-to-end boot tests: fresh start, crash recovery and the CLI.
"""

from unittest.mock import patch

import pytest

from capital_ledger.bootstrap import bootstrap, shutdown
from capital_ledger.cli.app import main
from capital_ledger.core.config_manager import ConfigManager
from capital_ledger.core.errors import (
    HybridStateBlocked,
    ReconciliationSealError,
    StartupAborted,
    StoreUnavailable,
)
from capital_ledger.reconcile.startup import StartupReconciler
from capital_ledger.state.store import StateStore


def make_config(db_path) -> ConfigManager:
    return ConfigManager.from_dict({
        "database": {"path": str(db_path)},
        "logging": {"level": "DEBUG"},
    })


class TestBootstrap:
    def test_fresh_boot(self, tmp_path):
        config = make_config(tmp_path / "ledger.db")

        context = bootstrap(config, capital=2000.0)
        try:
            assert context.validation.mode == "fresh_start"
            assert context.summary.ok
            assert context.ledger.get_state().available_usd == 2000.0
            assert context.store.get_run_epoch(context.run_id)["status"] == "active"
        finally:
            shutdown(context)

        with StateStore(str(tmp_path / "ledger.db")) as store:
            assert store.get_run_epoch(context.run_id)["status"] == "closed"

    def test_crash_then_continuation(self, tmp_path):
        config = make_config(tmp_path / "ledger.db")

        first = bootstrap(config, capital=2000.0)
        first.capital_manager.open_position("t1", "pool_a", "A", 500.0, entry_price=1.0)
        first.capital_manager.open_position("t2", "pool_b", "C", 300.0, entry_price=4.0)
        first.capital_manager.close_position("t2", exit_value_usd=330.0)
        # Simulated crash: the epoch is never closed
        first.store.close()

        second = bootstrap(make_config(tmp_path / "ledger.db"))
        try:
            assert second.validation.mode == "continuation"
            assert second.epoch.parent_run_id == first.run_id
            assert second.epoch.starting_capital_usd == 2030.0
            assert second.summary.positions_recovered == 1
            assert second.store.get_run_epoch(first.run_id)["status"] == "closed"
            assert second.store.get_position("t1")["exit_reason"] == "RECOVERY_EXIT"

            state = second.ledger.get_state()
            assert state.total_capital_usd == 2030.0
            assert state.available_usd == 2030.0
            assert state.position_count == 0
            # Prior run's trades do not count toward this run
            assert second.pnl_service.compute_realized_pnl_from_store().trade_count == 0
        finally:
            shutdown(second)

    def test_fresh_capital_with_open_positions_is_blocked(self, tmp_path):
        first = bootstrap(make_config(tmp_path / "ledger.db"), capital=2000.0)
        first.capital_manager.open_position("t1", "pool_a", "A", 500.0, entry_price=1.0)
        first.store.close()

        with pytest.raises(HybridStateBlocked) as exc_info:
            bootstrap(make_config(tmp_path / "ledger.db"), capital=5000.0)

        assert exc_info.value.validation.open_positions_from_prior == 1

    def test_invalid_capital_aborts(self, tmp_path):
        with pytest.raises(StartupAborted):
            bootstrap(make_config(tmp_path / "ledger.db"), capital=-1.0)

    def test_boot_seals_the_ledger(self, tmp_path):
        context = bootstrap(make_config(tmp_path / "ledger.db"), capital=2000.0)
        try:
            assert context.ledger.is_sealed()
            assert context.reconciler.seal.run_id == context.run_id
            with pytest.raises(ReconciliationSealError):
                context.ledger.initialize(99999.0)
        finally:
            shutdown(context)

    def test_hydration_mismatch_aborts(self, tmp_path):
        with patch.object(
            StartupReconciler, "validate_hydration", side_effect=ReconciliationSealError("count mismatch")
        ):
            with pytest.raises(StartupAborted) as exc_info:
                bootstrap(make_config(tmp_path / "ledger.db"), capital=2000.0)

        assert isinstance(exc_info.value.cause, ReconciliationSealError)

    def test_unreadable_store_aborts_instead_of_blocking(self, tmp_path):
        with patch.object(StateStore, "get_open_positions", side_effect=StoreUnavailable("get_open_positions")):
            with pytest.raises(StartupAborted) as exc_info:
                bootstrap(make_config(tmp_path / "ledger.db"), capital=2000.0)

        assert not isinstance(exc_info.value, HybridStateBlocked)
        assert isinstance(exc_info.value.cause, StoreUnavailable)


class TestCli:
    def test_boot_command(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)

        main(["--db", str(tmp_path / "cli.db"), "boot", "--capital", "1000"])

        out = capsys.readouterr().out
        assert "BOOT SUMMARY" in out
        assert "fresh_start" in out
        assert "$1,000.00" in out

    def test_status_command(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        main(["--db", str(tmp_path / "cli.db"), "boot", "--capital", "1000"])
        capsys.readouterr()

        main(["--db", str(tmp_path / "cli.db"), "status"])

        out = capsys.readouterr().out
        assert "STATUS" in out
        assert "(closed)" in out

    def test_hybrid_boot_exits_nonzero(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        db_path = tmp_path / "cli.db"
        first = bootstrap(make_config(db_path), capital=2000.0)
        first.capital_manager.open_position("t1", "pool_a", "A", 500.0, entry_price=1.0)
        first.store.close()

        with pytest.raises(SystemExit) as exc_info:
            main(["--db", str(db_path), "boot", "--capital", "1000"])

        assert exc_info.value.code == 1

    def test_non_positive_capital_rejected(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(SystemExit) as exc_info:
            main(["--db", str(tmp_path / "cli.db"), "boot", "--capital", "0"])
        assert exc_info.value.code == 1
