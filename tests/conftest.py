"""
Shared pytest fixtures.
"""

import pytest

from capital_ledger.epoch.run_epoch import RunEpochManager
from capital_ledger.portfolio.ledger import PortfolioLedger
from capital_ledger.state.store import StateStore

from store_helpers import FakeClock


@pytest.fixture
def store(tmp_path):
    """Initialized store on a temporary database."""
    state_store = StateStore(str(tmp_path / "ledger.db"))
    state_store.initialize()
    yield state_store
    state_store.close()


@pytest.fixture
def ledger():
    return PortfolioLedger()


@pytest.fixture
def epoch_manager(store):
    return RunEpochManager(store, default_capital_usd=10000.0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def _no_dev_mode_env(monkeypatch):
    monkeypatch.delenv("DEV_MODE", raising=False)
    monkeypatch.delenv("CAPITAL_LEDGER_CONFIG", raising=False)
