"""
Tests for configuration loading and validation.
"""

import pytest

from capital_ledger.core.config_manager import ConfigManager
from capital_ledger.epoch.run_epoch import RunEpochManager
from capital_ledger.portfolio.ledger import PortfolioLedger


class TestConfigManager:
    def test_default_config_loads(self):
        config = ConfigManager()

        validated = config.get_validated_config()
        assert validated.capital.default_capital_usd == 10000.0
        assert validated.reconciliation.grace_period_sec == 300
        assert validated.ledger.tiers == ["A", "B", "C", "D"]
        assert not config.is_dev_mode()

    def test_dotted_get(self):
        config = ConfigManager.from_dict({"reconciliation": {"grace_period_sec": 60}})

        assert config.get("reconciliation.grace_period_sec") == 60
        assert config.get("reconciliation.missing", "fallback") == "fallback"
        assert config.has("reconciliation")
        assert not config.has("nonexistent.key")

    def test_env_placeholder(self, monkeypatch):
        monkeypatch.setenv("LEDGER_DB", "/tmp/from_env.db")
        config = ConfigManager.from_dict({"database": {"path": "${LEDGER_DB}"}})

        assert config.get("database.path") == "/tmp/from_env.db"
        assert config.get_validated_config().database.path == "/tmp/from_env.db"

    def test_unset_env_placeholder_uses_default(self):
        config = ConfigManager.from_dict({"database": {"path": "${LEDGER_DB_UNSET}"}})
        assert config.get_validated_config().database.path == "data/capital_ledger.db"

    def test_dev_mode_from_env(self, monkeypatch):
        config = ConfigManager.from_dict({})
        assert not config.is_dev_mode()

        monkeypatch.setenv("DEV_MODE", "true")
        assert config.is_dev_mode()

    def test_set_revalidates(self):
        config = ConfigManager.from_dict({})
        config.set("database.path", "other.db")
        assert config.get_validated_config().database.path == "other.db"

        with pytest.raises(ValueError):
            config.set("capital.default_capital_usd", -5)

    @pytest.mark.parametrize(
        "config_dict",
        [
            {"capital": {"default_capital_usd": 0}},
            {"ledger": {"tiers": []}},
            {"ledger": {"tiers": ["A", "A"]}},
            {"logging": {"level": "LOUD"}},
            {"ledger": {"invariant_tolerance_usd": 0.05}, "reconciliation": {"drift_threshold_usd": 0.01}},
        ],
    )
    def test_invalid_config_rejected(self, config_dict):
        with pytest.raises(ValueError):
            ConfigManager.from_dict(config_dict)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigManager(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("capital: [unclosed\n")
        with pytest.raises(ValueError):
            ConfigManager(path)


class TestFromConfig:
    def test_components_read_their_sections(self, store, monkeypatch):
        monkeypatch.setenv("DEV_MODE", "true")
        config = ConfigManager.from_dict({
            "capital": {"default_capital_usd": 2500.0},
            "ledger": {"tiers": ["A", "B"]},
            "epoch": {"phantom_equity_epsilon_usd": 0.5},
        })

        ledger = PortfolioLedger.from_config(config)
        manager = RunEpochManager.from_config(store, config)

        assert ledger.dev_mode
        assert ledger.tiers == ("A", "B")
        assert manager.default_capital_usd == 2500.0
        assert manager.phantom_epsilon_usd == 0.5
