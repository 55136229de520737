"""Tests for configuration loading and runtime overrides."""

from __future__ import annotations

import pydantic
import pytest

from tollgate.config import DispatchConfig, SettlementBackend, load_config
from tollgate.routing.scoring import SelectionStrategy


class TestDefaults:
    def test_defaults(self) -> None:
        config = load_config()

        assert config.pricing.markup_percent == 10.0
        assert config.selection.default_strategy == SelectionStrategy.LOWEST_PRICE
        assert config.settlement.backend == SettlementBackend.GATEWAY
        assert config.confirmation.max_attempts == 5
        assert config.confirmation.delay_s == 2.0
        assert config.command.timeout_s == 8.0
        assert config.probe.health_path == "/health"
        assert config.tracing.enabled is False

    def test_snapshot_is_frozen(self) -> None:
        config = load_config()
        with pytest.raises(pydantic.ValidationError):
            config.pricing.markup_percent = 20.0  # type: ignore[misc]


class TestEnvironment:
    def test_nested_environment_variables(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TOLLGATE_PRICING__MARKUP_PERCENT", "12.5")
        monkeypatch.setenv("TOLLGATE_SETTLEMENT__BACKEND", "direct_ledger")
        monkeypatch.setenv("TOLLGATE_SETTLEMENT__LEDGER__RPC_URL", "http://rpc.local")
        monkeypatch.setenv("TOLLGATE_SELECTION__INTENT_STRATEGIES", '{"dance": "closest"}')

        config = load_config()

        assert config.pricing.markup_percent == 12.5
        assert config.settlement.backend == SettlementBackend.DIRECT_LEDGER
        assert config.settlement.ledger.rpc_url == "http://rpc.local"
        assert config.selection.strategy_for("dance") == SelectionStrategy.CLOSEST

    def test_env_file(self, tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
        (tmp_path / ".env").write_text("TOLLGATE_CONFIRMATION__MAX_ATTEMPTS=7\n")
        monkeypatch.chdir(tmp_path)
        assert load_config().confirmation.max_attempts == 7

    def test_invalid_values_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TOLLGATE_CONFIRMATION__MAX_ATTEMPTS", "0")
        with pytest.raises(pydantic.ValidationError):
            load_config()

    def test_secret_not_exposed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TOLLGATE_SETTLEMENT__PRIVATE_KEY", "hunter2")
        config = load_config()
        assert "hunter2" not in repr(config)
        assert config.settlement.private_key.get_secret_value() == "hunter2"


class TestOverrides:
    def test_override_returns_new_snapshot(self) -> None:
        config = load_config()
        updated = config.with_overrides(pricing={"markup_percent": 15})

        assert updated.pricing.markup_percent == 15.0
        assert config.pricing.markup_percent == 10.0
        assert updated.selection == config.selection

    def test_nested_override_keeps_siblings(self) -> None:
        config = load_config().with_overrides(settlement={"gateway": {"timeout_s": 3.0}})
        assert config.settlement.gateway.timeout_s == 3.0
        assert config.settlement.gateway.payment_endpoint == "/v1/payments"

    def test_unknown_section(self) -> None:
        with pytest.raises(ValueError, match="Unknown configuration sections"):
            load_config().with_overrides(billing={"x": 1})

    def test_invalid_override(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            load_config().with_overrides(probe={"timeout_s": -1})

    def test_strategy_lookup_is_case_insensitive(self) -> None:
        config = DispatchConfig().with_overrides(
            selection={"intent_strategies": {"dance": "smart"}, "default_strategy": "sequential"}
        )
        assert config.selection.strategy_for("DANCE") == SelectionStrategy.SMART
        assert config.selection.strategy_for("wave") == SelectionStrategy.SEQUENTIAL
