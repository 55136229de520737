"""
Immutable dispatch configuration.

The whole engine is configured through a single frozen `DispatchConfig`
value built once at startup (from ``TOLLGATE_*`` environment variables
and an optional ``.env`` file) and passed to every component. Nested
sections use ``__`` as delimiter, e.g.::

    TOLLGATE_SETTLEMENT__BACKEND=direct_ledger
    TOLLGATE_PRICING__MARKUP_PERCENT=12.5
    TOLLGATE_SELECTION__INTENT_STRATEGIES='{"dance": "lowest_price"}'

Runtime changes never mutate a config in place: `with_overrides()` returns
a new validated snapshot and logs the keys that changed.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from tollgate.observability.logging import LogConfig, get_logger
from tollgate.observability.tracing import TracingConfig
from tollgate.routing.scoring import SelectionStrategy

logger = get_logger(__name__)

Commitment = Literal["processed", "confirmed", "finalized"]


class SettlementBackend(str, Enum):
    """Which PaymentSettler pays executor invoices."""

    GATEWAY = "gateway"
    DIRECT_LEDGER = "direct_ledger"


class ProbeConfig(BaseModel):
    """Health probe endpoints and timeout."""

    model_config = ConfigDict(frozen=True)

    health_path: str = "/health"
    secure_health_path: str = "/health/secure"
    timeout_s: float = Field(default=5.0, gt=0.0)


class CommandConfig(BaseModel):
    """Per-call timeout for command requests sent to executors."""

    model_config = ConfigDict(frozen=True)

    timeout_s: float = Field(default=8.0, gt=0.0)


class ConfirmationConfig(BaseModel):
    """Bounds of the paid-retry confirmation loop."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1)
    delay_s: float = Field(default=2.0, ge=0.0)


class GatewayConfig(BaseModel):
    """External facilitator used by the gateway settler."""

    model_config = ConfigDict(frozen=True)

    url: str = "https://api.corbits.dev"
    payment_endpoint: str = "/v1/payments"
    timeout_s: float = Field(default=10.0, gt=0.0)


class LedgerConfig(BaseModel):
    """Solana access for the direct ledger settler."""

    model_config = ConfigDict(frozen=True)

    rpc_url: str | None = None
    commitment: Commitment = "confirmed"
    min_confirmations: int = Field(default=1, ge=1)
    secret_key: SecretStr | None = None
    asset: str = "SOL"


class SettlementConfig(BaseModel):
    """Settlement backend choice and its credentials."""

    model_config = ConfigDict(frozen=True)

    backend: SettlementBackend = SettlementBackend.GATEWAY
    private_key: SecretStr | None = None
    wallet_id: str | None = None
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)


class SelectionConfig(BaseModel):
    """Strategy defaults and the optional external scorer."""

    model_config = ConfigDict(frozen=True)

    default_strategy: SelectionStrategy = SelectionStrategy.LOWEST_PRICE
    intent_strategies: dict[str, SelectionStrategy] = Field(default_factory=dict)
    webhook_url: str | None = None
    webhook_timeout_s: float = Field(default=5.0, gt=0.0)

    def strategy_for(self, intent_name: str) -> SelectionStrategy:
        """Strategy configured for an intent, or the default one."""
        for key in (intent_name, intent_name.lower()):
            if key in self.intent_strategies:
                return self.intent_strategies[key]
        return self.default_strategy


class PricingConfig(BaseModel):
    """Markup applied on top of realized executor cost."""

    model_config = ConfigDict(frozen=True)

    markup_percent: float = 10.0


class VerificationConfig(BaseModel):
    """Ledger access and retry bounds for client payment verification."""

    model_config = ConfigDict(frozen=True)

    rpc_url: str | None = None
    commitment: Commitment = "confirmed"
    max_attempts: int = Field(default=5, ge=1)
    delay_s: float = Field(default=2.0, ge=0.0)
    tolerance_lamports: int = Field(default=1000, ge=0)


class DispatchConfig(BaseSettings):
    """Top-level configuration snapshot for the dispatch engine."""

    model_config = SettingsConfigDict(
        env_prefix="TOLLGATE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    command: CommandConfig = Field(default_factory=CommandConfig)
    confirmation: ConfirmationConfig = Field(default_factory=ConfirmationConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    selection: SelectionConfig = Field(default_factory=SelectionConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    log: LogConfig = Field(default_factory=LogConfig)
    tracing: TracingConfig = Field(default_factory=TracingConfig)

    def with_overrides(self, **sections: dict[str, Any]) -> DispatchConfig:
        """
        Return a new snapshot with the given section values replaced.

        This is the only supported way to change configuration at runtime.
        The receiver is left untouched.

        Args:
            **sections: Section name to a (possibly nested) mapping of
                new values, e.g. ``pricing={"markup_percent": 15}``.

        Returns:
            A validated DispatchConfig.
        """
        unknown = set(sections) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown configuration sections: {sorted(unknown)}")

        merged = _deep_merge(self.model_dump(), sections)
        updated = type(self).model_validate(merged)

        logger.info(
            "Configuration override applied",
            changed_keys=sorted(_flatten_keys(sections)),
        )
        return updated


def load_config(**overrides: Any) -> DispatchConfig:
    """Build the startup configuration from environment and ``.env``."""
    return DispatchConfig(**overrides)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _flatten_keys(values: dict[str, Any], prefix: str = "") -> list[str]:
    keys: list[str] = []
    for key, value in values.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict) and value:
            keys.extend(_flatten_keys(value, prefix=f"{path}."))
        else:
            keys.append(path)
    return keys
