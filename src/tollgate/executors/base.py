"""
Executor data model.

An executor is an independently operated HTTP endpoint that runs priced
commands. Its advertised capabilities arrive as a list of method
descriptors, which come in two shapes on the wire:

    - a bare name, e.g. ``"move_demo"``
    - a detailed object with path, verb, description, pricing and
      free-form parameters

Both are modeled as a tagged union (`SimpleMethod` | `DetailedMethod`)
sharing the same accessors, so callers never inspect the raw shape.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Sequence
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

_HEALTH_PATH = re.compile(r"(^|/)health/?$", re.IGNORECASE)


class ExecutorState(str, Enum):
    """Reachability state reported by the last probe."""

    UNKNOWN = "unknown"
    READY = "ready"
    UNREACHABLE = "unreachable"


class Location(BaseModel):
    """Planar (lat, lng) position of an executor or a target."""

    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float


def parse_amount(value: Any) -> float | None:
    """Numeric value of an advertised amount, or None when absent or not a number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    if amount != amount:  # NaN
        return None
    return amount


class Pricing(BaseModel):
    """Price advertised for a single method."""

    model_config = ConfigDict(populate_by_name=True)

    amount: float | None = None
    asset: str = "SOL"
    receiver: str | None = Field(
        default=None, validation_alias=AliasChoices("receiver", "payTo", "pay_to")
    )
    payment_window_s: int | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "payment_window_s", "paymentWindowSeconds", "maxTimeoutSeconds"
        ),
    )

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> float | None:
        return parse_amount(value)


def _is_health_path(value: str) -> bool:
    """``health`` or any path ending in ``/health``, case-insensitively."""
    return bool(_HEALTH_PATH.search(value.strip()))


def _contains(content: str | None, token: str) -> bool:
    if not content or not token:
        return False
    return token.lower() in content.lower()


class SimpleMethod(BaseModel):
    """A method advertised by name only."""

    kind: Literal["simple"] = "simple"
    name: str

    @property
    def price(self) -> float | None:
        return None

    @property
    def pricing(self) -> Pricing | None:
        return None

    @property
    def endpoint(self) -> str | None:
        return None

    @property
    def verb(self) -> str:
        return "POST"

    def matches(self, identifiers: Sequence[str]) -> bool:
        """True if any identifier token occurs in the method name (case-insensitive)."""
        return any(_contains(self.name, token) for token in identifiers)

    def is_health_check(self) -> bool:
        return _is_health_path(self.name)


class DetailedMethod(BaseModel):
    """A method advertised with its path, verb, description and pricing."""

    kind: Literal["detailed"] = "detailed"
    path: str = ""
    verb: str = "POST"
    description: str = ""
    pricing: Pricing | None = None
    action: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)

    @property
    def price(self) -> float | None:
        return self.pricing.amount if self.pricing else None

    @property
    def endpoint(self) -> str | None:
        return self.path or None

    def matches(self, identifiers: Sequence[str]) -> bool:
        """True if any token occurs in the path, description or action callable."""
        return any(
            _contains(self.path, token)
            or _contains(self.description, token)
            or _contains(self.action, token)
            for token in identifiers
        )

    def is_health_check(self) -> bool:
        return _is_health_path(self.path or self.description)


MethodDescriptor = Annotated[
    Union[SimpleMethod, DetailedMethod], Field(discriminator="kind")
]


def parse_method(raw: Any) -> SimpleMethod | DetailedMethod | None:
    """
    Build a method descriptor from its wire form.

    Returns None for entries that are neither a name nor an object.
    """
    if isinstance(raw, SimpleMethod | DetailedMethod):
        return raw
    if isinstance(raw, str):
        return SimpleMethod(name=raw) if raw.strip() else None
    if not isinstance(raw, dict):
        return None

    pricing_raw = raw.get("pricing")
    action = raw.get("rosAction") or {}
    return DetailedMethod(
        path=str(raw.get("path") or ""),
        verb=str(raw.get("method") or raw.get("verb") or "POST").upper(),
        description=str(raw.get("description") or ""),
        pricing=Pricing.model_validate(pricing_raw) if isinstance(pricing_raw, dict) else None,
        action=action.get("callable") if isinstance(action, dict) else None,
        parameters=raw.get("parameters") if isinstance(raw.get("parameters"), dict) else {},
    )


class ExecutorStatus(BaseModel):
    """Normalized result of one probe. Replaced wholesale on every probe."""

    state: ExecutorState = ExecutorState.UNKNOWN
    message: str = ""
    available_methods: list[MethodDescriptor] = Field(default_factory=list)
    secure: bool = False
    location: Location | None = None

    @classmethod
    def initial(cls) -> ExecutorStatus:
        return cls(message="Awaiting first health check")


def normalize_address(address: str) -> str:
    """Base URL for an address given as ``host:port`` or a full URL."""
    address = address.strip()
    if "://" not in address:
        address = f"http://{address}"
    return address.rstrip("/")


class Executor(BaseModel):
    """A registered executor and its latest probe status."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    base_url: str
    name: str = ""
    requires_secure: bool = False
    status: ExecutorStatus = Field(default_factory=ExecutorStatus.initial)
    last_probed_at: datetime | None = None
    location: Location | None = None

    def model_post_init(self, __context: Any) -> None:
        if not self.name:
            self.name = f"Executor-{self.id[:6]}"

    @property
    def is_ready(self) -> bool:
        return self.status.state == ExecutorState.READY

    def find_method(self, identifiers: Sequence[str]) -> SimpleMethod | DetailedMethod | None:
        """First advertised method matching any of the intent's identifier tokens."""
        for method in self.status.available_methods:
            if method.matches(identifiers):
                return method
        return None

    def supports(self, identifiers: Sequence[str]) -> bool:
        return self.find_method(identifiers) is not None

    def price_for(self, identifiers: Sequence[str]) -> float | None:
        """Advertised price of the first matching method, if it has one."""
        method = self.find_method(identifiers)
        return method.price if method else None

    def url_for(self, endpoint: str) -> str:
        if not endpoint.startswith("/"):
            endpoint = f"/{endpoint}"
        return f"{self.base_url}{endpoint}"
