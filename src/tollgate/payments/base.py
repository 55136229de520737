"""
Invoice and settlement model shared by all settlement backends.

An executor that wants payment answers HTTP 402 with a body in one of two
shapes:

    current:  {"x402Version": 2, "accepts": [{"amount", "asset", "payTo",
               "extra": {"reference", ...}, ...}], ...}
    legacy:   {"reference", "receiver" | "payTo", "amount", "asset"}

`parse_payment_required` normalizes either into an `Invoice`. The current
shape is tried first; a current-shape body with an incomplete first offer
falls through to the legacy fields.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tollgate.executors.base import parse_amount

LAMPORTS_PER_SOL = 1_000_000_000
CURRENT_PROTOCOL_VERSION = 2


class Invoice(BaseModel):
    """Normalized payment request. Every field is required."""

    model_config = ConfigDict(frozen=True)

    reference: str
    receiver: str
    amount: float
    asset: str


class Settlement(BaseModel):
    """
    Record of a completed payment.

    `details` keeps whatever extra fields the backend returned (the
    gateway's response body, ledger slot numbers and so on).
    """

    provider: str
    reference: str | None = None
    signature: str | None = None
    receiver: str | None = None
    amount: float | None = None
    asset: str | None = None
    lamports: int | None = None
    commitment: str | None = None
    settled_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def realized_amount(self) -> float | None:
        """Amount actually paid, derived from lamports when no amount was reported."""
        if self.amount is not None:
            return self.amount
        if self.lamports is not None:
            return self.lamports / LAMPORTS_PER_SOL
        return None


def _build_invoice(reference: Any, receiver: Any, amount: Any, asset: Any) -> Invoice | None:
    if not reference or not receiver or not asset:
        return None
    parsed_amount = parse_amount(amount)
    if parsed_amount is None:
        return None
    return Invoice(
        reference=str(reference),
        receiver=str(receiver),
        amount=parsed_amount,
        asset=str(asset),
    )


def _protocol_version(body: dict[str, Any]) -> Any:
    version = body.get("x402Version")
    return version if version is not None else body.get("protocolVersion")


def parse_payment_required(body: Any) -> Invoice | None:
    """
    Parse a 402 response body into an Invoice.

    Returns None when neither shape yields all four fields; callers treat
    that as a protocol error rather than settling a partial invoice.
    """
    if not isinstance(body, dict):
        return None

    accepts = body.get("accepts")
    if _protocol_version(body) == CURRENT_PROTOCOL_VERSION and isinstance(accepts, list) and accepts:
        offer = accepts[0] if isinstance(accepts[0], dict) else {}
        extra = offer.get("extra") if isinstance(offer.get("extra"), dict) else {}
        invoice = _build_invoice(
            extra.get("reference"),
            offer.get("payTo"),
            offer.get("amount"),
            offer.get("asset"),
        )
        if invoice is not None:
            return invoice

    return _build_invoice(
        body.get("reference"),
        body.get("receiver") or body.get("payTo"),
        body.get("amount"),
        body.get("asset"),
    )


class PaymentSettler(ABC):
    """Pays invoices. Implementations raise on any failure."""

    provider: str = ""

    @abstractmethod
    async def settle(self, invoice: Invoice) -> Settlement:
        """
        Pay an invoice.

        Raises:
            SettlementError: The payment was rejected or could not be submitted.
            ConfigurationError: The settler is missing credentials or the
                asset is unsupported.
        """

    async def aclose(self) -> None:
        """Release network resources held by the settler."""
