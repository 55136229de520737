"""
Settlement through an external x402 facilitator.

The normalized invoice is POSTed to the facilitator under signed headers;
the facilitator performs the payment and answers with its own record,
which is kept verbatim in `Settlement.details`.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urljoin

import httpx

from tollgate.config import GatewayConfig
from tollgate.errors import ConfigurationError, SettlementError
from tollgate.executors.base import parse_amount
from tollgate.observability.logging import get_logger
from tollgate.payments.base import Invoice, PaymentSettler, Settlement
from tollgate.payments.signing import ProtocolSigner, canonical_payload

logger = get_logger(__name__)


class GatewaySettler(PaymentSettler):
    """
    Pays invoices through a facilitator endpoint.

    Args:
        signer: Signs the settlement request. Must be configured.
        config: Facilitator URL, endpoint and timeout.
        client: Shared HTTP client. One is created (and owned) if omitted.
    """

    provider = "gateway"

    def __init__(
        self,
        signer: ProtocolSigner,
        config: GatewayConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._signer = signer
        self._config = config or GatewayConfig()
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    @property
    def settlement_url(self) -> str:
        if not self._config.url:
            raise ConfigurationError("x402 gateway URL is not configured")
        if not self._config.payment_endpoint:
            return self._config.url
        return urljoin(self._config.url, self._config.payment_endpoint)

    async def settle(self, invoice: Invoice) -> Settlement:
        if not self._signer.is_configured:
            raise ConfigurationError("x402 private key is not configured")

        payload = {
            "reference": invoice.reference,
            "receiver": invoice.receiver,
            "amount": invoice.amount,
            "asset": invoice.asset,
        }
        url = self.settlement_url
        log = logger.bind(reference=invoice.reference, receiver=invoice.receiver)
        log.info("Settling invoice through gateway", url=url, amount=invoice.amount)

        headers = self._signer.headers(payload, {"content-type": "application/json"})
        try:
            response = await self._client.post(
                url,
                content=canonical_payload(payload),
                headers=headers,
                timeout=self._config.timeout_s,
            )
        except httpx.HTTPError as exc:
            log.error("Gateway settlement request failed", error=str(exc))
            raise SettlementError(f"Gateway settlement request failed: {exc}") from exc

        body = _json_or_text(response)
        if response.is_error:
            log.error(
                "Gateway rejected settlement",
                status=response.status_code,
                body=body,
            )
            message = _error_message(body) or f"Gateway answered HTTP {response.status_code}"
            raise SettlementError(message, status_code=response.status_code, body=body)

        log.info("Gateway settlement accepted", status=response.status_code)
        return _merge_response(invoice, body)


def _merge_response(invoice: Invoice, body: Any) -> Settlement:
    """Settlement keyed by the invoice reference. The facilitator's own ids stay in details."""
    data = body if isinstance(body, dict) else {}
    lamports = data.get("lamports")
    return Settlement(
        provider=GatewaySettler.provider,
        reference=invoice.reference,
        signature=_text(data, "signature", "transaction"),
        receiver=_text(data, "receiver", "payTo") or invoice.receiver,
        amount=parse_amount(data.get("amount")),
        asset=_text(data, "asset") or invoice.asset,
        lamports=lamports if isinstance(lamports, int) and not isinstance(lamports, bool) else None,
        details=data,
    )


def _text(data: dict[str, Any], *keys: str) -> str | None:
    """First non-empty string among ``keys``; structured values are skipped."""
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _json_or_text(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(body: Any) -> str | None:
    if isinstance(body, dict):
        message = body.get("error") or body.get("message")
        return str(message) if message else None
    return None
