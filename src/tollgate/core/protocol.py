"""
x402 payment handshake.

Turns one unpaid command request into a paid, confirmed one:

    INITIATED -> REQUESTED -> COMPLETED                      (200, no payment)
                           -> INVOICE_RECEIVED -> SETTLING -> CONFIRMING* -> COMPLETED | FAILED

1. The unpaid request is sent. 200 completes immediately; no response at
   all or any status other than 402 fails at stage ``initial``.
2. A 402 body is parsed into an Invoice. An incomplete invoice fails at
   ``payment_initiation`` and is never settled.
3. The invoice is handed to the PaymentSettler. A settlement error fails
   at ``payment_settlement``; the settler is never called twice.
4. The identical request is re-sent with ``X-X402-Reference``. 200 ends at
   ``payment_confirmed``; 402 waits and retries up to the attempt ceiling;
   anything else (or running out of attempts) fails at
   ``payment_confirmation`` with the last response kept.

Every terminal state carries a pricing summary computed from the best
amount known at that point.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, Field

from tollgate.config import CommandConfig, ConfirmationConfig
from tollgate.errors import (
    ConfigurationError,
    ConfirmationExhausted,
    ProtocolError,
    SettlementError,
    TransportError,
)
from tollgate.executors.base import Executor, parse_amount
from tollgate.observability.logging import get_logger
from tollgate.observability.tracing import SpanAttributes, TracingManager, annotate
from tollgate.payments.base import (
    Invoice,
    PaymentSettler,
    Settlement,
    parse_payment_required,
)
from tollgate.payments.signing import ProtocolSigner, canonical_payload
from tollgate.routing.scoring import SelectionMetadata

logger = get_logger(__name__)

REFERENCE_HEADER = "X-X402-Reference"

Sleep = Callable[[float], Awaitable[None]]


class HandshakeState(str, Enum):
    """States of the payment handshake."""

    INITIATED = "initiated"
    REQUESTED = "requested"
    INVOICE_RECEIVED = "invoice_received"
    SETTLING = "settling"
    CONFIRMING = "confirming"
    COMPLETED = "completed"
    FAILED = "failed"


class Stage(str, Enum):
    """Stage a dispatch attempt ended at."""

    COMPLETED = "completed"
    INITIAL = "initial"
    PAYMENT_INITIATION = "payment_initiation"
    PAYMENT_SETTLEMENT = "payment_settlement"
    PAYMENT_CONFIRMATION = "payment_confirmation"
    PAYMENT_CONFIRMED = "payment_confirmed"
    TRANSPORT = "transport"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class PricingSummary(BaseModel):
    """Realized cost of an attempt and the price suggested to the client."""

    base_amount: float
    markup_percent: float
    suggested_price: float


def summarize_pricing(base_amount: Any, markup_percent: float) -> PricingSummary | None:
    """Apply the markup to a base amount, rounding to 6 decimal places."""
    parsed = parse_amount(base_amount)
    if parsed is None:
        return None
    return PricingSummary(
        base_amount=parsed,
        markup_percent=markup_percent,
        suggested_price=round(parsed * (1 + markup_percent / 100), 6),
    )


def derive_base_amount(
    settlement: Settlement | None,
    invoice: Invoice | None,
    fallback: float | None,
) -> float | None:
    """Best known amount: settled, else invoiced, else advertised."""
    if settlement is not None and settlement.realized_amount is not None:
        return settlement.realized_amount
    if invoice is not None:
        return invoice.amount
    return fallback


class CommandRequest(BaseModel):
    """A resolved command call against one executor."""

    endpoint: str
    verb: str = "POST"
    payload: Any = Field(default_factory=dict)


class DispatchResult(BaseModel):
    """Outcome of one handshake with one executor."""

    executor_id: str
    outcome: Outcome
    stage: Stage
    state: HandshakeState
    response: Any = None
    http_status: int | None = None
    error: str | None = None
    error_type: str | None = None
    invoice: Invoice | None = None
    settlement: Settlement | None = None
    attempts: int = 0
    pricing: PricingSummary | None = None
    selection: SelectionMetadata | None = None
    transitions: list[HandshakeState] = Field(default_factory=list)
    latency_ms: float = 0.0
    refund_required: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.SUCCESS


class PaymentProtocolClient:
    """
    Runs the payment handshake against executors.

    Args:
        settler: Pays invoices.
        signer: Signs requests to executors that require the secured path.
        client: Shared HTTP client. One is created (and owned) if omitted.
        command_config: Per-call timeout.
        confirmation_config: Attempt ceiling and delay of the confirmation loop.
        markup_percent: Markup used for pricing summaries.
        tracer: Optional tracing manager.
        sleep: Awaitable used between confirmation attempts.
    """

    def __init__(
        self,
        settler: PaymentSettler,
        signer: ProtocolSigner | None = None,
        client: httpx.AsyncClient | None = None,
        command_config: CommandConfig | None = None,
        confirmation_config: ConfirmationConfig | None = None,
        markup_percent: float = 10.0,
        tracer: TracingManager | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settler = settler
        self._signer = signer or ProtocolSigner()
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self._command = command_config or CommandConfig()
        self._confirmation = confirmation_config or ConfirmationConfig()
        self._markup = markup_percent
        self._tracer = tracer or TracingManager()
        self._sleep = sleep

    @property
    def markup_percent(self) -> float:
        return self._markup

    async def send(
        self,
        executor: Executor,
        request: CommandRequest,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """
        Send one command request.

        Executors flagged ``requires_secure`` get signed headers; the body is
        sent exactly as it was signed.

        Raises:
            httpx.HTTPError: No response was received.
            ConfigurationError: The executor requires signing and no key is set.
        """
        headers = dict(headers or {})
        payload = request.payload if request.payload is not None else {}
        if executor.requires_secure:
            headers = self._signer.headers(payload, headers)

        url = executor.url_for(request.endpoint)
        verb = request.verb.upper()
        if verb in ("GET", "DELETE", "HEAD"):
            params = payload if isinstance(payload, dict) and payload else None
            return await self._client.request(
                verb, url, params=params, headers=headers, timeout=self._command.timeout_s
            )

        headers.setdefault("content-type", "application/json")
        return await self._client.request(
            verb,
            url,
            content=canonical_payload(payload),
            headers=headers,
            timeout=self._command.timeout_s,
        )

    async def execute(
        self,
        executor: Executor,
        request: CommandRequest,
        selection: SelectionMetadata | None = None,
        advertised_price: float | None = None,
    ) -> DispatchResult:
        """
        Run the full handshake against one executor.

        Protocol failures come back as a failed DispatchResult; only
        configuration errors raise.
        """
        started = time.perf_counter()
        attrs = SpanAttributes(
            operation="handshake",
            executor_id=executor.id,
            amount=advertised_price,
        )
        async with self._tracer.span("tollgate.handshake", attrs, endpoint=request.endpoint) as span:
            result = await self._run(executor, request, selection, advertised_price)
            result.latency_ms = (time.perf_counter() - started) * 1000
            annotate(
                span,
                stage=result.stage.value,
                success=result.succeeded,
                attempts=result.attempts,
            )
        return result

    async def _run(
        self,
        executor: Executor,
        request: CommandRequest,
        selection: SelectionMetadata | None,
        advertised_price: float | None,
    ) -> DispatchResult:
        transitions = [HandshakeState.INITIATED, HandshakeState.REQUESTED]
        log = logger.bind(executor_id=executor.id, endpoint=request.endpoint)

        def finish(
            outcome: Outcome,
            stage: Stage,
            base_amount: float | None,
            **fields: Any,
        ) -> DispatchResult:
            state = HandshakeState.COMPLETED if outcome == Outcome.SUCCESS else HandshakeState.FAILED
            transitions.append(state)
            return DispatchResult(
                executor_id=executor.id,
                outcome=outcome,
                stage=stage,
                state=state,
                pricing=summarize_pricing(base_amount, self._markup),
                selection=selection,
                transitions=list(transitions),
                **fields,
            )

        log.info("Dispatching command to executor", verb=request.verb)
        try:
            response = await self.send(executor, request)
        except httpx.HTTPError as exc:
            log.error("Executor did not respond", error=str(exc) or type(exc).__name__)
            return finish(
                Outcome.FAILED,
                Stage.INITIAL,
                advertised_price,
                error=f"Executor did not respond: {str(exc) or type(exc).__name__}",
                error_type=TransportError.__name__,
            )

        body = response_body(response)
        if response.status_code == 200:
            log.info("Command completed without payment")
            return finish(Outcome.SUCCESS, Stage.COMPLETED, advertised_price, response=body, http_status=200)

        if response.status_code != 402:
            log.warning("Executor rejected command", status=response.status_code)
            return finish(
                Outcome.FAILED,
                Stage.INITIAL,
                advertised_price,
                response=body,
                http_status=response.status_code,
                error=error_message(body) or "Unexpected executor response",
            )

        transitions.append(HandshakeState.INVOICE_RECEIVED)
        invoice = parse_payment_required(body)
        if invoice is None:
            error = ProtocolError(
                "Missing payment fields in 402 response (expected accepts[0] "
                "or top-level reference/receiver/amount/asset)"
            )
            log.warning("Unparseable payment request", body=body)
            return finish(
                Outcome.FAILED,
                Stage.PAYMENT_INITIATION,
                advertised_price,
                response=body,
                http_status=402,
                error=error.message,
                error_type=type(error).__name__,
            )

        log = log.bind(reference=invoice.reference)
        transitions.append(HandshakeState.SETTLING)
        try:
            settlement = await self._settler.settle(invoice)
        except SettlementError as exc:
            log.error("Payment settlement failed", error=exc.message, status=exc.status_code)
            return finish(
                Outcome.FAILED,
                Stage.PAYMENT_SETTLEMENT,
                derive_base_amount(None, invoice, advertised_price),
                response=exc.body,
                http_status=exc.status_code,
                error=exc.message,
                error_type=type(exc).__name__,
                invoice=invoice,
            )
        except ConfigurationError:
            raise
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            log.exception("Settlement backend failed", error=error)
            return finish(
                Outcome.FAILED,
                Stage.PAYMENT_SETTLEMENT,
                derive_base_amount(None, invoice, advertised_price),
                error=error,
                error_type=type(exc).__name__,
                invoice=invoice,
            )
        log.info("Payment settled", provider=settlement.provider, signature=settlement.signature)

        reference = invoice.reference
        max_attempts = self._confirmation.max_attempts
        attempt = 0
        final: httpx.Response | None = None
        transport_error: str | None = None

        while attempt < max_attempts:
            attempt += 1
            transitions.append(HandshakeState.CONFIRMING)
            try:
                final = await self.send(executor, request, {REFERENCE_HEADER: reference})
            except httpx.HTTPError as exc:
                final = None
                transport_error = str(exc) or type(exc).__name__
                log.error("Executor did not respond to confirmation", attempt=attempt, error=transport_error)
                break

            log.info("Payment confirmation attempt", attempt=attempt, status=final.status_code)
            if final.status_code != 402:
                break
            if attempt < max_attempts:
                await self._sleep(self._confirmation.delay_s)

        base_amount = derive_base_amount(settlement, invoice, advertised_price)
        paid = {"invoice": invoice, "settlement": settlement, "attempts": attempt}

        if final is None:
            return finish(
                Outcome.FAILED,
                Stage.PAYMENT_CONFIRMATION,
                base_amount,
                error=f"Executor did not respond to payment confirmation: {transport_error}",
                error_type=TransportError.__name__,
                **paid,
            )

        final_body = response_body(final)
        if final.status_code == 200:
            log.info("Payment confirmed", attempts=attempt)
            return finish(
                Outcome.SUCCESS,
                Stage.PAYMENT_CONFIRMED,
                base_amount,
                response=final_body,
                http_status=200,
                **paid,
            )

        if final.status_code == 402:
            error = ConfirmationExhausted(
                f"Executor still requires payment after {attempt} confirmation attempts"
            )
            log.warning("Confirmation attempts exhausted", attempts=attempt)
            message = error.message
            error_type: str | None = type(error).__name__
        else:
            message = error_message(final_body) or "Executor rejected payment confirmation"
            error_type = None
            log.warning("Executor rejected payment confirmation", status=final.status_code)

        return finish(
            Outcome.FAILED,
            Stage.PAYMENT_CONFIRMATION,
            base_amount,
            response=final_body,
            http_status=final.status_code,
            error=message,
            error_type=error_type,
            **paid,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None


def error_message(body: Any) -> str | None:
    if isinstance(body, dict):
        message = body.get("error") or body.get("message")
        return str(message) if message else None
    return None
