"""
Command dispatcher.

Entry point of the engine. For a command intent it:

    1. Validates the selection parameters (before any network call).
    2. Picks ready executors that advertise a matching method.
    3. Ranks them with the configured strategy (or delegate).
    4. Runs the payment handshake with each selected executor, one after
       another in selection order. A failure with one executor becomes a
       failed result and never aborts the rest of the batch.
    5. Aggregates realized cost and the marked-up price for the client.

It also serves the client payment flow: price estimates, invoice proxying
and execution of commands the client has already paid for on-chain.
"""

from __future__ import annotations

import re
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from tollgate.config import DispatchConfig
from tollgate.core.protocol import (
    REFERENCE_HEADER,
    CommandRequest,
    DispatchResult,
    HandshakeState,
    Outcome,
    PaymentProtocolClient,
    PricingSummary,
    Stage,
    error_message,
    response_body,
    summarize_pricing,
)
from tollgate.core.registry import HealthRegistry
from tollgate.core.selector import ExecutorSelector
from tollgate.errors import (
    CapacityError,
    ConfigurationError,
    DispatchError,
    ExecutorNotFoundError,
    IndeterminateSelectionError,
    TransportError,
    ValidationError,
)
from tollgate.executors.base import Executor, ExecutorStatus, Location
from tollgate.observability.logging import get_logger
from tollgate.observability.metrics import DispatchMetrics
from tollgate.observability.tracing import SpanAttributes, TracingManager
from tollgate.payments.base import Invoice, Settlement, parse_payment_required
from tollgate.payments.verification import ClientPayment, ClientPaymentVerifier, PaymentVerdict
from tollgate.routing.scoring import (
    RankedExecutor,
    SelectionContext,
    SelectionMetadata,
    SelectionStrategy,
)

logger = get_logger(__name__)

_SLUG = re.compile(r"[^a-z0-9_-]+")
CLIENT_PROVIDER = "client"


class CommandIntent(BaseModel):
    """
    A named capability to run on one or more executors.

    Args:
        name: Intent name, e.g. ``"dance"``.
        identifiers: Tokens matched against advertised methods. Defaults
            to the name.
        endpoint: Explicit path, overriding the matching method's path.
        verb: Explicit HTTP verb, overriding the matching method's verb.
        payload: Request body (or query for GET).
    """

    name: str = Field(min_length=1)
    identifiers: list[str] = Field(default_factory=list)
    endpoint: str | None = None
    verb: str | None = None
    payload: Any = Field(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        if not self.identifiers:
            self.identifiers = [self.name]

    def resolve(self, executor: Executor) -> CommandRequest:
        """Endpoint and verb for this intent on a given executor."""
        method = executor.find_method(self.identifiers)
        endpoint = (
            self.endpoint
            or (method.endpoint if method is not None else None)
            or f"/commands/{_SLUG.sub('-', self.name.lower()).strip('-')}"
        )
        verb = self.verb or (method.verb if method is not None else "POST")
        return CommandRequest(endpoint=endpoint, verb=verb, payload=self.payload)


class SelectionParams(BaseModel):
    """How many executors to use and how to rank them."""

    count: int | Literal["all"] = 1
    strategy: SelectionStrategy | None = None
    location: Location | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: str = "normal"

    @field_validator("count", mode="before")
    @classmethod
    def _validate_count(cls, value: Any) -> int | str:
        if isinstance(value, str):
            text = value.strip().lower()
            if text == "all":
                return "all"
            if not text.isdigit():
                raise ValueError('count must be a positive integer or "all"')
            value = int(text)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValueError('count must be a positive integer or "all"')
        return value

    @classmethod
    def parse(cls, raw: dict[str, Any]) -> SelectionParams:
        """Validate caller input, raising the engine's ValidationError."""
        try:
            return cls.model_validate(raw)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid selection parameters: {exc}") from exc

    def context(self) -> SelectionContext:
        return SelectionContext(
            location=self.location,
            parameters=self.parameters,
            priority=self.priority,
        )


class DispatchSummary(BaseModel):
    """Aggregate over a dispatch batch."""

    selection_strategy: str
    markup_percent: float
    total_cost: float
    suggested_price: float | None
    selected_executor_ids: list[str]


class DispatchReport(BaseModel):
    """Per-executor results of one dispatch, in selection order."""

    intent: str
    results: list[DispatchResult]
    summary: DispatchSummary


class PriceEstimate(BaseModel):
    """Price a client would pay, computed without contacting any executor."""

    intent: str
    executor_id: str
    executor_name: str
    price: float | None
    pricing: PricingSummary | None
    selection: SelectionMetadata


class InvoiceQuote(BaseModel):
    """What an executor answered to the unpaid request."""

    executor_id: str
    http_status: int
    invoice: Invoice | None = None
    response: Any = None


class CommandDispatcher:
    """
    Dispatches command intents to executors.

    Args:
        registry: Source of executors and their status.
        selector: Ranks candidates.
        protocol: Runs the payment handshake.
        config: Strategy defaults and markup.
        verifier: Verifies client payments for prepaid execution.
        metrics: Receives every result.
        tracer: Optional tracing manager.
    """

    def __init__(
        self,
        registry: HealthRegistry,
        selector: ExecutorSelector,
        protocol: PaymentProtocolClient,
        config: DispatchConfig | None = None,
        verifier: ClientPaymentVerifier | None = None,
        metrics: DispatchMetrics | None = None,
        tracer: TracingManager | None = None,
    ) -> None:
        self._registry = registry
        self._selector = selector
        self._protocol = protocol
        self._config = config or DispatchConfig()
        self._verifier = verifier
        self._metrics = metrics or DispatchMetrics()
        self._tracer = tracer or TracingManager()

    @property
    def metrics(self) -> DispatchMetrics:
        return self._metrics

    @property
    def markup_percent(self) -> float:
        return self._config.pricing.markup_percent

    def strategy_for(self, intent: CommandIntent, params: SelectionParams) -> SelectionStrategy:
        return params.strategy or self._config.selection.strategy_for(intent.name)

    async def dispatch(
        self,
        intent: CommandIntent,
        params: SelectionParams | None = None,
    ) -> DispatchReport:
        """
        Run an intent on the selected executors.

        Raises:
            CapacityError: Fewer ready executors support the intent than
                were requested.
            ValidationError: Malformed selection parameters.
            IndeterminateSelectionError: The strategy could not rank anyone.
            ConfigurationError: Signing or settlement is not configured.
        """
        params = params or SelectionParams()
        strategy = self.strategy_for(intent, params)
        log = logger.bind(intent=intent.name, strategy=strategy.value)

        candidates = self._registry.ready(intent.identifiers)
        if not candidates:
            raise CapacityError(
                f"No ready executors support '{intent.name}'",
                {"intent": intent.name},
            )
        if params.count != "all" and params.count > len(candidates):
            raise CapacityError(
                f"Not enough ready executors for '{intent.name}' "
                f"(requested {params.count}, available {len(candidates)})",
                {"requested": params.count, "available": len(candidates)},
            )

        ranked = await self._selector.rank(
            candidates, intent.name, intent.identifiers, strategy, params.context()
        )
        selected = ranked if params.count == "all" else ranked[: params.count]
        if not selected or (params.count != "all" and len(selected) < params.count):
            raise CapacityError(
                f"Not enough rankable executors for '{intent.name}' "
                f"(requested {params.count}, available {len(selected)})",
                {"requested": params.count, "available": len(selected)},
            )

        log.info("Dispatching intent", executors=[r.executor.id for r in selected])
        attrs = SpanAttributes(operation="dispatch", intent=intent.name, strategy=strategy.value)
        results: list[DispatchResult] = []
        async with self._tracer.span("tollgate.dispatch", attrs, count=len(selected)):
            for candidate in selected:
                results.append(await self._dispatch_to(intent, candidate))

        summary = self._summarize(strategy, results, selected)
        log.info(
            "Dispatch finished",
            succeeded=sum(1 for r in results if r.succeeded),
            total_cost=summary.total_cost,
        )
        return DispatchReport(intent=intent.name, results=results, summary=summary)

    async def dispatch_one(
        self,
        intent: CommandIntent,
        params: SelectionParams | None = None,
    ) -> DispatchResult:
        """Run an intent on the single best executor."""
        params = (params or SelectionParams()).model_copy(update={"count": 1})
        report = await self.dispatch(intent, params)
        return report.results[0]

    async def probe_now(self, executor_id: str) -> ExecutorStatus:
        """Re-probe one executor immediately."""
        return await self._registry.refresh(executor_id)

    async def estimate(
        self,
        intent: CommandIntent,
        params: SelectionParams | None = None,
        executor_id: str | None = None,
    ) -> PriceEstimate:
        """Pick an executor and quote its marked-up price. No network calls are made."""
        params = params or SelectionParams()
        chosen = await self._pick(intent, params, executor_id, use_delegate=False)
        price = chosen.executor.price_for(intent.identifiers)
        return PriceEstimate(
            intent=intent.name,
            executor_id=chosen.executor.id,
            executor_name=chosen.executor.name,
            price=price,
            pricing=summarize_pricing(price, self.markup_percent),
            selection=chosen.metadata,
        )

    async def request_invoice(
        self,
        intent: CommandIntent,
        executor_id: str | None = None,
        params: SelectionParams | None = None,
    ) -> InvoiceQuote:
        """
        Send the unpaid request and return the executor's payment request.

        Lets clients that pay on their own obtain an invoice without
        reaching the executor directly.

        Raises:
            TransportError: The executor did not respond.
        """
        params = params or SelectionParams()
        chosen = await self._pick(intent, params, executor_id)
        executor = chosen.executor
        try:
            response = await self._protocol.send(executor, intent.resolve(executor))
        except httpx.HTTPError as exc:
            raise TransportError(
                f"Executor did not respond: {str(exc) or type(exc).__name__}",
                {"executor_id": executor.id},
            ) from exc

        body = response_body(response)
        invoice = parse_payment_required(body) if response.status_code == 402 else None
        logger.info(
            "Invoice requested",
            executor_id=executor.id,
            status=response.status_code,
            reference=invoice.reference if invoice else None,
        )
        return InvoiceQuote(
            executor_id=executor.id,
            http_status=response.status_code,
            invoice=invoice,
            response=body,
        )

    async def execute_prepaid(
        self,
        intent: CommandIntent,
        payment: ClientPayment,
        executor_id: str | None = None,
        params: SelectionParams | None = None,
    ) -> DispatchResult:
        """
        Run a command the client already paid for.

        The client's transaction is verified first; an invalid payment
        raises before any executor is contacted. Every failure after a
        verified payment is returned with ``refund_required=True``.

        Raises:
            ConfigurationError: No payment verifier is configured.
            ValidationError: The payment could not be verified.
        """
        if self._verifier is None or not self._verifier.is_ready:
            raise ConfigurationError("Client payment verification is not configured")

        params = params or SelectionParams()
        log = logger.bind(intent=intent.name, signature=payment.signature)

        verdict = await self._verifier.verify(payment.signature, payment.receiver, payment.amount)
        if not verdict.valid:
            log.warning("Client payment rejected", reason=verdict.reason)
            raise ValidationError(
                "Payment verification failed",
                {"reason": verdict.reason, "signature": payment.signature},
            )

        try:
            chosen = await self._pick(intent, params, executor_id)
        except DispatchError as exc:
            return self._refund(
                payment,
                self._failed(executor_id or "", Stage.INITIAL, exc.message, type(exc).__name__),
            )

        executor = chosen.executor
        if executor.find_method(intent.identifiers) is None:
            return self._refund(
                payment,
                self._failed(
                    executor.id,
                    Stage.INITIAL,
                    "Command not found on selected executor",
                    selection=chosen.metadata,
                ),
            )

        headers = {REFERENCE_HEADER: payment.reference} if payment.reference else None
        try:
            response = await self._protocol.send(executor, intent.resolve(executor), headers)
        except httpx.HTTPError as exc:
            return self._refund(
                payment,
                self._failed(
                    executor.id,
                    Stage.TRANSPORT,
                    f"Executor did not respond: {str(exc) or type(exc).__name__}",
                    TransportError.__name__,
                    selection=chosen.metadata,
                ),
            )

        body = response_body(response)
        settlement = _client_settlement(payment, verdict)
        pricing = summarize_pricing(settlement.realized_amount, self.markup_percent)
        if response.is_success:
            result = DispatchResult(
                executor_id=executor.id,
                outcome=Outcome.SUCCESS,
                stage=Stage.PAYMENT_CONFIRMED,
                state=HandshakeState.COMPLETED,
                response=body,
                http_status=response.status_code,
                settlement=settlement,
                attempts=1,
                pricing=pricing,
                selection=chosen.metadata,
                transitions=[
                    HandshakeState.INITIATED,
                    HandshakeState.REQUESTED,
                    HandshakeState.COMPLETED,
                ],
            )
            log.info("Prepaid command completed", executor_id=executor.id)
            self._record(result)
            return result

        failed = self._failed(
            executor.id,
            Stage.PAYMENT_CONFIRMATION,
            error_message(body) or "Executor returned error",
            selection=chosen.metadata,
        ).model_copy(
            update={
                "response": body,
                "http_status": response.status_code,
                "settlement": settlement,
                "attempts": 1,
                "pricing": pricing,
            }
        )
        return self._refund(payment, failed)

    async def _dispatch_to(self, intent: CommandIntent, candidate: RankedExecutor) -> DispatchResult:
        executor = candidate.executor
        try:
            result = await self._protocol.execute(
                executor,
                intent.resolve(executor),
                selection=candidate.metadata,
                advertised_price=executor.price_for(intent.identifiers),
            )
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.error(
                "Command failed for executor",
                executor_id=executor.id,
                error=str(exc) or type(exc).__name__,
            )
            result = self._failed(
                executor.id,
                Stage.TRANSPORT,
                str(exc) or type(exc).__name__,
                type(exc).__name__,
                selection=candidate.metadata,
            )
        self._record(result)
        return result

    async def _pick(
        self,
        intent: CommandIntent,
        params: SelectionParams,
        executor_id: str | None,
        use_delegate: bool = True,
    ) -> RankedExecutor:
        if executor_id is not None:
            executor = self._registry.get_by_id(executor_id)
            if executor is None:
                raise ExecutorNotFoundError(executor_id)
            if not executor.is_ready:
                raise CapacityError(
                    f"Executor '{executor_id}' is not ready",
                    {"executor_id": executor_id, "state": executor.status.state.value},
                )
            return RankedExecutor(
                executor=executor,
                metadata=SelectionMetadata(
                    strategy="direct",
                    price=executor.price_for(intent.identifiers),
                    reason="Requested by id",
                ),
            )

        candidates = self._registry.ready(intent.identifiers)
        if not candidates:
            raise CapacityError(
                f"No ready executors support '{intent.name}'",
                {"intent": intent.name},
            )
        ranked = await self._selector.rank(
            candidates,
            intent.name,
            intent.identifiers,
            self.strategy_for(intent, params),
            params.context(),
            use_delegate=use_delegate,
        )
        if not ranked:
            raise IndeterminateSelectionError(f"No executor could be ranked for '{intent.name}'")
        return ranked[0]

    def _summarize(
        self,
        strategy: SelectionStrategy,
        results: list[DispatchResult],
        selected: list[RankedExecutor],
    ) -> DispatchSummary:
        total = sum(
            r.pricing.base_amount for r in results if r.succeeded and r.pricing is not None
        )
        markup = self.markup_percent
        return DispatchSummary(
            selection_strategy=strategy.value,
            markup_percent=markup,
            total_cost=round(total, 6) if total > 0 else 0.0,
            suggested_price=round(total * (1 + markup / 100), 6) if total > 0 else None,
            selected_executor_ids=[r.executor.id for r in selected],
        )

    def _failed(
        self,
        executor_id: str,
        stage: Stage,
        error: str,
        error_type: str | None = None,
        selection: SelectionMetadata | None = None,
    ) -> DispatchResult:
        return DispatchResult(
            executor_id=executor_id,
            outcome=Outcome.FAILED,
            stage=stage,
            state=HandshakeState.FAILED,
            error=error,
            error_type=error_type,
            selection=selection,
            transitions=[HandshakeState.INITIATED, HandshakeState.FAILED],
        )

    def _refund(self, payment: ClientPayment, result: DispatchResult) -> DispatchResult:
        result = result.model_copy(update={"refund_required": True})
        logger.warning(
            "Refund requested",
            sender=payment.sender or "unknown",
            amount=payment.amount,
            signature=payment.signature,
            executor_id=result.executor_id or None,
            reason=result.error or "Command execution failed",
        )
        self._record(result)
        return result

    def _record(self, result: DispatchResult) -> None:
        if not result.executor_id:
            return
        self._metrics.record_call(
            result.executor_id,
            result.latency_ms,
            result.succeeded,
            result.stage.value,
        )
        settlement = result.settlement
        if (
            settlement is not None
            and settlement.provider != CLIENT_PROVIDER
            and settlement.realized_amount is not None
        ):
            self._metrics.spend_tracker.record(
                result.executor_id,
                settlement.realized_amount,
                settlement.asset or "SOL",
                settlement.provider,
                settlement.reference,
            )


def _client_settlement(payment: ClientPayment, verdict: PaymentVerdict) -> Settlement:
    return Settlement(
        provider=CLIENT_PROVIDER,
        reference=payment.reference,
        signature=payment.signature,
        receiver=payment.receiver,
        amount=verdict.amount if verdict.amount is not None else payment.amount,
        asset="SOL",
        lamports=verdict.lamports,
    )

