"""Tests for the x402 payment handshake."""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from conftest import (
    RecordingSettler,
    make_executor,
    mock_client,
    payment_required,
    rejecting_settler,
)
from tollgate.config import ConfirmationConfig, GatewayConfig
from tollgate.core.protocol import (
    REFERENCE_HEADER,
    CommandRequest,
    HandshakeState,
    Outcome,
    PaymentProtocolClient,
    Stage,
    derive_base_amount,
    summarize_pricing,
)
from tollgate.errors import ConfigurationError
from tollgate.payments.base import Invoice, PaymentSettler, Settlement
from tollgate.payments.gateway import GatewaySettler
from tollgate.payments.signing import SIGNATURE_HEADER, ProtocolSigner

REQUEST = CommandRequest(endpoint="/commands/move_demo", payload={"speed": 2})


# -- Fixtures ----------------------------------------------------------------

class Script:
    """Answers successive requests from a list of responses and records them."""

    def __init__(self, *answers: httpx.Response | Exception) -> None:
        self.answers = list(answers)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


def make_protocol(
    handler: Callable[[httpx.Request], httpx.Response],
    settler: PaymentSettler | None = None,
    sleep: SleepRecorder | None = None,
    max_attempts: int = 5,
    signer: ProtocolSigner | None = None,
) -> PaymentProtocolClient:
    return PaymentProtocolClient(
        settler or RecordingSettler(),
        signer=signer,
        client=mock_client(handler),
        confirmation_config=ConfirmationConfig(max_attempts=max_attempts, delay_s=2.0),
        markup_percent=10.0,
        sleep=sleep or SleepRecorder(),
    )


# -- Pricing -----------------------------------------------------------------

class TestPricing:
    def test_markup_applied_and_rounded(self) -> None:
        pricing = summarize_pricing(0.1, 10.0)
        assert pricing.base_amount == 0.1
        assert pricing.suggested_price == 0.11

    def test_unparseable_base(self) -> None:
        assert summarize_pricing(None, 10.0) is None
        assert summarize_pricing("n/a", 10.0) is None

    def test_base_amount_precedence(self) -> None:
        invoice = Invoice(reference="r", receiver="x", amount=0.2, asset="SOL")
        settled = Settlement(provider="direct_ledger", lamports=300_000_000)
        assert derive_base_amount(settled, invoice, 0.1) == 0.3
        assert derive_base_amount(Settlement(provider="gateway"), invoice, 0.1) == 0.2
        assert derive_base_amount(None, None, 0.1) == 0.1


# -- Handshake ---------------------------------------------------------------

class TestHandshake:
    @pytest.mark.asyncio
    async def test_free_command_completes_immediately(self) -> None:
        script = Script(httpx.Response(200, json={"ok": True}))
        settler = RecordingSettler()
        result = await make_protocol(script, settler).execute(
            make_executor("a"), REQUEST, advertised_price=0.1
        )

        assert result.outcome == Outcome.SUCCESS
        assert result.stage == Stage.COMPLETED
        assert result.response == {"ok": True}
        assert result.attempts == 0
        assert settler.invoices == []
        assert result.transitions == [
            HandshakeState.INITIATED,
            HandshakeState.REQUESTED,
            HandshakeState.COMPLETED,
        ]
        assert result.pricing.suggested_price == 0.11

    @pytest.mark.asyncio
    async def test_paid_command_confirms_after_retry(self, sleep: SleepRecorder) -> None:
        script = Script(
            httpx.Response(402, json=payment_required(0.1, reference="abc")),
            httpx.Response(402, json=payment_required(0.1, reference="abc")),
            httpx.Response(200, json={"done": True}),
        )
        settler = RecordingSettler()
        result = await make_protocol(script, settler, sleep).execute(make_executor("a"), REQUEST)

        assert result.outcome == Outcome.SUCCESS
        assert result.stage == Stage.PAYMENT_CONFIRMED
        assert result.state == HandshakeState.COMPLETED
        assert result.attempts == 2
        assert result.response == {"done": True}
        assert len(settler.invoices) == 1
        assert settler.invoices[0].reference == "abc"
        assert sleep.delays == [2.0]
        assert result.pricing.base_amount == 0.1
        assert result.pricing.suggested_price == 0.11
        assert result.transitions == [
            HandshakeState.INITIATED,
            HandshakeState.REQUESTED,
            HandshakeState.INVOICE_RECEIVED,
            HandshakeState.SETTLING,
            HandshakeState.CONFIRMING,
            HandshakeState.CONFIRMING,
            HandshakeState.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_confirmation_resends_identical_request_with_reference(self) -> None:
        script = Script(
            httpx.Response(402, json=payment_required(0.1, reference="abc")),
            httpx.Response(200, json={}),
        )
        await make_protocol(script).execute(make_executor("a"), REQUEST)

        first, second = script.requests
        assert REFERENCE_HEADER not in first.headers
        assert second.headers[REFERENCE_HEADER] == "abc"
        assert first.content == second.content
        assert json.loads(second.content) == {"speed": 2}
        assert first.url == second.url

    @pytest.mark.asyncio
    async def test_non_402_rejection_fails_at_initial(self) -> None:
        script = Script(httpx.Response(500, json={"error": "motor fault"}))
        settler = RecordingSettler()
        result = await make_protocol(script, settler).execute(make_executor("a"), REQUEST)

        assert result.outcome == Outcome.FAILED
        assert result.stage == Stage.INITIAL
        assert result.http_status == 500
        assert result.error == "motor fault"
        assert settler.invoices == []

    @pytest.mark.asyncio
    async def test_no_response_fails_at_initial(self) -> None:
        script = Script(httpx.ConnectError("refused"))
        result = await make_protocol(script).execute(make_executor("a"), REQUEST)

        assert result.stage == Stage.INITIAL
        assert result.error_type == "TransportError"
        assert result.http_status is None

    @pytest.mark.asyncio
    async def test_incomplete_invoice_is_never_settled(self) -> None:
        body = {"x402Version": 2, "accepts": [{"amount": "0.1", "asset": "SOL", "payTo": "R"}]}
        settler = RecordingSettler()
        result = await make_protocol(Script(httpx.Response(402, json=body)), settler).execute(
            make_executor("a"), REQUEST
        )

        assert result.stage == Stage.PAYMENT_INITIATION
        assert result.error_type == "ProtocolError"
        assert result.response == body
        assert settler.invoices == []

    @pytest.mark.asyncio
    async def test_settlement_failure_keeps_gateway_answer(self) -> None:
        script = Script(httpx.Response(402, json=payment_required(0.2)))
        settler = rejecting_settler(status_code=402)
        result = await make_protocol(script, settler).execute(make_executor("a"), REQUEST)

        assert result.stage == Stage.PAYMENT_SETTLEMENT
        assert result.http_status == 402
        assert result.response == {"error": "insufficient balance"}
        assert result.error == "insufficient balance"
        assert result.invoice.amount == 0.2
        assert result.pricing.base_amount == 0.2
        assert len(script.requests) == 1
        assert len(settler.invoices) == 1

    @pytest.mark.asyncio
    async def test_unexpected_settler_failure_keeps_invoice(self) -> None:
        script = Script(httpx.Response(402, json=payment_required(0.2)))
        settler = RecordingSettler(RuntimeError("wallet locked"))
        result = await make_protocol(script, settler).execute(make_executor("a"), REQUEST)

        assert result.stage == Stage.PAYMENT_SETTLEMENT
        assert result.error == "wallet locked"
        assert result.error_type == "RuntimeError"
        assert result.invoice.reference == "ref-1"
        assert len(script.requests) == 1

    @pytest.mark.asyncio
    async def test_settler_configuration_error_propagates(self) -> None:
        script = Script(httpx.Response(402, json=payment_required(0.2)))
        settler = RecordingSettler(ConfigurationError("x402 private key is not configured"))
        with pytest.raises(ConfigurationError):
            await make_protocol(script, settler).execute(make_executor("a"), REQUEST)

    @pytest.mark.asyncio
    async def test_confirmation_exhausted(self, sleep: SleepRecorder) -> None:
        script = Script(*[httpx.Response(402, json=payment_required(0.1)) for _ in range(4)])
        settler = RecordingSettler()
        result = await make_protocol(script, settler, sleep, max_attempts=3).execute(
            make_executor("a"), REQUEST
        )

        assert result.stage == Stage.PAYMENT_CONFIRMATION
        assert result.error_type == "ConfirmationExhausted"
        assert result.attempts == 3
        assert result.http_status == 402
        assert len(settler.invoices) == 1
        assert sleep.delays == [2.0, 2.0]
        assert result.settlement is not None

    @pytest.mark.asyncio
    async def test_confirmation_stops_on_first_other_status(self) -> None:
        script = Script(
            httpx.Response(402, json=payment_required(0.1)),
            httpx.Response(409, json={"message": "busy"}),
        )
        result = await make_protocol(script).execute(make_executor("a"), REQUEST)

        assert result.stage == Stage.PAYMENT_CONFIRMATION
        assert result.attempts == 1
        assert result.http_status == 409
        assert result.error == "busy"
        assert len(script.requests) == 2

    @pytest.mark.asyncio
    async def test_confirmation_without_response(self) -> None:
        script = Script(
            httpx.Response(402, json=payment_required(0.1)),
            httpx.ReadTimeout("slow"),
        )
        result = await make_protocol(script).execute(make_executor("a"), REQUEST)

        assert result.stage == Stage.PAYMENT_CONFIRMATION
        assert result.error_type == "TransportError"
        assert result.settlement is not None

    @pytest.mark.asyncio
    async def test_latency_recorded(self) -> None:
        result = await make_protocol(Script(httpx.Response(200, json={}))).execute(
            make_executor("a"), REQUEST
        )
        assert result.latency_ms > 0


class TestTransport:
    @pytest.mark.asyncio
    async def test_secure_executor_requests_are_signed(self) -> None:
        script = Script(httpx.Response(200, json={}))
        signer = ProtocolSigner("secret")
        await make_protocol(script, signer=signer).execute(
            make_executor("a", requires_secure=True), REQUEST
        )

        request = script.requests[0]
        assert signer.verify(request.headers[SIGNATURE_HEADER], {"speed": 2})

    @pytest.mark.asyncio
    async def test_secure_executor_without_key_raises(self) -> None:
        script = Script(httpx.Response(200, json={}))
        with pytest.raises(ConfigurationError):
            await make_protocol(script, signer=ProtocolSigner()).execute(
                make_executor("a", requires_secure=True), REQUEST
            )

    @pytest.mark.asyncio
    async def test_get_sends_payload_as_query(self) -> None:
        script = Script(httpx.Response(200, json={}))
        request = CommandRequest(endpoint="/status", verb="get", payload={"verbose": "1"})
        await make_protocol(script).send(make_executor("a"), request)

        sent = script.requests[0]
        assert sent.method == "GET"
        assert sent.url.params["verbose"] == "1"
        assert sent.content == b""


class TestGatewayHandshake:
    """Handshake against a real gateway settler on a mocked facilitator."""

    @staticmethod
    def gateway(body: dict) -> GatewaySettler:
        return GatewaySettler(
            ProtocolSigner("secret"),
            GatewayConfig(url="http://gateway.local"),
            mock_client(lambda request: httpx.Response(200, json=body)),
        )

    @pytest.mark.asyncio
    async def test_retry_carries_invoice_reference_not_gateway_id(self) -> None:
        sent: list[str | None] = []

        def executor(request: httpx.Request) -> httpx.Response:
            sent.append(request.headers.get(REFERENCE_HEADER))
            if request.headers.get(REFERENCE_HEADER) == "ref-1":
                return httpx.Response(200, json={"done": True})
            return httpx.Response(402, json=payment_required(0.1, reference="ref-1"))

        settler = self.gateway({"reference": "gw-payment-77", "signature": "sig"})
        result = await make_protocol(executor, settler).execute(make_executor("a"), REQUEST)

        assert sent == [None, "ref-1"]
        assert result.outcome == Outcome.SUCCESS
        assert result.stage == Stage.PAYMENT_CONFIRMED
        assert result.settlement.details["reference"] == "gw-payment-77"

    @pytest.mark.asyncio
    async def test_structured_gateway_fields_do_not_break_handshake(self) -> None:
        script = Script(
            httpx.Response(402, json=payment_required(0.1)),
            httpx.Response(200, json={"done": True}),
        )
        settler = self.gateway({"signature": "sig", "asset": {"symbol": "SOL"}})
        result = await make_protocol(script, settler).execute(make_executor("a"), REQUEST)

        assert result.stage == Stage.PAYMENT_CONFIRMED
        assert result.settlement.asset == "SOL"
        assert result.settlement.signature == "sig"
