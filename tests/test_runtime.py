"""Tests for engine wiring."""

from __future__ import annotations

import httpx
import pytest
from solders.keypair import Keypair

from conftest import RecordingSettler, mock_client, payment_required
from tollgate import CommandIntent, DispatchRuntime, SelectionParams
from tollgate.config import load_config
from tollgate.core.protocol import REFERENCE_HEADER, Stage
from tollgate.errors import ConfigurationError
from tollgate.executors.base import ExecutorState
from tollgate.payments.gateway import GatewaySettler
from tollgate.payments.ledger import DirectLedgerSettler
from tollgate.routing.delegate import ExternalScorer


def robot_arm(request: httpx.Request) -> httpx.Response:
    """A single paid executor advertising one priced method."""
    if request.url.path == "/health":
        return httpx.Response(200, json={
            "data": {
                "status": "ready",
                "message": "Arm online",
                "availableMethods": [
                    "health",
                    {
                        "path": "/commands/move_demo",
                        "method": "POST",
                        "description": "Demo move",
                        "pricing": {"amount": "0.1", "asset": "SOL", "payTo": "Receiver"},
                    },
                ],
            }
        })
    if REFERENCE_HEADER in request.headers:
        return httpx.Response(200, json={"status": "moving"})
    return httpx.Response(402, json=payment_required(0.1, reference="arm-ref"))


class NullLedgerClient:
    async def close(self) -> None:
        return None


class TestWiring:
    @pytest.mark.asyncio
    async def test_gateway_backend_by_default(self) -> None:
        async with DispatchRuntime(load_config(), http_client=mock_client(robot_arm)) as runtime:
            assert isinstance(runtime.settler, GatewaySettler)
            assert runtime.selector.delegate is None
            assert not runtime.verifier.is_ready

    @pytest.mark.asyncio
    async def test_direct_ledger_backend(self) -> None:
        config = load_config(
            settlement={
                "backend": "direct_ledger",
                "ledger": {"secret_key": str(Keypair()), "rpc_url": "http://rpc.local"},
            }
        )
        async with DispatchRuntime(
            config,
            http_client=mock_client(robot_arm),
            ledger_client=NullLedgerClient(),
            verification_client=NullLedgerClient(),
        ) as runtime:
            assert isinstance(runtime.settler, DirectLedgerSettler)
            assert runtime.verifier.is_ready

    def test_direct_ledger_requires_key(self) -> None:
        config = load_config(
            settlement={"backend": "direct_ledger", "ledger": {"rpc_url": "http://rpc.local"}}
        )
        with pytest.raises(ConfigurationError):
            DispatchRuntime(config, http_client=mock_client(robot_arm))

    @pytest.mark.asyncio
    async def test_webhook_delegate_configured(self) -> None:
        config = load_config(selection={"webhook_url": "http://scorer.local/hook"})
        async with DispatchRuntime(config, http_client=mock_client(robot_arm)) as runtime:
            assert isinstance(runtime.selector.delegate, ExternalScorer)

    @pytest.mark.asyncio
    async def test_verifier_falls_back_to_ledger_endpoint(self) -> None:
        config = load_config(settlement={"ledger": {"rpc_url": "http://rpc.local"}})
        async with DispatchRuntime(
            config, http_client=mock_client(robot_arm), settler=RecordingSettler()
        ) as runtime:
            assert runtime.verifier.is_ready


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_register_and_dispatch(self) -> None:
        settler = RecordingSettler()
        async with DispatchRuntime(
            load_config(), http_client=mock_client(robot_arm), settler=settler
        ) as runtime:
            executor = await runtime.registry.register("arm.local:8080", name="arm")
            assert executor.status.state == ExecutorState.READY
            assert len(executor.status.available_methods) == 1

            report = await runtime.dispatcher.dispatch(
                CommandIntent(name="move", identifiers=["move_demo"]),
                SelectionParams(count=1),
            )

        result = report.results[0]
        assert result.stage == Stage.PAYMENT_CONFIRMED
        assert result.response == {"status": "moving"}
        assert report.summary.total_cost == 0.1
        assert report.summary.suggested_price == 0.11
        assert settler.invoices[0].reference == "arm-ref"
        assert runtime.metrics.spend_tracker.total_spent == 0.1
