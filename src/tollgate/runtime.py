"""
Engine wiring.

`DispatchRuntime` builds every component from one `DispatchConfig`
snapshot and owns the network clients they share::

    async with DispatchRuntime(load_config()) as runtime:
        await runtime.registry.register("10.0.0.7:8080", name="arm-1")
        report = await runtime.dispatcher.dispatch(
            CommandIntent(name="dance", identifiers=["move_demo"]),
            SelectionParams(count=2),
        )
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from tollgate.config import DispatchConfig, SettlementBackend, load_config
from tollgate.core.dispatcher import CommandDispatcher
from tollgate.core.protocol import PaymentProtocolClient, Sleep
from tollgate.core.registry import HealthRegistry
from tollgate.core.selector import ExecutorSelector
from tollgate.executors.prober import HealthProber
from tollgate.observability.logging import configure_logging, get_logger
from tollgate.observability.metrics import DispatchMetrics, SpendTracker
from tollgate.observability.tracing import TracingManager
from tollgate.payments.base import PaymentSettler
from tollgate.payments.gateway import GatewaySettler
from tollgate.payments.ledger import DirectLedgerSettler, load_keypair
from tollgate.payments.signing import ProtocolSigner
from tollgate.payments.verification import ClientPaymentVerifier
from tollgate.routing.delegate import ExternalScorer, SelectionDelegate

logger = get_logger(__name__)


class DispatchRuntime:
    """
    Fully wired dispatch engine.

    Args:
        config: Configuration snapshot. Loaded from the environment if omitted.
        http_client: HTTP client shared by prober, protocol, gateway and
            delegate. Created (and owned) if omitted.
        ledger_client: Solana RPC client for the direct ledger settler.
        verification_client: Solana RPC client for client payment checks.
        settler: Replaces the configured settlement backend.
        delegate: Replaces the configured webhook delegate.
        sleep: Awaitable used between retries.
    """

    def __init__(
        self,
        config: DispatchConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        ledger_client: Any | None = None,
        verification_client: Any | None = None,
        settler: PaymentSettler | None = None,
        delegate: SelectionDelegate | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config or load_config()
        configure_logging(self.config.log)

        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None

        settlement = self.config.settlement
        self.signer = ProtocolSigner(settlement.private_key, settlement.wallet_id)
        self.tracer = TracingManager(self.config.tracing)
        self.metrics = DispatchMetrics(SpendTracker())

        self.prober = HealthProber(self.config.probe, self._http, self.signer)
        self.registry = HealthRegistry(self.prober)

        if delegate is None and self.config.selection.webhook_url:
            delegate = ExternalScorer(
                self.config.selection.webhook_url,
                self.config.selection.webhook_timeout_s,
                self._http,
            )
        self.selector = ExecutorSelector(delegate)

        self.settler = settler or self._build_settler(ledger_client)
        self.protocol = PaymentProtocolClient(
            self.settler,
            signer=self.signer,
            client=self._http,
            command_config=self.config.command,
            confirmation_config=self.config.confirmation,
            markup_percent=self.config.pricing.markup_percent,
            tracer=self.tracer,
            sleep=sleep,
        )

        verification = self.config.verification
        if verification.rpc_url is None and settlement.ledger.rpc_url:
            verification = verification.model_copy(update={"rpc_url": settlement.ledger.rpc_url})
        self.verifier = ClientPaymentVerifier(verification, verification_client, sleep)

        self.dispatcher = CommandDispatcher(
            self.registry,
            self.selector,
            self.protocol,
            config=self.config,
            verifier=self.verifier,
            metrics=self.metrics,
            tracer=self.tracer,
        )
        logger.info(
            "Dispatch runtime ready",
            backend=settlement.backend.value,
            delegate=delegate is not None,
            verification=self.verifier.is_ready,
        )

    def _build_settler(self, ledger_client: Any | None) -> PaymentSettler:
        settlement = self.config.settlement
        if settlement.backend == SettlementBackend.DIRECT_LEDGER:
            keypair = load_keypair(settlement.ledger.secret_key or settlement.private_key)
            return DirectLedgerSettler(keypair, settlement.ledger, ledger_client)
        return GatewaySettler(self.signer, settlement.gateway, self._http)

    async def aclose(self) -> None:
        await self.settler.aclose()
        await self.verifier.aclose()
        if self._owns_http:
            await self._http.aclose()
        self.tracer.shutdown()

    async def __aenter__(self) -> DispatchRuntime:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
