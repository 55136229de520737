"""Shared fixtures and builders for the tollgate test suite."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from tollgate.errors import SettlementError
from tollgate.executors.base import (
    Executor,
    ExecutorState,
    ExecutorStatus,
    Location,
    parse_method,
)
from tollgate.payments.base import Invoice, PaymentSettler, Settlement


def make_executor(
    executor_id: str,
    price: float | None = 0.1,
    *,
    method: str = "/commands/move_demo",
    state: ExecutorState = ExecutorState.READY,
    location: Location | None = None,
    receiver: str = "ReceiverWallet1111111111111111111111111111",
    requires_secure: bool = False,
) -> Executor:
    """Executor advertising one detailed method with the given price."""
    raw: dict[str, Any] = {"path": method, "method": "POST", "description": "Run the demo move"}
    if price is not None:
        raw["pricing"] = {"amount": price, "asset": "SOL", "receiver": receiver}
    return Executor(
        id=executor_id,
        base_url=f"http://{executor_id}.local:8080",
        name=executor_id,
        requires_secure=requires_secure,
        location=location,
        status=ExecutorStatus(
            state=state,
            message="ok",
            available_methods=[parse_method(raw)],
        ),
    )


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by `handler`."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> None:
    """Keep TOLLGATE_* variables and stray .env files out of config loading."""
    for key in list(os.environ):
        if key.startswith("TOLLGATE_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


def payment_required(
    amount: float, reference: str = "ref-1", receiver: str = "Receiver"
) -> dict[str, Any]:
    """Current-shape 402 body with one offer."""
    return {
        "x402Version": 2,
        "error": "Payment required",
        "accepts": [{
            "scheme": "exact",
            "network": "solana",
            "amount": str(amount),
            "asset": "SOL",
            "payTo": receiver,
            "maxTimeoutSeconds": 60,
            "extra": {"reference": reference},
        }],
    }


class RecordingSettler(PaymentSettler):
    """Settler that pays every invoice instantly, or fails with `error`."""

    provider = "gateway"

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.invoices: list[Invoice] = []

    async def settle(self, invoice: Invoice) -> Settlement:
        self.invoices.append(invoice)
        if self.error is not None:
            raise self.error
        return Settlement(
            provider=self.provider,
            reference=invoice.reference,
            signature=f"sig-{invoice.reference}",
            receiver=invoice.receiver,
            amount=invoice.amount,
            asset=invoice.asset,
        )


def rejecting_settler(status_code: int = 402) -> RecordingSettler:
    return RecordingSettler(
        SettlementError(
            "insufficient balance",
            status_code=status_code,
            body={"error": "insufficient balance"},
        )
    )


@pytest.fixture(autouse=True)
def _reset_logging() -> Any:
    """Drop handlers installed by configure_logging during a test."""
    yield
    root = logging.getLogger("tollgate")
    root.handlers.clear()
    root.setLevel(logging.NOTSET)
