"""
External selection delegate.

An operator may plug an outside scorer (an n8n workflow, an LLM agent)
into selection. The delegate is only ever advisory: the selector calls it
first and falls back to its built-in strategy on any failure, so a
delegate raises `DelegateError` instead of returning partial answers.

Wire contract::

    POST <webhook> {"executors": [...], "intent": str,
                    "parameters": {...}, "context": {...}}
    -> {"selectedExecutorId": str, "reason": str?, "confidence": float?}
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field

from tollgate.errors import DelegateError
from tollgate.executors.base import Executor, parse_amount
from tollgate.observability.logging import get_logger
from tollgate.routing.scoring import SelectionContext

logger = get_logger(__name__)

DEFAULT_CONFIDENCE = 0.8


class DelegateVerdict(BaseModel):
    """The delegate's choice."""

    executor_id: str
    reason: str = "Selected by external scorer"
    confidence: float = Field(default=DEFAULT_CONFIDENCE, ge=0.0, le=1.0)


@runtime_checkable
class SelectionDelegate(Protocol):
    """Anything that can pick one executor out of a candidate set."""

    async def select(
        self,
        executors: Sequence[Executor],
        intent: str,
        identifiers: Sequence[str],
        context: SelectionContext,
    ) -> DelegateVerdict: ...


def describe_executor(executor: Executor, identifiers: Sequence[str]) -> dict[str, Any]:
    """JSON view of a candidate as sent to the delegate."""
    method = executor.find_method(identifiers)
    pricing = method.pricing if method is not None else None
    return {
        "id": executor.id,
        "name": executor.name,
        "status": executor.status.state.value,
        "location": executor.location.model_dump() if executor.location else None,
        "availableMethods": [
            m.model_dump(mode="json", exclude_none=True)
            for m in executor.status.available_methods
        ],
        "pricing": pricing.model_dump(mode="json") if pricing is not None else None,
        "lastProbedAt": executor.last_probed_at.isoformat() if executor.last_probed_at else None,
    }


class ExternalScorer:
    """
    HTTP webhook delegate.

    Args:
        url: Webhook endpoint.
        timeout_s: Per-call timeout.
        client: Shared HTTP client. One is created (and owned) if omitted.
    """

    def __init__(
        self,
        url: str,
        timeout_s: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout_s = timeout_s
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    @property
    def url(self) -> str:
        return self._url

    async def select(
        self,
        executors: Sequence[Executor],
        intent: str,
        identifiers: Sequence[str],
        context: SelectionContext,
    ) -> DelegateVerdict:
        payload = {
            "executors": [describe_executor(e, identifiers) for e in executors],
            "intent": intent,
            "parameters": context.parameters,
            "context": {
                "location": context.location.model_dump() if context.location else None,
                "priority": context.priority,
            },
        }

        try:
            response = await self._client.post(self._url, json=payload, timeout=self._timeout_s)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise DelegateError(f"External scorer call failed: {exc}") from exc

        if not isinstance(body, dict) or not body.get("selectedExecutorId"):
            raise DelegateError("External scorer did not return a valid selection")

        selected_id = str(body["selectedExecutorId"])
        if selected_id not in {e.id for e in executors}:
            raise DelegateError(
                f"External scorer selected unknown executor '{selected_id}'",
                {"executor_id": selected_id},
            )

        confidence = DEFAULT_CONFIDENCE
        if body.get("confidence") is not None:
            parsed = parse_amount(body["confidence"])
            if parsed is None:
                raise DelegateError("External scorer returned a non-numeric confidence")
            confidence = min(max(parsed, 0.0), 1.0)

        verdict = DelegateVerdict(
            executor_id=selected_id,
            reason=str(body.get("reason") or "Selected by external scorer"),
            confidence=confidence,
        )
        logger.info(
            "External scorer selected executor",
            executor_id=verdict.executor_id,
            confidence=verdict.confidence,
        )
        return verdict

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
