"""
Reachability and capability probing of executors.

A probe calls the executor's public health path and normalizes the body
into an `ExecutorStatus`. Executors flagged ``requires_secure`` get a
second chance through the secured transport (signed headers on the
secure health path) when the public call fails.

Probing never raises: any network failure yields an ``unreachable``
status carrying the failure message.
"""

from __future__ import annotations

from typing import Any

import httpx

from tollgate.config import ProbeConfig
from tollgate.executors.base import (
    Executor,
    ExecutorState,
    ExecutorStatus,
    Location,
    parse_method,
)
from tollgate.observability.logging import get_logger
from tollgate.payments.signing import ProtocolSigner

logger = get_logger(__name__)


def _parse_state(value: Any) -> ExecutorState:
    try:
        return ExecutorState(str(value).strip().lower())
    except ValueError:
        return ExecutorState.UNKNOWN


def _parse_location(value: Any) -> Location | None:
    if not isinstance(value, dict):
        return None
    lat, lng = value.get("lat"), value.get("lng")
    if isinstance(lat, bool) or isinstance(lng, bool):
        return None
    if not isinstance(lat, int | float) or not isinstance(lng, int | float):
        return None
    return Location(lat=lat, lng=lng)


def normalize_health_payload(
    raw: Any,
    fallback_message: str = "Responded",
    secure: bool = False,
) -> ExecutorStatus:
    """
    Turn a health response body into an ExecutorStatus.

    The body may be wrapped in ``{"data": {...}}``; fields are read from
    the inner object first. Health-check entries are dropped from the
    advertised methods.
    """
    if not isinstance(raw, dict):
        return ExecutorStatus(
            state=ExecutorState.UNKNOWN,
            message=fallback_message,
            secure=secure,
        )

    payload = raw["data"] if isinstance(raw.get("data"), dict) else raw

    def pick(key: str) -> Any:
        value = payload.get(key)
        return value if value is not None else raw.get(key)

    raw_methods = pick("availableMethods")
    methods = []
    for entry in raw_methods if isinstance(raw_methods, list) else []:
        method = parse_method(entry)
        if method is not None and not method.is_health_check():
            methods.append(method)

    return ExecutorStatus(
        state=_parse_state(pick("status") or ExecutorState.UNKNOWN.value),
        message=str(pick("message") or fallback_message),
        available_methods=methods,
        secure=secure,
        location=_parse_location(pick("location")),
    )


def _describe(exc: Exception) -> str:
    return str(exc) or type(exc).__name__


class HealthProber:
    """
    Probes executors over HTTP.

    Args:
        config: Health paths and timeout.
        client: Shared HTTP client. One is created (and owned) if omitted.
        signer: Signer for the secured transport; without a configured
            key the secured retry is skipped.
    """

    def __init__(
        self,
        config: ProbeConfig | None = None,
        client: httpx.AsyncClient | None = None,
        signer: ProtocolSigner | None = None,
    ) -> None:
        self._config = config or ProbeConfig()
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self._signer = signer or ProtocolSigner()

    @property
    def config(self) -> ProbeConfig:
        return self._config

    async def probe(self, executor: Executor) -> ExecutorStatus:
        """Probe one executor. Never raises."""
        log = logger.bind(executor_id=executor.id)
        url = executor.url_for(self._config.health_path)
        last_error: str = "Health check failed"

        try:
            response = await self._client.get(url, timeout=self._config.timeout_s)
            response.raise_for_status()
            log.debug("Health check passed", url=url)
            return normalize_health_payload(_json_or_none(response), "Responded", secure=False)
        except httpx.HTTPError as exc:
            last_error = _describe(exc)
            log.debug("Public health check failed", url=url, error=last_error)

        if executor.requires_secure and self._signer.is_configured:
            secure_url = executor.url_for(self._config.secure_health_path)
            try:
                response = await self._client.get(
                    secure_url,
                    headers=self._signer.headers({}),
                    timeout=self._config.timeout_s,
                )
                response.raise_for_status()
                log.debug("Secure health check passed", url=secure_url)
                return normalize_health_payload(
                    _json_or_none(response), "Responded via x402", secure=True
                )
            except httpx.HTTPError as exc:
                last_error = _describe(exc)

        log.warning("Executor health check failed", message=last_error)
        return ExecutorStatus(
            state=ExecutorState.UNREACHABLE,
            message=last_error,
            secure=executor.requires_secure,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
