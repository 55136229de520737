"""
OpenTelemetry spans for the dispatch pipeline.

Two span kinds are emitted:

    - ``tollgate.dispatch``: one per dispatch (intent, strategy, count)
    - ``tollgate.handshake``: one per executor (stage reached, attempts)

Attributes carry the ``tollgate.`` prefix. Tracing is off unless enabled in
configuration, in which case a private tracer provider is created so the
process-wide provider is never replaced.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Literal

from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel, ConfigDict

ATTRIBUTE_PREFIX = "tollgate."


class SpanAttributes(BaseModel):
    """Well-known attributes of dispatch and handshake spans. Unset fields are omitted."""

    operation: str | None = None
    executor_id: str | None = None
    intent: str | None = None
    strategy: str | None = None
    stage: str | None = None
    amount: float | None = None
    asset: str | None = None
    provider: str | None = None

    def to_otel(self, **extra: Any) -> dict[str, Any]:
        values = {**self.model_dump(exclude_none=True), **extra}
        return {
            f"{ATTRIBUTE_PREFIX}{key}": value
            for key, value in values.items()
            if value is not None
        }


class TracingConfig(BaseModel):
    """Configuration for tracing."""

    model_config = ConfigDict(frozen=True)

    service_name: str = "tollgate"
    service_version: str = "0.1.0"
    enabled: bool = False
    export_format: Literal["console", "none"] = "console"


class TracingManager:
    """
    Hands out async spans around dispatches and handshakes.

    When disabled every span is a `_NoOpSpan`, so call sites never branch
    on whether tracing is configured.
    """

    def __init__(self, config: TracingConfig | None = None) -> None:
        self._config = config or TracingConfig()
        self._provider: TracerProvider | None = None
        self._tracer = None
        if self._config.enabled:
            self._provider = _build_provider(self._config)
            self._tracer = self._provider.get_tracer("tollgate", self._config.service_version)

    @property
    def enabled(self) -> bool:
        return self._tracer is not None

    @asynccontextmanager
    async def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
        **extra: Any,
    ) -> AsyncIterator[Any]:
        """
        Open a span for the duration of the block.

        An exception escaping the block marks the span failed and is
        re-raised.
        """
        if self._tracer is None:
            yield _NoOpSpan()
            return

        attrs = (attributes or SpanAttributes()).to_otel(**extra)
        with self._tracer.start_as_current_span(
            name,
            attributes=attrs,
            record_exception=False,
            set_status_on_exception=False,
        ) as otel_span:
            try:
                yield otel_span
            except Exception as exc:
                annotate(otel_span, success=False, error=str(exc) or type(exc).__name__)
                otel_span.record_exception(exc)
                otel_span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise

    def shutdown(self) -> None:
        """Flush pending spans."""
        if self._provider is not None:
            self._provider.shutdown()
            self._provider = None
            self._tracer = None


def annotate(span: Any, **values: Any) -> None:
    """Set prefixed attributes on a span, skipping ``None`` values."""
    for key, value in values.items():
        if value is not None:
            span.set_attribute(f"{ATTRIBUTE_PREFIX}{key}", value)


def _build_provider(config: TracingConfig) -> TracerProvider:
    provider = TracerProvider(
        resource=Resource.create({
            "service.name": config.service_name,
            "service.version": config.service_version,
        })
    )
    if config.export_format == "console":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    return provider


class _NoOpSpan:
    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def record_exception(self, exception: BaseException) -> None:
        pass

    def set_status(self, status: Any) -> None:
        pass

    def is_recording(self) -> bool:
        return False
