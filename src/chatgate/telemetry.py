"""OpenTelemetry tracing for the conversation engine.

Spans are no-ops until :meth:`EngineTracer.init` installs a provider with a
stdout or OTLP exporter.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Generator
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.trace import NoOpTracer, Span, Tracer

logger = logging.getLogger(__name__)

_EXPORTERS = frozenset({"none", "stdout", "otlp"})


@dataclass
class TelemetryConfig:
    service_name: str = "chatgate"
    enabled: bool = True
    exporter: str = "none"  # "stdout" | "otlp" | "none"
    otlp_endpoint: str = "http://localhost:4317"


class EngineTracer:
    """Owns the tracer provider and hands out spans."""

    def __init__(self, config: TelemetryConfig | None = None) -> None:
        self._config = config or TelemetryConfig()
        if self._config.exporter not in _EXPORTERS:
            msg = f"Unknown exporter '{self._config.exporter}'"
            raise ValueError(msg)
        self._provider: TracerProvider | None = None
        self._tracer: Tracer = NoOpTracer()

    @property
    def active(self) -> bool:
        return self._provider is not None

    def init(self) -> None:
        cfg = self._config
        if not cfg.enabled or cfg.exporter == "none" or self._provider is not None:
            return

        if cfg.exporter == "stdout":
            exporter: Any = ConsoleSpanExporter()
        else:
            try:
                from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                    OTLPSpanExporter,
                )
            except ImportError:  # pragma: no cover
                logger.warning("OTLP exporter not installed; tracing stays disabled")
                return
            exporter = OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True)

        provider = TracerProvider(resource=Resource.create({"service.name": cfg.service_name}))
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        self._provider = provider
        self._tracer = provider.get_tracer(cfg.service_name)

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[Span, None, None]:
        with self._tracer.start_as_current_span(name) as s:
            for k, v in (attributes or {}).items():
                s.set_attribute(k, v)
            yield s

    def record_event(self, name: str, attributes: dict[str, Any] | None = None) -> None:
        """Add an event to the current span, if one is recording."""
        current = trace.get_current_span()
        if current.is_recording():
            current.add_event(name, dict(attributes or {}))

    def shutdown(self) -> None:
        """Flush and drop the provider. Idempotent."""
        if self._provider is not None:
            self._provider.shutdown()
            self._provider = None
            self._tracer = NoOpTracer()


_DEFAULT_TRACER: EngineTracer | None = None


def get_tracer() -> EngineTracer:
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is None:
        _DEFAULT_TRACER = EngineTracer()
    return _DEFAULT_TRACER


def set_tracer(tracer: EngineTracer) -> None:
    """Replace the module-level tracer used by the ``trace_*`` helpers."""
    global _DEFAULT_TRACER  # noqa: PLW0603
    _DEFAULT_TRACER = tracer


# ---------------------------------------------------------------------------
# Convenience context managers
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def trace_handle_message(user_id: str, channel_id: str, category: str) -> Generator[Span, None, None]:
    attrs = {"chat.user_id": user_id, "chat.channel_id": channel_id, "chat.category": category}
    with get_tracer().span("orchestrator/handle_message", attrs) as s:
        yield s


@contextlib.contextmanager
def trace_backend_call(mode: str, model: str) -> Generator[Span, None, None]:
    with get_tracer().span("backend/call", {"backend.mode": mode, "backend.model": model}) as s:
        yield s


@contextlib.contextmanager
def trace_compliance_check(category: str) -> Generator[Span, None, None]:
    with get_tracer().span("compliance/filter", {"compliance.category": category}) as s:
        yield s


@contextlib.contextmanager
def trace_settlement(billing_mode: str) -> Generator[Span, None, None]:
    with get_tracer().span("usage/settle", {"billing.mode": billing_mode}) as s:
        yield s
