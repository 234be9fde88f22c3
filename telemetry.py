#!/usr/bin/env python3
"""
OpenTelemetry tracing for the podcast feed pipeline.

Spans cover the fetch, parse and extraction stages; outbound aiohttp requests
are traced by the aiohttp client instrumentation, and log records get trace
ids injected so a failed request can be followed from log line to span.

Environment variables:
  - OTEL_SERVICE_NAME (default: podcast-feed-api)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORTER=true to print finished spans to stdout
  - DISABLE_TELEMETRY=true to fully disable

Without init_telemetry() the OpenTelemetry API hands out no-op tracers, so the
decorators below are always safe to apply.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional
import asyncio
import functools

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor

DEFAULT_SERVICE = "podcast-feed-api"

_init_lock = threading.Lock()
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def _flag(name: str) -> bool:
    return os.environ.get(name, "false").strip().lower() == "true"


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Install a tracer provider and instrument aiohttp client and logging.

    Idempotent; a no-op when DISABLE_TELEMETRY=true. A provider installed by
    external auto-instrumentation is reused rather than replaced.
    """
    global _provider
    if _flag("DISABLE_TELEMETRY") or _provider is not None:
        return
    with _init_lock:
        if _provider is not None:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE)
        attrs = {"service.name": svc}
        env = os.environ.get("OTEL_ENVIRONMENT")
        if env:
            attrs["deployment.environment"] = env

        existing = trace.get_tracer_provider()
        provider = existing if isinstance(existing, TracerProvider) else TracerProvider(resource=Resource.create(attrs))

        if _flag("OTEL_CONSOLE_EXPORTER"):
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        _logger.info(
            "Telemetry initialized (service=%s, console_exporter=%s)", svc, _flag("OTEL_CONSOLE_EXPORTER")
        )

        if provider is not existing:
            trace.set_tracer_provider(provider)
        _provider = provider

        for instrumentor, kwargs in (
            (AioHttpClientInstrumentor(), {}),
            # Adds otelTraceID / otelSpanID to records without touching the log format
            (LoggingInstrumentor(), {"set_logging_format": False}),
        ):
            try:
                instrumentor.instrument(**kwargs)
            except Exception as e:
                _logger.warning("%s failed: %s", type(instrumentor).__name__, e)

        atexit.register(provider.shutdown)


def get_tracer(name: str = DEFAULT_SERVICE):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def annotate_span(**attributes: Any) -> None:
    """Set ``feed.*`` attributes on the current span; None values are skipped."""
    span = trace.get_current_span()
    if not span.is_recording():
        return
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(f"feed.{key}", value)


@contextmanager
def _traced(tracer, name: str, attributes: Dict[str, Any]) -> Iterator[Span]:
    with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        for key, value in attributes.items():
            span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, type(e).__name__))
            classification = getattr(e, "classification", None)
            if classification:
                span.set_attribute("feed.error.classification", classification)
            raise


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., Dict[str, Any]]] = None,
):
    """Decorator running a sync or async function inside a span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to the first dotted part of the span name)
        static_attrs: Attributes set on every span
        attr_from_args: Callable receiving the call's (*args, **kwargs) and
                        returning per-call attributes

    Exceptions are recorded on the span, tagged with their FeedError
    classification when they have one, and re-raised unchanged.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or DEFAULT_SERVICE)

        def _attributes(args, kwargs) -> Dict[str, Any]:
            attrs = dict(static_attrs or {})
            if attr_from_args is not None:
                try:
                    attrs.update(attr_from_args(*args, **kwargs) or {})
                except Exception as e:
                    # Attribute extraction must never fail the traced call
                    _logger.debug("span attribute extraction failed for %s: %s", name, e)
            return attrs

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with _traced(tracer, name, _attributes(args, kwargs)):
                    return await func(*args, **kwargs)

            return _async_wrapper

        @functools.wraps(func)
        def _wrapper(*args, **kwargs):
            with _traced(tracer, name, _attributes(args, kwargs)):
                return func(*args, **kwargs)

        return _wrapper

    return _decorator
