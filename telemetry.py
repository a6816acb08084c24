#!/usr/bin/env python3
"""
OpenTelemetry tracing for the sync pipeline.

`init_telemetry()` installs a tracer provider, instruments aiohttp, logging
and sqlite3, and wires exporters:

  - Azure Monitor, when APPLICATIONINSIGHTS_CONNECTION_STRING (or
    AZURE_MONITOR_CONNECTION_STRING) is set and the `azure` extra is installed
  - stdout, when OTEL_CONSOLE_EXPORT=true

OTEL_SERVICE_NAME and OTEL_ENVIRONMENT feed the resource attributes, and
DISABLE_TELEMETRY=true turns the whole thing into a no-op. `trace_span`
works whether or not telemetry was initialized; without a provider the spans
are simply non-recording.
"""

from __future__ import annotations

import os
import atexit
import asyncio
import functools
import threading
from typing import Optional, Callable

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

from config import get_logger

try:
    # Optional extra: pip install feed-sync[azure]
    from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter  # type: ignore
except ImportError:
    AzureMonitorTraceExporter = None  # type: ignore

logger = get_logger("telemetry")

_lock = threading.Lock()
_provider: Optional[TracerProvider] = None


def telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def _connection_string() -> Optional[str]:
    return (os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING")
            or os.environ.get("AZURE_MONITOR_CONNECTION_STRING"))


def _resource(service_name: Optional[str]) -> Resource:
    attributes = {"service.name": service_name or os.environ.get("OTEL_SERVICE_NAME", "feed-sync")}
    environment = os.environ.get("OTEL_ENVIRONMENT")
    if environment:
        attributes["deployment.environment"] = environment
    return Resource.create(attributes)


def _attach_exporters(provider: TracerProvider) -> list:
    attached = []
    connection = _connection_string()
    if connection and AzureMonitorTraceExporter is not None:
        try:
            exporter = AzureMonitorTraceExporter.from_connection_string(connection)
        except ValueError as e:
            logger.warning(f"Azure Monitor exporter not enabled: {e}")
        else:
            provider.add_span_processor(BatchSpanProcessor(exporter))
            attached.append("azure")
    elif connection:
        logger.warning("Connection string set but azure-monitor-opentelemetry-exporter is not installed")

    if os.environ.get("OTEL_CONSOLE_EXPORT", "false").lower() == "true":
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        attached.append("console")
    return attached


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Set up tracing once per process; later calls do nothing."""
    global _provider
    if telemetry_disabled():
        return
    with _lock:
        if _provider is not None:
            return

        # Keep a provider that auto-instrumentation may already have installed
        current = trace.get_tracer_provider()
        provider = current if isinstance(current, TracerProvider) else TracerProvider(resource=_resource(service_name))
        exporters = _attach_exporters(provider)
        if provider is not current:
            trace.set_tracer_provider(provider)

        AioHttpClientInstrumentor().instrument()
        # Adds otelTraceID/otelSpanID to log records; the log format is unchanged
        LoggingInstrumentor().instrument()
        SQLite3Instrumentor().instrument()

        _provider = provider
        atexit.register(shutdown_telemetry)
        logger.info(f"Tracing enabled (exporters: {', '.join(exporters) or 'none'})")


def shutdown_telemetry() -> None:
    """Flush and stop the provider installed by init_telemetry()."""
    if _provider is not None:
        _provider.shutdown()


def get_tracer(name: str = "feed-sync"):
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable] = None,
):
    """Run the decorated function (sync or async) inside a span.

    `span_name` defaults to "<module>.<function>" and `tracer_name` to its
    first dotted component. `static_attrs` are set on every span;
    `attr_from_args` receives the call's arguments and returns extra
    attributes (None values are skipped). Exceptions are recorded on the
    span, marked as errors and re-raised.
    """

    def decorate(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or "feed-sync")

        def annotate(span, args, kwargs):
            attributes = dict(static_attrs or {})
            if attr_from_args is not None:
                attributes.update(attr_from_args(*args, **kwargs) or {})
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)

        def fail(span, exc):
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR))

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    annotate(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        fail(span, e)
                        raise

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with tracer.start_as_current_span(name) as span:
                annotate(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    fail(span, e)
                    raise

        return wrapper

    return decorate
