"""
OpenTelemetry distributed tracing for the mesh operator.

Spans are created for kopf handlers through ``traced_handler`` and for
request-path decisions (admission, authorization, routing) through
``get_tracer``. httpx is the only outbound HTTP client, shared by the external
secret store and the ingress proxy; it is instrumented so trace context
propagates upstream.

Usage:
    setup_tracing(enabled=True, endpoint="http://otel-collector:4317")

    @kopf.on.create("meshroutes", ...)
    @traced_handler("create_route", resource_type="meshroute")
    async def on_route_create(spec, name, namespace, **kwargs):
        ...
"""

import asyncio
import contextlib
import functools
import logging
from collections.abc import Callable
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import SpanKind, Status, StatusCode, Tracer
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

_tracer_provider: TracerProvider | None = None
_initialized: bool = False


def setup_tracing(
    enabled: bool = False,
    endpoint: str = "http://localhost:4317",
    service_name: str = "mesh-operator",
    sample_rate: float = 1.0,
    insecure: bool = True,
    use_simple_processor: bool = False,
) -> TracerProvider | None:
    """
    Initialize OpenTelemetry tracing for the operator.

    Args:
        enabled: Enable tracing (if False, returns None and does nothing)
        endpoint: OTLP collector endpoint (gRPC)
        service_name: Service name for traces
        sample_rate: Sampling rate for root spans (0.0-1.0)
        insecure: Use insecure connection (no TLS)
        use_simple_processor: Export spans immediately instead of batching

    Returns:
        TracerProvider if enabled, None otherwise
    """
    global _tracer_provider, _initialized

    if _initialized:
        return _tracer_provider

    if not enabled:
        logger.info("OpenTelemetry tracing is disabled")
        _initialized = True
        return None

    logger.info(
        f"Initializing OpenTelemetry tracing: endpoint={endpoint}, "
        f"service={service_name}, sample_rate={sample_rate}"
    )

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "mesh-operator",
            "deployment.environment": "kubernetes",
        }
    )
    _tracer_provider = TracerProvider(
        resource=resource, sampler=ParentBased(root=TraceIdRatioBased(sample_rate))
    )

    exporter = OTLPSpanExporter(endpoint=endpoint, insecure=insecure)
    if use_simple_processor:
        _tracer_provider.add_span_processor(SimpleSpanProcessor(exporter))
    else:
        _tracer_provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(_tracer_provider)
    _instrument_http_clients()

    _initialized = True
    return _tracer_provider


def _instrument_http_clients() -> None:
    try:
        HTTPXClientInstrumentor().instrument()
    except Exception as e:
        logger.warning(f"Failed to instrument httpx: {e}")


def shutdown_tracing() -> None:
    """Shutdown tracing and flush any pending spans."""
    global _tracer_provider, _initialized

    if _tracer_provider is not None:
        logger.info("Shutting down OpenTelemetry tracing")
        _tracer_provider.shutdown()
        _tracer_provider = None

    with contextlib.suppress(Exception):
        HTTPXClientInstrumentor().uninstrument()

    _initialized = False


def get_tracer(name: str = __name__) -> Tracer:
    """Get a tracer instance (no-op if tracing is disabled)."""
    return trace.get_tracer(name)


def inject_trace_context(headers: dict[str, str]) -> dict[str, str]:
    """Inject the current W3C trace context into outgoing headers."""
    TraceContextTextMapPropagator().inject(headers)
    return headers


def traced_handler(
    operation_name: str,
    resource_type: str = "unknown",
    span_kind: SpanKind = SpanKind.INTERNAL,
) -> Callable:
    """
    Decorator for kopf handlers to automatically create spans.

    The span carries the namespace and name of the handled resource and is
    marked as failed when the handler raises.

    Args:
        operation_name: Name of the operation (e.g., "reconcile_source")
        resource_type: Custom resource kind handled (e.g., "meshsource")
        span_kind: Kind of span
    """

    def attributes_for(func: Callable, kwargs: dict[str, Any]) -> dict[str, str]:
        return {
            "k8s.namespace": kwargs.get("namespace") or "cluster",
            "k8s.resource.name": kwargs.get("name") or "unknown",
            "k8s.resource.type": resource_type,
            "kopf.handler": getattr(func, "__name__", "unknown"),
        }

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            tracer = get_tracer(func.__module__ or __name__)
            with tracer.start_as_current_span(
                operation_name, kind=span_kind, attributes=attributes_for(func, kwargs)
            ) as span:
                try:
                    result = await func(*args, **kwargs)
                    span.set_status(Status(StatusCode.OK))
                    return result
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    raise

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            tracer = get_tracer(func.__module__ or __name__)
            with tracer.start_as_current_span(
                operation_name, kind=span_kind, attributes=attributes_for(func, kwargs)
            ) as span:
                try:
                    result = func(*args, **kwargs)
                    span.set_status(Status(StatusCode.OK))
                    return result
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    raise

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def is_tracing_enabled() -> bool:
    """Check if tracing is currently enabled and initialized."""
    return _initialized and _tracer_provider is not None
