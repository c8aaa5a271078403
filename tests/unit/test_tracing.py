"""
Unit tests for OpenTelemetry tracing helpers.

Span capture uses a module-scoped in-memory exporter; exporter and client
instrumentation are patched out where tracing is set up.
"""

from unittest.mock import MagicMock, patch

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode

import mesh_operator.observability.tracing as tracing_module
from mesh_operator.observability.tracing import (
    get_tracer,
    inject_trace_context,
    is_tracing_enabled,
    setup_tracing,
    shutdown_tracing,
    traced_handler,
)


@pytest.fixture(scope="module")
def module_in_memory_exporter():
    return InMemorySpanExporter()


@pytest.fixture(scope="module")
def module_tracer_provider(module_in_memory_exporter):
    """Module-scoped tracer provider - set once for all tests in this module."""
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(module_in_memory_exporter))
    trace.set_tracer_provider(provider)
    return provider


@pytest.fixture(autouse=True)
def reset_tracing_state():
    tracing_module._initialized = False
    tracing_module._tracer_provider = None
    yield
    tracing_module._initialized = False
    tracing_module._tracer_provider = None


@pytest.fixture
def clear_spans(module_in_memory_exporter):
    module_in_memory_exporter.clear()
    yield module_in_memory_exporter
    module_in_memory_exporter.clear()


@pytest.fixture
def patched_otel():
    with (
        patch("mesh_operator.observability.tracing.OTLPSpanExporter") as exporter,
        patch("mesh_operator.observability.tracing.HTTPXClientInstrumentor") as httpx_instr,
        patch("mesh_operator.observability.tracing.trace.set_tracer_provider"),
    ):
        exporter.return_value = MagicMock()
        yield {"exporter": exporter, "httpx": httpx_instr}


class TestSetupTracing:
    """Test setup_tracing function."""

    def test_setup_tracing_disabled(self):
        assert setup_tracing(enabled=False) is None
        assert not is_tracing_enabled()

    def test_setup_tracing_enabled(self, patched_otel):
        result = setup_tracing(enabled=True, endpoint="http://otel:4317", sample_rate=0.5)

        assert isinstance(result, TracerProvider)
        assert is_tracing_enabled()
        patched_otel["exporter"].assert_called_once_with(
            endpoint="http://otel:4317", insecure=True
        )
        patched_otel["httpx"].return_value.instrument.assert_called_once()

    def test_setup_tracing_idempotent(self, patched_otel):
        assert setup_tracing(enabled=True) is setup_tracing(enabled=True)
        patched_otel["exporter"].assert_called_once()

    def test_instrumentation_failure_is_tolerated(self, patched_otel):
        patched_otel["httpx"].return_value.instrument.side_effect = Exception("Mock error")

        assert setup_tracing(enabled=True) is not None

    def test_shutdown_resets_state(self, patched_otel):
        setup_tracing(enabled=True)

        shutdown_tracing()

        assert not is_tracing_enabled()
        patched_otel["httpx"].return_value.uninstrument.assert_called_once()


class TestTracedHandler:
    """Test traced_handler decorator."""

    @pytest.mark.asyncio
    async def test_async_handler_span(self, module_tracer_provider, clear_spans):
        @traced_handler("apply_route", resource_type="meshroute")
        async def handler(namespace: str, name: str, **kwargs) -> str:
            return f"{namespace}/{name}"

        assert await handler(namespace="shop", name="storefront") == "shop/storefront"

        (span,) = clear_spans.get_finished_spans()
        assert span.name == "apply_route"
        assert span.attributes["k8s.namespace"] == "shop"
        assert span.attributes["k8s.resource.name"] == "storefront"
        assert span.attributes["k8s.resource.type"] == "meshroute"
        assert span.attributes["kopf.handler"] == "handler"
        assert span.status.status_code == StatusCode.OK

    @pytest.mark.asyncio
    async def test_cluster_scoped_resource(self, module_tracer_provider, clear_spans):
        @traced_handler("apply_template", resource_type="meshconstrainttemplate")
        def handler(name: str, **kwargs) -> None:
            return None

        handler(name="no-privileged")

        (span,) = clear_spans.get_finished_spans()
        assert span.attributes["k8s.namespace"] == "cluster"

    @pytest.mark.asyncio
    async def test_exception_marks_span_failed(self, module_tracer_provider, clear_spans):
        @traced_handler("register_source", span_kind=SpanKind.SERVER)
        async def failing(**kwargs):
            raise ValueError("Test error")

        with pytest.raises(ValueError, match="Test error"):
            await failing(namespace="shop", name="app")

        (span,) = clear_spans.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert span.kind == SpanKind.SERVER
        assert [e.name for e in span.events] == ["exception"]


class TestTraceContextPropagation:
    def test_inject_returns_same_headers(self):
        headers: dict[str, str] = {}
        assert inject_trace_context(headers) is headers

    def test_inject_with_active_span(self, module_tracer_provider):
        with get_tracer("test").start_as_current_span("gateway.proxy"):
            headers = inject_trace_context({})

        assert headers["traceparent"].startswith("00-")
