"""
Prometheus metrics for the mesh operator.

Every component records its decisions here: reconciliation passes and unit
actions, admission and authorization verdicts, secret syncs and route
decisions. Metrics are exposed by the MetricsServer together with the health
and readiness endpoints.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

from aiohttp.web import (
    Application,
    AppRunner,
    Request,
    Response,
    TCPSite,
    json_response,
)
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# Global metrics registry
_metrics_registry: CollectorRegistry | None = None

LATENCY_BUCKETS = [0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]

# Reconciliation
RECONCILIATION_TOTAL = Counter(
    "mesh_operator_reconciliation_total",
    "Total number of reconciliation passes",
    ["source", "result"],
    registry=None,  # Will be set during initialization
)

RECONCILIATION_DURATION = Histogram(
    "mesh_operator_reconciliation_duration_seconds",
    "Time spent on reconciliation passes",
    ["source"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=None,
)

RECONCILIATION_ERRORS = Counter(
    "mesh_operator_reconciliation_errors_total",
    "Total number of per-unit reconciliation errors",
    ["source", "error_type", "retryable"],
    registry=None,
)

RECONCILE_ACTIONS = Counter(
    "mesh_operator_reconcile_actions_total",
    "Total number of create/update/delete actions applied",
    ["source", "action"],
    registry=None,
)

CONFIG_DRIFT = Gauge(
    "mesh_operator_config_drift",
    "Number of units whose live state drifted from the last applied state",
    ["source"],
    registry=None,
)

LAST_CONVERGED_TIMESTAMP = Gauge(
    "mesh_operator_last_converged_timestamp",
    "Unix timestamp of the last fully converged pass",
    ["source"],
    registry=None,
)

# Admission
ADMISSION_DECISIONS = Counter(
    "mesh_operator_admission_decisions_total",
    "Total number of admission decisions",
    ["kind", "result"],
    registry=None,
)

ADMISSION_LATENCY = Histogram(
    "mesh_operator_admission_duration_seconds",
    "Time spent evaluating admission requests",
    ["kind"],
    buckets=LATENCY_BUCKETS,
    registry=None,
)

# Authorization
AUTHORIZATION_DECISIONS = Counter(
    "mesh_operator_authorization_decisions_total",
    "Total number of authorization decisions",
    ["target", "outcome"],
    registry=None,
)

AUTHORIZATION_LATENCY = Histogram(
    "mesh_operator_authorization_duration_seconds",
    "Time spent evaluating authorization requests",
    [],
    buckets=LATENCY_BUCKETS,
    registry=None,
)

# Secret sync
SECRET_SYNC_TOTAL = Counter(
    "mesh_operator_secret_sync_total",
    "Total number of secret sync attempts",
    ["namespace", "outcome"],
    registry=None,
)

SECRET_SYNC_FAILURES = Gauge(
    "mesh_operator_secret_sync_consecutive_failures",
    "Consecutive failed syncs per binding",
    ["namespace", "binding"],
    registry=None,
)

SECRET_SYNC_LAST_SUCCESS = Gauge(
    "mesh_operator_secret_sync_last_success_timestamp",
    "Unix timestamp of the last successful sync per binding",
    ["namespace", "binding"],
    registry=None,
)

CERTIFICATE_EXPIRY = Gauge(
    "mesh_operator_certificate_expires_timestamp",
    "Unix timestamp when a synced TLS certificate expires",
    ["binding"],
    registry=None,
)

# Routing
ROUTE_DECISIONS = Counter(
    "mesh_operator_route_decisions_total",
    "Total number of ingress routing decisions",
    ["outcome"],
    registry=None,
)

# Degraded mode and breakers
DEGRADED_STATUS = Gauge(
    "mesh_operator_degraded",
    "Degraded mode per component (1=stale-but-serving, 0=healthy)",
    ["component", "name"],
    registry=None,
)

CIRCUIT_BREAKER_STATE = Gauge(
    "mesh_operator_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half-open)",
    ["service"],
    registry=None,
)

EVENTS_TOTAL = Counter(
    "mesh_operator_events_total",
    "Total number of structured events emitted",
    ["component", "action", "outcome"],
    registry=None,
)

SNAPSHOT_VERSION = Gauge(
    "mesh_operator_snapshot_version",
    "Current version of each published rule snapshot",
    ["snapshot"],
    registry=None,
)


def get_metrics_registry() -> CollectorRegistry:
    """Get or create the global metrics registry."""
    global _metrics_registry

    if _metrics_registry is None:
        _metrics_registry = CollectorRegistry()

        for metric in [
            RECONCILIATION_TOTAL,
            RECONCILIATION_DURATION,
            RECONCILIATION_ERRORS,
            RECONCILE_ACTIONS,
            CONFIG_DRIFT,
            LAST_CONVERGED_TIMESTAMP,
            ADMISSION_DECISIONS,
            ADMISSION_LATENCY,
            AUTHORIZATION_DECISIONS,
            AUTHORIZATION_LATENCY,
            SECRET_SYNC_TOTAL,
            SECRET_SYNC_FAILURES,
            SECRET_SYNC_LAST_SUCCESS,
            CERTIFICATE_EXPIRY,
            ROUTE_DECISIONS,
            DEGRADED_STATUS,
            CIRCUIT_BREAKER_STATE,
            EVENTS_TOTAL,
            SNAPSHOT_VERSION,
        ]:
            _metrics_registry.register(metric)

    return _metrics_registry


class MetricsCollector:
    """Collects and manages metrics for the mesh operator."""

    def __init__(self):
        self.registry = get_metrics_registry()

    @asynccontextmanager
    async def track_reconciliation(self, source: str):
        """
        Context manager to track one reconciliation pass.

        Args:
            source: namespace/name of the desired-state source
        """
        start_time = time.time()
        result = "unknown"
        try:
            yield
            result = "success"
        except Exception:
            result = "error"
            raise
        finally:
            RECONCILIATION_TOTAL.labels(source=source, result=result).inc()
            RECONCILIATION_DURATION.labels(source=source).observe(
                time.time() - start_time
            )

    def record_reconcile_result(self, source: str, summary: dict[str, Any]) -> None:
        """Record the action, error and drift counts of a finished pass."""
        for action in ("created", "updated", "deleted"):
            count = summary.get(action, 0)
            if count:
                RECONCILE_ACTIONS.labels(source=source, action=action).inc(count)
        CONFIG_DRIFT.labels(source=source).set(summary.get("drifted", 0))
        if summary.get("converged"):
            LAST_CONVERGED_TIMESTAMP.labels(source=source).set(time.time())

    def record_unit_error(self, source: str, error_type: str, retryable: bool) -> None:
        RECONCILIATION_ERRORS.labels(
            source=source,
            error_type=error_type,
            retryable="true" if retryable else "false",
        ).inc()

    def record_admission(self, kind: str, allowed: bool, duration: float) -> None:
        ADMISSION_DECISIONS.labels(
            kind=kind, result="allowed" if allowed else "denied"
        ).inc()
        ADMISSION_LATENCY.labels(kind=kind).observe(duration)

    def record_authorization(self, target: str, outcome: str, duration: float) -> None:
        AUTHORIZATION_DECISIONS.labels(target=target, outcome=outcome).inc()
        AUTHORIZATION_LATENCY.observe(duration)

    def record_secret_sync(
        self,
        namespace: str,
        binding: str,
        outcome: str,
        consecutive_failures: int,
    ) -> None:
        """
        Record a secret sync attempt.

        Args:
            namespace: Namespace of the binding
            binding: Name of the binding
            outcome: synced, unchanged, failed or in_progress
            consecutive_failures: Failure streak after this attempt
        """
        SECRET_SYNC_TOTAL.labels(namespace=namespace, outcome=outcome).inc()
        SECRET_SYNC_FAILURES.labels(namespace=namespace, binding=binding).set(
            consecutive_failures
        )
        if outcome in ("synced", "unchanged"):
            SECRET_SYNC_LAST_SUCCESS.labels(namespace=namespace, binding=binding).set(
                time.time()
            )

    def forget_binding(self, namespace: str, binding: str) -> None:
        """Drop per-binding series once the binding is deleted."""
        for gauge in (SECRET_SYNC_FAILURES, SECRET_SYNC_LAST_SUCCESS):
            try:
                gauge.remove(namespace, binding)
            except KeyError:
                pass

    def record_certificate(self, binding: str, expires_at: float) -> None:
        CERTIFICATE_EXPIRY.labels(binding=binding).set(expires_at)

    def record_route(self, outcome: str) -> None:
        ROUTE_DECISIONS.labels(outcome=outcome).inc()

    def set_degraded(self, component: str, name: str, degraded: bool) -> None:
        DEGRADED_STATUS.labels(component=component, name=name).set(1 if degraded else 0)

    def set_circuit_state(self, service: str, state: int) -> None:
        CIRCUIT_BREAKER_STATE.labels(service=service).set(state)

    def record_event(self, component: str, action: str, outcome: str) -> None:
        EVENTS_TOTAL.labels(component=component, action=action, outcome=outcome).inc()

    def record_snapshot(self, snapshot: str, version: int) -> None:
        SNAPSHOT_VERSION.labels(snapshot=snapshot).set(version)


class MetricsServer:
    """HTTP server for exposing Prometheus metrics and health endpoints."""

    def __init__(self, port: int = 8081, host: str = "0.0.0.0"):
        self.port = port
        self.host = host
        self.app = Application()
        self.runner: AppRunner | None = None
        self.site: TCPSite | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_get("/metrics", self._metrics_handler)
        self.app.router.add_get("/health", self._health_handler)
        self.app.router.add_get("/ready", self._ready_handler)
        self.app.router.add_get("/healthz", self._healthz_handler)  # K8s compatibility

    async def _metrics_handler(self, request: Request) -> Response:
        """Handle /metrics endpoint for Prometheus scraping."""
        try:
            metrics_data = generate_latest(get_metrics_registry())
            return Response(body=metrics_data, content_type=CONTENT_TYPE_LATEST)
        except Exception as e:
            logger.error(f"Failed to generate metrics: {e}")
            return Response(
                text=f"Error generating metrics: {type(e).__name__}. Check logs for details.",
                status=500,
            )

    async def _health_handler(self, request: Request) -> Response:
        """
        Handle /health endpoint.

        Degraded (stale-but-serving) still answers 200 so the pod is not
        restarted while a source or secret store is unreachable.
        """
        try:
            from .health import HealthChecker

            health_checker = HealthChecker()
            health_results = await health_checker.check_all()
            health_dict = health_checker.to_dict(health_results)
            status_code = (
                200 if health_dict["status"] in ["healthy", "degraded"] else 503
            )
            return json_response(health_dict, status=status_code)
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return json_response(
                {
                    "status": "unhealthy",
                    "error": f"{type(e).__name__}. Check logs for details.",
                    "timestamp": time.time(),
                },
                status=500,
            )

    async def _ready_handler(self, request: Request) -> Response:
        """Handle /ready endpoint for readiness probes."""
        try:
            from .health import HealthChecker

            health_checker = HealthChecker()
            api = await health_checker._check_kubernetes_api()
            crds = await health_checker._check_crds_installed()
            checks = {"kubernetes_api": api.status, "crds_installed": crds.status}
            ready = api.status == "healthy" and crds.status == "healthy"
            return json_response(
                {
                    "status": "ready" if ready else "not_ready",
                    "timestamp": time.time(),
                    "checks": checks,
                },
                status=200 if ready else 503,
            )
        except Exception as e:
            logger.error(f"Readiness check failed: {e}")
            return json_response(
                {
                    "status": "not_ready",
                    "error": f"{type(e).__name__}. Check logs for details.",
                    "timestamp": time.time(),
                },
                status=503,
            )

    async def _healthz_handler(self, request: Request) -> Response:
        return Response(text="ok")

    async def start(self) -> None:
        """Start the metrics server."""
        try:
            self.runner = AppRunner(self.app)
            await self.runner.setup()
            self.site = TCPSite(self.runner, self.host, self.port)
            await self.site.start()
            logger.info(f"Metrics server started on {self.host}:{self.port}")
        except Exception as e:
            logger.error(f"Failed to start metrics server: {e}")
            raise

    async def stop(self) -> None:
        """Stop the metrics server."""
        try:
            if self.site:
                await self.site.stop()
                self.site = None
            if self.runner:
                await self.runner.cleanup()
                self.runner = None
            logger.info("Metrics server stopped")
        except Exception as e:
            logger.error(f"Error stopping metrics server: {e}")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()


# Global metrics collector instance
metrics_collector = MetricsCollector()
