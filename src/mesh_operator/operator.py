#!/usr/bin/env python3
"""
Mesh Operator - Main entry point for the Kopf-based mesh control plane.

This operator runs the five control plane components in one process:
- Reconciliation loops converging MeshSource checkouts into the cluster
- An admission controller enforcing MeshConstraints via validating webhooks
- A policy decision engine answering sidecar authorization requests
- A secret synchronizer materializing ExternalSecrets
- A traffic router behind the ingress gateway

Usage:
    python -m mesh_operator.operator
    # Or with kopf directly:
    kopf run -m mesh_operator.operator --verbose --all-namespaces

Environment Variables:
    MESH_OPERATOR_NAMESPACES: Comma-separated list of namespaces to watch
    LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
    DRY_RUN: Set to 'true' to converge into in-memory stores only
"""

import logging
import random
import sys

import kopf
from kubernetes import config

# Import all handler modules to register them with kopf
# This is the standard pattern - importing modules registers their decorators
from mesh_operator.handlers import (  # noqa: F401
    constraints,
    external_secret,
    identity,
    policy,
    routes,
    source,
)
from mesh_operator.gateway import AuthorizationServer, IngressGateway
from mesh_operator.observability.health import HealthChecker
from mesh_operator.observability.logging import setup_structured_logging
from mesh_operator.observability.metrics import MetricsServer
from mesh_operator.observability.tracing import setup_tracing, shutdown_tracing
from mesh_operator.runtime import get_control_plane
from mesh_operator.settings import settings as operator_settings

# Import webhook modules to register admission webhooks ONLY if webhooks are enabled
# Note: This conditional import is required because Kopf throws an error if
# admission handlers are registered but no admission server is configured.
if operator_settings.enable_webhooks:
    from mesh_operator.webhooks import resources as resources_webhook  # noqa: F401
    from mesh_operator.webhooks import workloads as workloads_webhook  # noqa: F401

LIVENESS_ENDPOINT = "http://0.0.0.0:8090/healthz"
WEBHOOK_CERT_DIR = "/tmp/k8s-webhook-server/serving-certs"


def configure_logging() -> None:
    """Configure structured logging for the operator based on operator_settings."""
    setup_structured_logging(
        log_level=operator_settings.log_level.upper(),
        enable_json_formatting=operator_settings.json_logs,
        correlation_id_enabled=operator_settings.correlation_ids,
        log_health_probes=operator_settings.log_health_probes,
        webhook_log_level=operator_settings.webhook_log_level,
    )


def get_watched_namespaces() -> list[str] | None:
    return operator_settings.watched_namespaces


def load_kubernetes_config() -> None:
    try:
        config.load_incluster_config()
        logging.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            config.load_kube_config()
            logging.info("Loaded kubeconfig configuration")
        except config.ConfigException:
            logging.error("Failed to load Kubernetes configuration")
            raise


@kopf.on.startup()
async def startup_handler(
    settings: kopf.OperatorSettings, memo: kopf.Memo, **_
) -> None:
    """
    Operator startup configuration.

    Configures kopf, assembles the control plane and starts the metrics,
    ingress and authorization servers. Failing to bind the ingress or the
    authorization endpoint fails startup; the metrics server is optional.
    """
    logging.info("Starting Mesh Operator...")
    settings.watching.reconnect_backoff = 1.0

    # Configure peering for leader election with random priority
    settings.peering.name = operator_settings.operator_name
    settings.peering.priority = random.randint(0, 32767)
    logging.info(
        f"Peering priority set to {settings.peering.priority} for leader election"
    )
    settings.execution.max_workers = 20

    watched_namespaces = get_watched_namespaces()
    if watched_namespaces:
        logging.info(f"Watching namespaces: {', '.join(watched_namespaces)}")
    else:
        logging.info("Watching all namespaces (cluster-wide mode)")

    if operator_settings.dry_run:
        logging.info("Running in DRY-RUN mode - workloads and secrets stay in memory")
    else:
        load_kubernetes_config()

    control_plane = get_control_plane()
    memo.control_plane = control_plane

    try:
        metrics_server = MetricsServer(
            port=operator_settings.metrics_port, host=operator_settings.metrics_host
        )
        await metrics_server.start()
        memo.metrics_server = metrics_server
    except Exception as e:
        logging.error(f"Failed to start metrics server: {e}")
        logging.warning("Continuing without metrics server")
        memo.metrics_server = None

    authz_server = AuthorizationServer(
        control_plane.policy_engine, port=operator_settings.authz_port
    )
    await authz_server.start()
    memo.authz_server = authz_server

    memo.gateway = None
    if operator_settings.gateway_enabled:
        gateway = IngressGateway(
            control_plane.router,
            host=operator_settings.gateway_host,
            http_port=operator_settings.gateway_http_port,
            https_port=operator_settings.gateway_https_port,
            upstream_timeout=operator_settings.gateway_upstream_timeout_seconds,
            cluster_domain=operator_settings.cluster_domain,
        )
        await gateway.start()
        memo.gateway = gateway


@kopf.on.cleanup()
async def cleanup_handler(memo: kopf.Memo, **_) -> None:
    """
    Operator cleanup handler.

    Stops the listeners first so no new requests arrive, then lets writes
    that outlived cancelled reconciliation passes finish.
    """
    logging.info("Shutting down Mesh Operator...")

    for name in ("gateway", "authz_server", "metrics_server"):
        server = getattr(memo, name, None)
        if server is None:
            continue
        try:
            await server.stop()
        except Exception as e:
            logging.error(f"Error stopping {name}: {e}")

    control_plane = getattr(memo, "control_plane", None)
    if control_plane is not None:
        await control_plane.aclose()
    shutdown_tracing()


@kopf.on.probe(id="healthz")
async def health_check(**_) -> dict[str, str]:
    """
    Health check probe for Kubernetes liveness checks.

    A stale-but-serving control plane reports ``degraded``, which the
    liveness endpoint still treats as alive.
    """
    try:
        health_checker = HealthChecker()
        health_results = await health_checker.check_all()
        return {
            "status": health_checker.get_overall_health(health_results),
            "operator": operator_settings.operator_name,
        }
    except Exception as e:
        logging.error(f"Health check failed: {e}")
        return {
            "status": "unhealthy",
            "operator": operator_settings.operator_name,
            "error": str(e),
        }


@kopf.on.probe(id="ready")
async def readiness_check(**_) -> dict[str, str]:
    """Readiness probe - Kubernetes API reachable and CRDs installed."""
    try:
        health_checker = HealthChecker()
        api = await health_checker._check_kubernetes_api()
        crds = await health_checker._check_crds_installed()
        ready = api.status == "healthy" and crds.status == "healthy"
        return {
            "status": "ready" if ready else "not_ready",
            "operator": operator_settings.operator_name,
        }
    except Exception as e:
        logging.error(f"Readiness check failed: {e}")
        return {
            "status": "not_ready",
            "operator": operator_settings.operator_name,
            "error": str(e),
        }


def build_operator_settings() -> kopf.OperatorSettings:
    """
    Kopf settings that must exist before kopf.run().

    Webhook configurations and serving certificates are managed outside the
    operator, so kopf only serves the admission endpoint.
    """
    settings_obj = kopf.OperatorSettings()
    settings_obj.admission.managed = None
    if operator_settings.enable_webhooks:
        settings_obj.admission.server = kopf.WebhookServer(
            port=operator_settings.webhook_port,
            host="0.0.0.0",
            certfile=f"{WEBHOOK_CERT_DIR}/tls.crt",
            pkeyfile=f"{WEBHOOK_CERT_DIR}/tls.key",
        )
        logging.info(
            f"Admission webhooks ENABLED on port {operator_settings.webhook_port} "
            f"using certificates from {WEBHOOK_CERT_DIR}"
        )
    else:
        settings_obj.admission.server = None
        logging.info("Admission webhooks DISABLED")
    return settings_obj


def main() -> None:
    """
    Main entry point for the operator.

    This function:
    1. Configures logging and tracing
    2. Determines namespace scope
    3. Configures admission webhooks (must be before kopf.run())
    4. Runs the kopf operator
    """
    configure_logging()
    setup_tracing(
        enabled=operator_settings.tracing_enabled,
        endpoint=operator_settings.tracing_endpoint,
        service_name=operator_settings.operator_name,
        sample_rate=operator_settings.tracing_sample_rate,
    )

    watched_namespaces = get_watched_namespaces()
    settings_obj = build_operator_settings()

    try:
        if watched_namespaces:
            kopf.run(
                namespaces=watched_namespaces,
                liveness_endpoint=LIVENESS_ENDPOINT,
                settings=settings_obj,
            )
        else:
            kopf.run(
                clusterwide=True,
                liveness_endpoint=LIVENESS_ENDPOINT,
                settings=settings_obj,
            )
    except KeyboardInterrupt:
        logging.info("Received shutdown signal")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Operator failed with error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
