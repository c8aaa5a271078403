"""Centralized operator settings using pydantic-settings.

This module provides a single source of truth for all operator configuration
loaded from environment variables. Uses pydantic for automatic validation,
type coercion, and documentation.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Operator configuration loaded from environment variables.

    All settings have sensible defaults for production use. Override via
    environment variables as documented per field.
    """

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Operator identification
    operator_namespace: str = Field(
        default="mesh-system",
        description="Namespace where the operator is deployed",
        validation_alias="OPERATOR_NAMESPACE",
    )
    operator_instance_id: str = Field(
        default="",
        description="Unique ID for this operator instance (used for ownership labels)",
        validation_alias="OPERATOR_INSTANCE_ID",
    )
    operator_name: str = Field(
        default="mesh-operator",
        description="Name of the operator deployment",
        validation_alias="OPERATOR_NAME",
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        validation_alias="JSON_LOGS",
        description="Enable JSON formatted logging for structured log aggregation",
    )
    correlation_ids: bool = Field(
        default=True,
        validation_alias="CORRELATION_IDS",
        description="Enable correlation IDs in logs for request tracing",
    )
    log_health_probes: bool = Field(
        default=False,
        validation_alias="LOG_HEALTH_PROBES",
        description="Log health probe and metrics scrape requests",
    )
    webhook_log_level: str = Field(
        default="WARNING",
        validation_alias="WEBHOOK_LOG_LEVEL",
        description="Log level for admission webhook handlers",
    )

    # Namespace watching
    namespaces: str = Field(
        default="",
        validation_alias="MESH_OPERATOR_NAMESPACES",
        description="Comma-separated list of namespaces to watch (empty = all namespaces)",
    )

    # Operator behavior
    dry_run: bool = Field(
        default=False,
        validation_alias="DRY_RUN",
        description="Run in dry-run mode (reconcile against an in-memory store)",
    )

    # Reconciliation
    reconcile_interval_seconds: int = Field(
        default=180,
        validation_alias="RECONCILE_INTERVAL_SECONDS",
        description="Default interval between reconciliation passes per source",
    )
    reconcile_self_heal: bool = Field(
        default=False,
        validation_alias="RECONCILE_SELF_HEAL",
        description="Overwrite out-of-band changes instead of reporting them as drift",
    )
    reconcile_prune: bool = Field(
        default=True,
        validation_alias="RECONCILE_PRUNE",
        description="Delete observed workloads that are no longer declared",
    )
    reconcile_max_retries: int = Field(
        default=3,
        validation_alias="RECONCILE_MAX_RETRIES",
        description="Retries per unit for retryable apply failures",
    )
    reconcile_initial_backoff_seconds: float = Field(
        default=1.0,
        validation_alias="RECONCILE_INITIAL_BACKOFF_SECONDS",
        description="Delay before the first apply retry",
    )
    reconcile_backoff_factor: float = Field(
        default=2.0,
        validation_alias="RECONCILE_BACKOFF_FACTOR",
        description="Multiplier applied to the retry delay after each attempt",
    )
    reconcile_max_concurrency: int = Field(
        default=8,
        validation_alias="RECONCILE_MAX_CONCURRENCY",
        description="Maximum number of units applied concurrently",
    )

    # Metrics and observability
    metrics_port: int = Field(
        default=8081,
        validation_alias="METRICS_PORT",
        description="Port for Prometheus metrics endpoint",
    )
    metrics_host: str = Field(
        default="0.0.0.0",
        validation_alias="METRICS_HOST",
        description="Host address to bind metrics server",
    )
    tracing_enabled: bool = Field(
        default=False,
        validation_alias="OTEL_TRACING_ENABLED",
        description="Enable OpenTelemetry tracing",
    )
    tracing_endpoint: str = Field(
        default="http://localhost:4317",
        validation_alias="OTEL_EXPORTER_OTLP_ENDPOINT",
        description="OTLP gRPC collector endpoint",
    )
    tracing_sample_rate: float = Field(
        default=1.0,
        validation_alias="OTEL_TRACES_SAMPLER_ARG",
        description="Fraction of root traces to sample",
    )

    # Admission webhooks
    enable_webhooks: bool = Field(
        default=True,
        validation_alias="ENABLE_WEBHOOKS",
        description="Enable admission webhooks for validation",
    )
    webhook_port: int = Field(
        default=9443,
        validation_alias="WEBHOOK_PORT",
        description="Port for admission webhook server",
    )
    admission_timeout_seconds: float = Field(
        default=0.5,
        validation_alias="ADMISSION_TIMEOUT_SECONDS",
        description="Admission evaluation budget; exceeding it denies the request",
    )

    # Authorization decisions
    authorization_timeout_seconds: float = Field(
        default=0.25,
        validation_alias="AUTHORIZATION_TIMEOUT_SECONDS",
        description="Authorization evaluation budget; exceeding it denies the call",
    )
    authz_port: int = Field(
        default=9191,
        validation_alias="AUTHZ_PORT",
        description="Port for the authorization decision endpoint",
    )
    identity_clock_skew_seconds: int = Field(
        default=30,
        validation_alias="IDENTITY_CLOCK_SKEW_SECONDS",
        description="Tolerated clock skew when checking identity validity windows",
    )

    # External secret synchronization
    secret_sync_default_interval_seconds: int = Field(
        default=60,
        validation_alias="SECRET_SYNC_DEFAULT_INTERVAL_SECONDS",
        description="Refresh interval for ExternalSecrets that do not set one",
    )
    secret_sync_backoff_base_seconds: float = Field(
        default=5.0,
        validation_alias="SECRET_SYNC_BACKOFF_BASE_SECONDS",
        description="First retry delay after a failed fetch",
    )
    secret_sync_max_backoff_seconds: float = Field(
        default=300.0,
        validation_alias="SECRET_SYNC_MAX_BACKOFF_SECONDS",
        description="Upper bound for the fetch retry delay",
    )
    secret_store_url: str = Field(
        default="http://vault.vault.svc:8200",
        validation_alias="SECRET_STORE_URL",
        description="Base URL of the external secret store",
    )
    secret_store_auth_path: str = Field(
        default="auth/kubernetes/login",
        validation_alias="SECRET_STORE_AUTH_PATH",
        description="Login path for service-account token authentication",
    )
    secret_store_role: str = Field(
        default="mesh-operator",
        validation_alias="SECRET_STORE_ROLE",
        description="Role requested when exchanging the service-account token",
    )
    secret_store_token_path: str = Field(
        default="/var/run/secrets/tokens/secret-store-token",
        validation_alias="SECRET_STORE_TOKEN_PATH",
        description="Path of the projected service-account token",
    )
    secret_store_timeout_seconds: float = Field(
        default=10.0,
        validation_alias="SECRET_STORE_TIMEOUT_SECONDS",
        description="HTTP timeout for secret store requests",
    )
    secret_store_breaker_fail_max: int = Field(
        default=5,
        validation_alias="SECRET_STORE_BREAKER_FAIL_MAX",
        description="Consecutive failures before the secret store circuit opens",
    )
    secret_store_breaker_reset_seconds: int = Field(
        default=60,
        validation_alias="SECRET_STORE_BREAKER_RESET_SECONDS",
        description="Seconds before an open circuit allows a probe request",
    )

    # Ingress gateway
    gateway_enabled: bool = Field(
        default=True,
        validation_alias="GATEWAY_ENABLED",
        description="Serve the ingress gateway from the operator process",
    )
    gateway_host: str = Field(
        default="0.0.0.0",
        validation_alias="GATEWAY_HOST",
        description="Host address to bind gateway listeners",
    )
    gateway_http_port: int = Field(
        default=8080,
        validation_alias="GATEWAY_HTTP_PORT",
        description="Plain HTTP listener; every request is redirected to HTTPS",
    )
    gateway_https_port: int = Field(
        default=8443,
        validation_alias="GATEWAY_HTTPS_PORT",
        description="TLS listener terminating with synced certificates",
    )
    gateway_upstream_timeout_seconds: float = Field(
        default=30.0,
        validation_alias="GATEWAY_UPSTREAM_TIMEOUT_SECONDS",
        description="Timeout for proxied upstream requests",
    )
    cluster_domain: str = Field(
        default="cluster.local",
        validation_alias="CLUSTER_DOMAIN",
        description="Cluster DNS domain used to address upstream services",
    )

    @property
    def watched_namespaces(self) -> list[str] | None:
        """Parse watched namespaces from comma-separated string.

        Returns:
            List of namespace names, or None to watch all namespaces
        """
        if self.namespaces:
            return [ns.strip() for ns in self.namespaces.split(",") if ns.strip()]
        return None


# Global settings instance - initialized once at module import
settings = Settings()
