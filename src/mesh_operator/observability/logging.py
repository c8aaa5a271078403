"""
Structured logging utilities for the mesh operator.

This module provides correlation ID tracking, JSON log formatting and
decision audit logging, so every apply, deny, sync and route decision can be
traced from the log stream.
"""

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# Context variable for tracking correlation IDs across async operations
correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")

# Paths that should be filtered from access logs (health probes)
HEALTH_PROBE_PATHS = frozenset({"/healthz", "/health", "/ready", "/metrics"})

# Extra record attributes copied into JSON output
STRUCTURED_FIELDS = (
    "component",
    "action",
    "outcome",
    "reason",
    "resource_type",
    "resource_name",
    "namespace",
    "unit",
    "binding",
    "source",
    "target",
    "host",
    "path",
    "revision",
    "snapshot_version",
    "operation",
    "duration",
    "error_type",
    "audit",
)


class HealthProbeFilter(logging.Filter):
    """Suppresses log lines about health probe and metrics requests."""

    def __init__(self, suppress_health_logs: bool = True):
        super().__init__()
        self.suppress_health_logs = suppress_health_logs

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.suppress_health_logs:
            return True
        message = record.getMessage()
        return all(path not in message for path in HEALTH_PROBE_PATHS)


class CorrelationIDFilter(logging.Filter):
    """Logging filter that adds correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        current = correlation_id.get()
        if not current:
            current = generate_correlation_id()
            correlation_id.set(current)
        record.correlation_id = current
        return True


class StructuredFormatter(logging.Formatter):
    """
    Structured JSON formatter for logs with correlation ID support.

    Extra attributes passed via ``extra=`` are emitted as top-level keys when
    they are listed in STRUCTURED_FIELDS.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", ""),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for field in STRUCTURED_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        return json.dumps(log_data, default=str)


def generate_correlation_id() -> str:
    """Generate a short correlation ID."""
    return str(uuid.uuid4())[:8]


def set_correlation_id(corr_id: str) -> str:
    """Set the correlation ID for the current context."""
    correlation_id.set(corr_id)
    return corr_id


def get_correlation_id() -> str:
    """Get the current correlation ID, or empty string if none set."""
    return correlation_id.get("")


def setup_structured_logging(
    log_level: str = "INFO",
    enable_json_formatting: bool = True,
    correlation_id_enabled: bool = True,
    log_health_probes: bool = False,
    webhook_log_level: str = "WARNING",
) -> None:
    """
    Set up structured logging for the operator.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        enable_json_formatting: Whether to use JSON formatting
        correlation_id_enabled: Whether to enable correlation ID tracking
        log_health_probes: Whether to log health probe requests
        webhook_log_level: Log level for admission webhook loggers
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()

    if enable_json_formatting:
        formatter: logging.Formatter = StructuredFormatter()
    elif correlation_id_enabled:
        formatter = logging.Formatter(
            "%(asctime)s - %(correlation_id)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    handler.setFormatter(formatter)

    if correlation_id_enabled:
        handler.addFilter(CorrelationIDFilter())
    if not log_health_probes:
        handler.addFilter(HealthProbeFilter(suppress_health_logs=True))

    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Third-party libraries are noisy at INFO
    for noisy in ("kopf", "httpx", "kubernetes", "aiohttp.access", "aiohttp.server"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    webhook_level = getattr(logging, webhook_log_level.upper(), logging.WARNING)
    logging.getLogger("mesh_operator.webhooks").setLevel(webhook_level)


class OperatorLogger:
    """
    Logger for operator operations with structured logging support.

    Provides convenient methods for logging reconciliation passes and
    decision audits with correlation ID tracking.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def log_reconciliation_start(
        self,
        source: str,
        revision: str | None,
        correlation_id: str | None = None,
    ) -> str:
        """
        Log the start of a reconciliation pass.

        Returns:
            The correlation ID used for this pass
        """
        if correlation_id is None:
            correlation_id = generate_correlation_id()
        set_correlation_id(correlation_id)

        self.logger.info(
            f"Starting reconciliation of {source} at revision {revision}",
            extra={
                "source": source,
                "revision": revision,
                "operation": "reconcile_start",
            },
        )
        return correlation_id

    def log_reconciliation_success(
        self, source: str, revision: str | None, duration: float, summary: dict
    ) -> None:
        self.logger.info(
            f"Reconciliation of {source} converged at revision {revision}",
            extra={
                "source": source,
                "revision": revision,
                "operation": "reconcile_success",
                "duration": duration,
                "audit": summary,
            },
        )

    def log_reconciliation_error(
        self,
        source: str,
        revision: str | None,
        duration: float,
        summary: dict,
        error: Exception | None = None,
    ) -> None:
        self.logger.error(
            f"Reconciliation of {source} did not converge at revision {revision}",
            extra={
                "source": source,
                "revision": revision,
                "operation": "reconcile_error",
                "error_type": type(error).__name__ if error else None,
                "duration": duration,
                "audit": summary,
            },
            exc_info=error is not None,
        )

    def log_decision_audit(
        self,
        component: str,
        action: str,
        outcome: str,
        reason: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log an audit record for a decision taken by a component.

        Denials and failures are logged at WARNING, everything else at INFO.
        """
        negative = outcome in {"denied", "failed", "error", "identity_invalid", "timeout"}
        level = logging.WARNING if negative else logging.INFO
        audit = {
            "audit_event": f"{component}.{action}",
            "outcome": outcome,
            "reason": reason,
            "timestamp": datetime.now(UTC).isoformat(),
        }
        if details:
            audit.update(details)
        self.logger.log(
            level,
            f"{component} {action} {outcome}: {reason}",
            extra={
                "component": component,
                "action": action,
                "outcome": outcome,
                "reason": reason,
                "audit": audit,
            },
        )

    def debug(self, message: str, **kwargs) -> None:
        self.logger.debug(message, extra=kwargs)

    def info(self, message: str, **kwargs) -> None:
        self.logger.info(message, extra=kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self.logger.warning(message, extra=kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs) -> None:
        self.logger.error(message, exc_info=exc_info, extra=kwargs)
