"""
Observability utilities for the mesh operator.

This module provides metrics, health checks, structured decision events and
structured logging capabilities for production monitoring and troubleshooting.
"""

from .events import EventRecorder, get_event_recorder
from .health import HealthChecker
from .logging import OperatorLogger, setup_structured_logging
from .metrics import MetricsServer, get_metrics_registry

__all__ = [
    "EventRecorder",
    "get_event_recorder",
    "MetricsServer",
    "get_metrics_registry",
    "HealthChecker",
    "OperatorLogger",
    "setup_structured_logging",
]
