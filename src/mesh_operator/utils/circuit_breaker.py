"""
Circuit breaker for calls to external services.

Wraps aiobreaker so a failing external secret store stops receiving requests
for a cool-down period instead of being hammered by every binding. State
changes are exported through the circuit breaker gauge.
"""

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import aiobreaker
from aiobreaker.state import CircuitHalfOpenState, CircuitOpenState
from opentelemetry import trace

from ..observability.metrics import metrics_collector

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

STATE_CLOSED = 0
STATE_OPEN = 1
STATE_HALF_OPEN = 2


def _state_value(state: Any) -> int:
    # Listeners receive state objects, current_state is a CircuitBreakerState enum
    name = str(getattr(state, "name", "")).lower().replace("_", "-")
    if isinstance(state, CircuitOpenState) or name == "open":
        return STATE_OPEN
    if isinstance(state, CircuitHalfOpenState) or name == "half-open":
        return STATE_HALF_OPEN
    return STATE_CLOSED


class ServiceCircuitBreaker:
    """
    Circuit breaker around one external service.

    Args:
        service: Name used in logs and the circuit breaker gauge
        fail_max: Number of consecutive failures before the circuit opens
        timeout_duration: Seconds to wait before a half-open probe
        exclude: Exception types that do not count as service failures
    """

    def __init__(
        self,
        service: str,
        fail_max: int,
        timeout_duration: int,
        exclude: list[type[BaseException]] | None = None,
    ):
        self.service = service

        class MetricsListener(aiobreaker.CircuitBreakerListener):
            def state_change(self, breaker, old, new):
                old_name = getattr(old, "name", type(old).__name__)
                new_name = getattr(new, "name", type(new).__name__)
                logger.warning(
                    f"Circuit breaker for {service} changed: {old_name} -> {new_name}"
                )
                metrics_collector.set_circuit_state(service, _state_value(new))

        self._breaker = aiobreaker.CircuitBreaker(
            fail_max=fail_max,
            timeout_duration=timedelta(seconds=timeout_duration),
            exclude=exclude or [],
            listeners=[MetricsListener()],
        )
        metrics_collector.set_circuit_state(service, STATE_CLOSED)

    async def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Call an async function with circuit breaker protection.

        Raises:
            aiobreaker.CircuitBreakerError: If the circuit is open
            Exception: Whatever the function raises
        """
        with tracer.start_as_current_span("circuit_breaker_call") as span:
            span.set_attribute("circuit_breaker.service", self.service)
            span.set_attribute("circuit_breaker.state", self.current_state)
            try:
                return await self._breaker.call_async(func, *args, **kwargs)
            except aiobreaker.CircuitBreakerError:
                span.set_attribute("circuit_breaker.error", "open")
                raise
            except Exception as e:
                span.record_exception(e)
                raise

    @property
    def current_state(self) -> str:
        """Current state name (lowercase)."""
        return self._breaker.current_state.name.lower()

    @property
    def is_open(self) -> bool:
        return _state_value(self._breaker.current_state) == STATE_OPEN
