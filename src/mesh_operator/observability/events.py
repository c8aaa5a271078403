"""
Structured decision events.

Each component reports every action it takes (apply, prune, drift, admit,
authorize, sync, route) as one event carrying the outcome and a reason. An
event becomes an audit log line, increments ``mesh_operator_events_total``
and is kept in a bounded in-memory ring for the health endpoint.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .logging import OperatorLogger
from .metrics import metrics_collector

DEFAULT_EVENT_BUFFER = 500


@dataclass(frozen=True)
class DecisionEvent:
    """One recorded action of a component."""

    component: str
    action: str
    outcome: str
    reason: str
    fields: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "component": self.component,
            "action": self.action,
            "outcome": self.outcome,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
            **self.fields,
        }


class EventRecorder:
    """Fan-out of decision events to logs, metrics and a bounded ring buffer."""

    def __init__(self, max_events: int = DEFAULT_EVENT_BUFFER):
        self._logger = OperatorLogger("mesh_operator.events")
        self._events: deque[DecisionEvent] = deque(maxlen=max_events)
        # emit() is called from the event loop and from admission worker threads
        self._lock = threading.Lock()

    def emit(
        self, component: str, action: str, outcome: str, reason: str, **fields: Any
    ) -> DecisionEvent:
        event = DecisionEvent(
            component=component,
            action=action,
            outcome=outcome,
            reason=reason,
            fields=fields,
        )
        with self._lock:
            self._events.append(event)
        metrics_collector.record_event(component, action, outcome)
        self._logger.log_decision_audit(component, action, outcome, reason, fields)
        return event

    def recent(
        self, component: str | None = None, action: str | None = None
    ) -> list[DecisionEvent]:
        """Return buffered events, oldest first, optionally filtered."""
        with self._lock:
            events = list(self._events)
        return [
            e
            for e in events
            if (component is None or e.component == component)
            and (action is None or e.action == action)
        ]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


_event_recorder: EventRecorder | None = None


def get_event_recorder() -> EventRecorder:
    """Get or create the process-wide event recorder."""
    global _event_recorder
    if _event_recorder is None:
        _event_recorder = EventRecorder()
    return _event_recorder
