"""
Admission controller.

Evaluates candidate workload specifications against the active constraint
set before they are persisted. ``admit()`` is a pure function of the
candidate and one constraint snapshot; ``admit_with_timeout()`` is the
request-path wrapper that bounds evaluation time, fails closed and emits the
decision event.

Field semantics: a constraint whose field is absent from the candidate (or
cannot be resolved because the candidate is malformed at that point) is not
violated, unless its template declares absence itself a violation.
"""

import asyncio
import logging
import re
import time
from collections.abc import Callable
from typing import Any

from ..constants import COMPONENT_ADMISSION, DEFAULT_ADMISSION_TIMEOUT
from ..models.constraint import (
    AdmissionDecision,
    Constraint,
    ConstraintSet,
    ConstraintTemplate,
)
from ..models.types import ManifestBody
from ..observability.events import EventRecorder, get_event_recorder
from ..observability.metrics import metrics_collector
from ..observability.tracing import get_tracer
from .snapshots import Snapshot, SnapshotStore

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

# Where the pod spec lives for each workload kind; "podSpec." field paths
# resolve through this table
POD_SPEC_PATHS: dict[str, str] = {
    "Pod": "spec",
    "Deployment": "spec.template.spec",
    "StatefulSet": "spec.template.spec",
    "DaemonSet": "spec.template.spec",
    "ReplicaSet": "spec.template.spec",
    "Job": "spec.template.spec",
    "CronJob": "spec.jobTemplate.spec.template.spec",
}

_SEGMENT = re.compile(r"^(?P<key>[^\[\]]*)(?P<indexes>(\[(\*|\d+)\])*)$")
_INDEX = re.compile(r"\[(\*|\d+)\]")

# A predicate receives one resolved value and the constraint parameters and
# returns a violation message, or None
Predicate = Callable[[Any, dict[str, Any]], str | None]
PREDICATES: dict[str, Predicate] = {}


def predicate(name: str) -> Callable[[Predicate], Predicate]:
    """Register a template predicate under its name."""

    def register(fn: Predicate) -> Predicate:
        PREDICATES[name] = fn
        return fn

    return register


def expand_pod_spec_path(path: str, kind: str) -> str | None:
    if path != "podSpec" and not path.startswith("podSpec."):
        return path
    base = POD_SPEC_PATHS.get(kind)
    if base is None:
        return None
    return base + path[len("podSpec") :]


def resolve_field(obj: Any, path: str) -> list[Any]:
    """
    Resolve a dotted field path, expanding '[*]' over list items.

    Returns:
        All values found; an empty list when the field is absent anywhere
        along the path or the document has an unexpected shape there
    """
    current: list[Any] = [obj]
    for segment in path.split("."):
        match = _SEGMENT.match(segment)
        if match is None:
            return []
        key, indexes = match.group("key"), _INDEX.findall(match.group("indexes"))
        following: list[Any] = []
        for value in current:
            if key:
                if not isinstance(value, dict) or key not in value:
                    continue
                value = value[key]
            items = [value]
            for index in indexes:
                expanded = []
                for item in items:
                    if not isinstance(item, list):
                        continue
                    if index == "*":
                        expanded.extend(item)
                    elif int(index) < len(item):
                        expanded.append(item[int(index)])
                items = expanded
            following.extend(items)
        current = following
    return [value for value in current if value is not None]


@predicate("boolean-field-true")
def _boolean_field_true(value: Any, params: dict[str, Any]) -> str | None:
    if value is True or (isinstance(value, str) and value.lower() == "true"):
        return "is set to true"
    return None


@predicate("required-field")
def _required_field(value: Any, params: dict[str, Any]) -> str | None:
    # Presence satisfies the constraint; absence is handled by the caller
    return None


@predicate("disallowed-values")
def _disallowed_values(value: Any, params: dict[str, Any]) -> str | None:
    if value in params.get("values", []):
        return f"value {value!r} is not allowed"
    return None


@predicate("allowed-values")
def _allowed_values(value: Any, params: dict[str, Any]) -> str | None:
    allowed = params.get("values", [])
    if value not in allowed:
        return f"value {value!r} is not one of {allowed!r}"
    return None


@predicate("max-value")
def _max_value(value: Any, params: dict[str, Any]) -> str | None:
    limit = params.get("max")
    if isinstance(value, bool) or not isinstance(value, int | float) or limit is None:
        return None
    if value > limit:
        return f"value {value} exceeds maximum {limit}"
    return None


@predicate("pattern")
def _pattern(value: Any, params: dict[str, Any]) -> str | None:
    pattern = params.get("pattern")
    if not isinstance(value, str) or not pattern:
        return None
    if re.fullmatch(pattern, value) is None:
        return f"value {value!r} does not match {pattern!r}"
    return None


@predicate("required-labels")
def _required_labels(value: Any, params: dict[str, Any]) -> str | None:
    if not isinstance(value, dict):
        return None
    missing = [label for label in params.get("labels", []) if label not in value]
    if missing:
        return f"missing required labels: {', '.join(missing)}"
    return None


DEFAULT_FIELDS = {"required-labels": "metadata.labels"}


def evaluate_constraint(
    template: ConstraintTemplate, constraint: Constraint, candidate: ManifestBody
) -> list[str]:
    """
    Evaluate one constraint against a candidate.

    Returns:
        Violation messages, empty when the constraint is satisfied
    """
    kind = candidate.get("kind", "") if isinstance(candidate, dict) else ""
    params = constraint.parameters
    raw_path = params.get("field") or template.field or DEFAULT_FIELDS.get(
        template.predicate
    )
    if not raw_path:
        return []
    path = expand_pod_spec_path(raw_path, kind)
    values = resolve_field(candidate, path) if path else []

    if not values:
        if template.absence_is_violation or template.predicate == "required-field":
            return [_format(template, constraint, raw_path, "is required but absent")]
        return []

    check = PREDICATES[template.predicate]
    violations = []
    for value in values:
        problem = check(value, params)
        if problem is not None:
            violations.append(_format(template, constraint, raw_path, problem))
    return violations


def _format(
    template: ConstraintTemplate, constraint: Constraint, field: str, problem: str
) -> str:
    if template.message:
        try:
            return template.message.format(
                constraint=constraint.name, field=field, problem=problem
            )
        except (KeyError, IndexError, ValueError):
            logger.debug(f"Unusable message template on {template.name}")
    return f"{field} {problem}"


def admit(
    candidate: ManifestBody,
    constraints: ConstraintSet,
    namespace: str | None = None,
    snapshot_version: int | None = None,
) -> AdmissionDecision:
    """
    Decide whether a candidate may be persisted.

    Pure function of the candidate and the constraint set. The first denying
    constraint with violations determines the reason; warn-only constraints
    are reported as warnings.
    """
    if isinstance(candidate, dict):
        kind = candidate.get("kind", "")
        metadata = candidate.get("metadata")
        if namespace is None and isinstance(metadata, dict):
            namespace = metadata.get("namespace")
    else:
        kind = ""

    denied_by: Constraint | None = None
    violations: list[str] = []
    warnings: list[str] = []
    for constraint in constraints.constraints_for(namespace, kind):
        template = constraints.templates.get(constraint.template)
        if template is None:
            continue
        found = evaluate_constraint(template, constraint, candidate)
        if not found:
            continue
        if constraint.enforcement_action == "warn":
            warnings.extend(f"[{constraint.name}] {v}" for v in found)
            continue
        if denied_by is None:
            denied_by = constraint
        violations.extend(f"[{constraint.name}] {v}" for v in found)

    if denied_by is not None:
        first = next(v for v in violations if v.startswith(f"[{denied_by.name}]"))
        return AdmissionDecision(
            allowed=False,
            reason=(
                f"Denied by constraint '{denied_by.name}': "
                f"{first[len(denied_by.name) + 3 :]}"
            ),
            constraint=denied_by.name,
            violations=violations,
            warnings=warnings,
            snapshot_version=snapshot_version,
        )
    return AdmissionDecision(
        allowed=True, warnings=warnings, snapshot_version=snapshot_version
    )


class AdmissionController:
    """Holds the constraint snapshot and answers admission requests."""

    def __init__(
        self,
        timeout: float = DEFAULT_ADMISSION_TIMEOUT,
        events: EventRecorder | None = None,
    ):
        self.timeout = timeout
        self.events = events or get_event_recorder()
        self.snapshots: SnapshotStore[ConstraintSet] = SnapshotStore(
            ConstraintSet(), name="constraints"
        )

    def current(self) -> Snapshot[ConstraintSet]:
        return self.snapshots.current()

    def _publish(self, fn: Callable[[ConstraintSet], ConstraintSet]) -> int:
        snapshot = self.snapshots.update(fn)
        metrics_collector.record_snapshot("constraints", snapshot.version)
        return snapshot.version

    def apply_template(self, template: ConstraintTemplate) -> int:
        return self._publish(lambda s: s.with_template(template))

    def remove_template(self, name: str) -> int:
        """
        Remove a template.

        Raises:
            TemplateInUseError: If constraints still reference it
        """
        return self._publish(lambda s: s.without_template(name))

    def apply_constraint(self, constraint: Constraint) -> int:
        """
        Add or replace a constraint.

        Raises:
            ValidationError: If its template is unknown
        """
        return self._publish(lambda s: s.with_constraint(constraint))

    def remove_constraint(self, name: str) -> int:
        return self._publish(lambda s: s.without_constraint(name))

    def admit(
        self, candidate: ManifestBody, namespace: str | None = None
    ) -> AdmissionDecision:
        snapshot = self.snapshots.current()
        return admit(candidate, snapshot.value, namespace, snapshot.version)

    async def admit_with_timeout(
        self,
        candidate: ManifestBody,
        namespace: str | None = None,
        timeout: float | None = None,
    ) -> AdmissionDecision:
        """
        Bounded admission check; exceeding the budget or failing denies.
        """
        timeout = self.timeout if timeout is None else timeout
        kind = candidate.get("kind", "unknown") if isinstance(candidate, dict) else "unknown"
        name = ""
        if isinstance(candidate, dict) and isinstance(candidate.get("metadata"), dict):
            name = candidate["metadata"].get("name", "")
        start = time.monotonic()

        with tracer.start_as_current_span("admission.admit") as span:
            span.set_attribute("admission.kind", kind)
            try:
                decision = await asyncio.wait_for(
                    asyncio.to_thread(self.admit, candidate, namespace), timeout
                )
            except TimeoutError:
                decision = AdmissionDecision(
                    allowed=False,
                    reason=f"admission evaluation exceeded {timeout}s; denied",
                )
            except Exception as e:
                logger.error(f"Admission evaluation failed for {kind}/{name}: {e}")
                decision = AdmissionDecision(
                    allowed=False, reason="admission evaluation failed; denied"
                )
            span.set_attribute("admission.allowed", decision.allowed)

        metrics_collector.record_admission(
            kind, decision.allowed, time.monotonic() - start
        )
        self.events.emit(
            COMPONENT_ADMISSION,
            "admit",
            "allowed" if decision.allowed else "denied",
            decision.reason or "no constraint violated",
            resource_type=kind,
            resource_name=name,
            namespace=namespace,
            snapshot_version=decision.snapshot_version,
        )
        return decision
