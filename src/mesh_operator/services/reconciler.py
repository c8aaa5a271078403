"""
Reconciliation loop.

Converges the units declared at one revision of a desired-state source into
the cluster workload API:

- units without a matching observed object are created
- units whose observed revision hash differs are updated with a three-way
  merge (last-applied vs desired vs live)
- units with an equal hash are checked for drift, which is either healed or
  reported depending on the self-heal mode
- observed objects no longer declared are pruned

Units are processed concurrently and in isolation: one unit's failure is
retried with exponential backoff and reported in the result without
blocking its siblings. Operations on the same unit are serialized, and each
store write is shielded from cancellation so shutdown never leaves a unit
half-written.
"""

import asyncio
import copy
import hashlib
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import yaml

from ..constants import (
    COMPONENT_RECONCILER,
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_INITIAL_DELAY,
    DEFAULT_MAX_RETRIES,
    MANIFEST_SUFFIXES,
    REVISION_FILE,
    REVISION_HASH_ANNOTATION,
    SOURCE_LABEL_KEY,
)
from ..errors import (
    ConvergenceError,
    OperatorError,
    PolicyViolation,
    SourceUnavailableError,
    ValidationError,
)
from ..models.desired_state import (
    DesiredStateUnit,
    DriftReport,
    ObservedState,
    ReconcileAction,
    ReconcileResult,
    UnitError,
    UnitKey,
    normalize_manifest,
)
from ..models.types import ManifestBody
from ..observability.events import EventRecorder, get_event_recorder
from ..observability.logging import OperatorLogger
from ..observability.metrics import metrics_collector
from ..observability.tracing import get_tracer
from ..utils.locks import KeyedLocks
from ..utils.ownership import (
    is_managed_by_operator,
    is_owned_by_source,
    managed_labels,
    ownership_annotations,
    source_label_value,
    strip_ownership,
)
from .admission import AdmissionController
from .diffing import calculate_drift, three_way_merge

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


@dataclass(frozen=True)
class DesiredSnapshot:
    """All units declared at one source revision."""

    revision: str
    units: tuple[DesiredStateUnit, ...]
    errors: dict[str, UnitError] = field(default_factory=dict)


class DesiredStateSource(Protocol):
    """A revision-addressed declaration store."""

    name: str

    async def load(self) -> DesiredSnapshot: ...


class ManifestDirectorySource:
    """
    Desired-state source backed by a checkout of manifests on disk.

    Every ``*.yaml``/``*.yml`` file below the directory may hold several
    documents. The revision is the content of a ``REVISION`` file written by
    the checkout tooling, or a digest of all manifest files when absent.
    Hidden directories (``.git``) are skipped.
    """

    def __init__(self, path: str | Path, name: str, default_namespace: str = "default"):
        self.path = Path(path)
        self.name = name
        self.default_namespace = default_namespace

    async def load(self) -> DesiredSnapshot:
        return await asyncio.to_thread(self._load)

    def _read_files(self) -> tuple[str, list[tuple[str, bytes]]]:
        if not self.path.is_dir():
            raise SourceUnavailableError(
                self.name, f"{self.path} is not a readable directory"
            )
        try:
            files = sorted(
                p
                for p in self.path.rglob("*")
                if p.suffix in MANIFEST_SUFFIXES
                and p.is_file()
                and not any(
                    part.startswith(".") for part in p.relative_to(self.path).parts
                )
            )
            contents = [(p.relative_to(self.path).as_posix(), p.read_bytes()) for p in files]
            revision_file = self.path / REVISION_FILE
            revision = (
                revision_file.read_text().strip() if revision_file.is_file() else ""
            )
        except OSError as e:
            raise SourceUnavailableError(self.name, str(e)) from e

        if not revision:
            digest = hashlib.sha256()
            for relative, data in contents:
                digest.update(relative.encode())
                digest.update(b"\0")
                digest.update(data)
                digest.update(b"\0")
            revision = digest.hexdigest()
        return revision, contents

    def _load(self) -> DesiredSnapshot:
        revision, contents = self._read_files()
        units: dict[UnitKey, DesiredStateUnit] = {}
        errors: dict[str, UnitError] = {}

        for relative, data in contents:
            try:
                documents = list(yaml.safe_load_all(data))
            except yaml.YAMLError as e:
                errors[relative] = UnitError(
                    unit=relative,
                    error_type="ValidationError",
                    message=f"invalid YAML: {e}",
                )
                continue

            for index, document in enumerate(documents):
                if document is None:
                    continue
                ref = f"{relative}#{index}"
                try:
                    unit = DesiredStateUnit.from_manifest(
                        document,
                        revision,
                        source=self.name,
                        default_namespace=self.default_namespace,
                    )
                except ValidationError as e:
                    errors[ref] = UnitError(
                        unit=ref, error_type="ValidationError", message=e.message
                    )
                    continue
                if unit.key in units:
                    errors[ref] = UnitError(
                        unit=ref,
                        error_type="ValidationError",
                        message=f"duplicate declaration of {unit.key}",
                    )
                    continue
                units[unit.key] = unit

        logger.debug(
            f"Loaded {len(units)} units from {self.path} at revision {revision} "
            f"({len(errors)} invalid)"
        )
        return DesiredSnapshot(revision, tuple(units.values()), errors)


class WorkloadStore(Protocol):
    """
    Cluster workload API as seen by the reconciliation loop.

    ``expected_hash`` is a compare-and-swap on the stored revision hash:
    None means the object must not exist, "" matches an object without a
    recorded hash. A mismatch raises ConvergenceError.
    """

    async def list_managed(self, source: str) -> list[ObservedState]: ...

    async def get(self, key: UnitKey) -> ObservedState | None: ...

    async def apply(
        self, unit: DesiredStateUnit, body: ManifestBody, expected_hash: str | None
    ) -> ObservedState: ...

    async def delete(self, key: UnitKey, expected_hash: str | None) -> None: ...

    async def forget_source(self, source: str) -> None: ...


class InMemoryWorkloadStore:
    """Workload store kept in a dict, used in dry-run mode and tests."""

    def __init__(self) -> None:
        self.objects: dict[UnitKey, ManifestBody] = {}
        self.writes = 0
        self._resource_version = 0
        self._failures: dict[UnitKey, list[Exception]] = {}

    def _stored_hash(self, key: UnitKey) -> str | None:
        current = self.objects.get(key)
        if current is None:
            return None
        annotations = current.get("metadata", {}).get("annotations") or {}
        return annotations.get(REVISION_HASH_ANNOTATION, "")

    def _check(self, key: UnitKey, expected_hash: str | None) -> None:
        failures = self._failures.get(key)
        if failures:
            raise failures.pop(0)
        current_hash = self._stored_hash(key)
        if current_hash != expected_hash:
            raise ConvergenceError(
                str(key),
                f"revision hash changed concurrently "
                f"(expected {expected_hash}, found {current_hash})",
            )

    def fail_next(self, key: UnitKey, error: Exception, times: int = 1) -> None:
        """Make the next writes to key raise error."""
        self._failures.setdefault(key, []).extend([error] * times)

    def put(self, obj: ManifestBody) -> UnitKey:
        """Store an object as if created by someone else."""
        metadata = obj["metadata"]
        key = UnitKey(obj["kind"], metadata.get("namespace"), metadata["name"])
        self._resource_version += 1
        stored = copy.deepcopy(obj)
        stored["metadata"]["resourceVersion"] = str(self._resource_version)
        self.objects[key] = stored
        return key

    def mutate(self, key: UnitKey, fn: Callable[[ManifestBody], None]) -> None:
        """Apply an out-of-band change to a stored object."""
        fn(self.objects[key])
        self._resource_version += 1
        self.objects[key]["metadata"]["resourceVersion"] = str(self._resource_version)

    async def list_managed(self, source: str) -> list[ObservedState]:
        return [
            ObservedState.from_object(obj, source=source)
            for obj in self.objects.values()
            if is_owned_by_source(obj.get("metadata", {}).get("labels"), source)
        ]

    async def get(self, key: UnitKey) -> ObservedState | None:
        obj = self.objects.get(key)
        return ObservedState.from_object(obj) if obj is not None else None

    async def apply(
        self, unit: DesiredStateUnit, body: ManifestBody, expected_hash: str | None
    ) -> ObservedState:
        self._check(unit.key, expected_hash)
        previous = self.objects.get(unit.key)
        obj = copy.deepcopy(body)
        self._resource_version += 1
        obj["metadata"]["resourceVersion"] = str(self._resource_version)
        if previous is not None and "status" in previous:
            obj["status"] = previous["status"]
        self.objects[unit.key] = obj
        self.writes += 1
        return ObservedState.from_object(obj, source=unit.source)

    async def delete(self, key: UnitKey, expected_hash: str | None) -> None:
        if key not in self.objects:
            return
        self._check(key, expected_hash)
        del self.objects[key]
        self.writes += 1

    async def forget_source(self, source: str) -> None:
        return None


class ReconciliationLoop:
    """
    Converges one desired-state source into a workload store.

    Self-heal decides what happens to out-of-band changes on units whose
    declaration did not change: overwritten when enabled, reported as drift
    otherwise. A unit annotation overrides the loop-wide setting.
    """

    def __init__(
        self,
        store: WorkloadStore,
        admission: AdmissionController | None = None,
        *,
        source_id: str,
        self_heal: bool = False,
        prune: bool = True,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_backoff: float = DEFAULT_INITIAL_DELAY,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        max_concurrency: int = 8,
        events: EventRecorder | None = None,
    ):
        self.store = store
        self.admission = admission
        self.source_id = source_id
        self.self_heal = self_heal
        self.prune = prune
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.backoff_factor = backoff_factor
        self.events = events or get_event_recorder()
        self.log = OperatorLogger(self.__class__.__name__)

        self.last_converged_revision: str | None = None
        self.last_attempted_revision: str | None = None
        self.last_result: ReconcileResult | None = None
        self.degraded = False
        self.degraded_reason: str | None = None

        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._locks = KeyedLocks(f"reconcile:{source_id}")
        self._in_flight: set[asyncio.Task] = set()

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return self.initial_backoff * self.backoff_factor ** (attempt - 1)

    async def run_once(self, source: DesiredStateSource) -> ReconcileResult:
        """
        Load the current revision of a source and reconcile it.

        An unreadable source puts the loop in degraded mode: nothing is
        applied or pruned and the last converged state keeps serving.
        """
        try:
            snapshot = await source.load()
        except SourceUnavailableError as e:
            self._set_degraded(e.message)
            result = ReconcileResult(
                source=self.source_id,
                revision=self.last_converged_revision,
                degraded=True,
                degraded_reason=e.message,
            )
            self.last_result = result
            return result

        self._set_degraded(None)
        return await self.reconcile(snapshot.units, snapshot.revision, snapshot.errors)

    def _set_degraded(self, reason: str | None) -> None:
        degraded = reason is not None
        if degraded != self.degraded:
            self.events.emit(
                COMPONENT_RECONCILER,
                "load",
                "failed" if degraded else "recovered",
                reason or "desired-state source readable again",
                source=self.source_id,
            )
        self.degraded = degraded
        self.degraded_reason = reason
        metrics_collector.set_degraded(COMPONENT_RECONCILER, self.source_id, degraded)

    async def reconcile(
        self,
        desired: Iterable[DesiredStateUnit],
        revision: str | None = None,
        unit_errors: dict[str, UnitError] | None = None,
    ) -> ReconcileResult:
        """
        Converge the observed state towards the desired units.

        Args:
            desired: Units declared at ``revision``
            revision: Source revision the units were read from
            unit_errors: Units rejected while loading (never applied)

        Returns:
            Actions taken, per-unit errors and drift reports
        """
        units = list(desired)
        result = ReconcileResult(
            source=self.source_id, revision=revision, errors=dict(unit_errors or {})
        )
        self.last_attempted_revision = revision
        start = time.monotonic()
        self.log.log_reconciliation_start(self.source_id, revision)

        with tracer.start_as_current_span("reconciler.reconcile") as span:
            span.set_attribute("mesh.source", self.source_id)
            span.set_attribute("mesh.revision", revision or "")
            try:
                async with metrics_collector.track_reconciliation(self.source_id):
                    await self._reconcile_units(units, result)
            except Exception as e:
                self.log.log_reconciliation_error(
                    self.source_id,
                    revision,
                    time.monotonic() - start,
                    result.summary(),
                    error=e,
                )
                raise

        result.actions.sort(key=lambda a: (a.unit, a.action))
        result.drift.sort(key=lambda d: d.unit)
        summary = result.summary()
        metrics_collector.record_reconcile_result(self.source_id, summary)
        duration = time.monotonic() - start
        if result.converged:
            self.last_converged_revision = revision
            self.log.log_reconciliation_success(
                self.source_id, revision, duration, summary
            )
        else:
            self.log.log_reconciliation_error(
                self.source_id, revision, duration, summary
            )
        self.last_result = result
        return result

    async def _reconcile_units(
        self, units: list[DesiredStateUnit], result: ReconcileResult
    ) -> None:
        observed = {obs.key: obs for obs in await self.store.list_managed(self.source_id)}
        desired_keys = {unit.key for unit in units}

        jobs: list[Awaitable[None]] = [
            self._converge_unit(unit, observed.get(unit.key), result) for unit in units
        ]
        orphans = [obs for key, obs in observed.items() if key not in desired_keys]
        if orphans and self.prune:
            if result.errors:
                # An invalid manifest must not look like a deleted one
                logger.warning(
                    f"Skipping prune of {len(orphans)} objects for {self.source_id}: "
                    f"{len(result.errors)} declarations failed to load"
                )
            else:
                jobs.extend(self._prune_unit(obs, result) for obs in orphans)
        await asyncio.gather(*jobs)

    async def _run_with_retries(
        self,
        key: UnitKey,
        attempt_fn: Callable[[int], Awaitable[None]],
        result: ReconcileResult,
    ) -> None:
        async with self._locks.hold(key):
            attempt = 0
            while True:
                attempt += 1
                try:
                    async with self._semaphore:
                        await attempt_fn(attempt)
                    return
                except OperatorError as e:
                    error = e
                except Exception as e:
                    error = ConvergenceError(str(key), str(e))

                if not error.retryable or attempt > self.max_retries:
                    self._record_error(key, error, attempt, result)
                    return
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"Attempt {attempt} for {key} failed, retrying in {delay:.2f}s: "
                    f"{error.message}"
                )
                await asyncio.sleep(delay)

    def _record_error(
        self, key: UnitKey, error: OperatorError, attempts: int, result: ReconcileResult
    ) -> None:
        error_type = type(error).__name__
        result.errors[str(key)] = UnitError(
            unit=str(key),
            error_type=error_type,
            message=error.message,
            retryable=error.retryable,
            attempts=attempts,
        )
        metrics_collector.record_unit_error(self.source_id, error_type, error.retryable)
        self.events.emit(
            COMPONENT_RECONCILER,
            "apply",
            "denied" if isinstance(error, PolicyViolation) else "failed",
            error.message,
            source=self.source_id,
            unit=str(key),
            error_type=error_type,
        )

    async def _converge_unit(
        self,
        unit: DesiredStateUnit,
        observed: ObservedState | None,
        result: ReconcileResult,
    ) -> None:
        async def attempt(number: int) -> None:
            current = observed
            if number > 1 or current is None:
                # Re-read: the object may exist without our labels, or have
                # changed since the failed attempt
                current = await self.store.get(unit.key)
            await self._converge_once(unit, current, result)

        await self._run_with_retries(unit.key, attempt, result)

    async def _prune_unit(self, observed: ObservedState, result: ReconcileResult) -> None:
        async def attempt(number: int) -> None:
            current = observed if number == 1 else await self.store.get(observed.key)
            if current is None:
                return
            await self._write(self.store.delete(current.key, current.revision_hash))
            result.actions.append(
                ReconcileAction(
                    action="delete",
                    unit=str(current.key),
                    reason="no longer declared",
                    revision_hash=current.revision_hash or None,
                )
            )
            self._emit_applied("prune", current.key, "no longer declared")

        await self._run_with_retries(observed.key, attempt, result)

    def _self_heal_for(self, unit: DesiredStateUnit) -> bool:
        override = unit.self_heal_override
        return self.self_heal if override is None else override

    async def _converge_once(
        self,
        unit: DesiredStateUnit,
        observed: ObservedState | None,
        result: ReconcileResult,
    ) -> None:
        key = str(unit.key)
        desired_hash = unit.revision_hash

        if observed is None:
            await self._admit(unit)
            await self._write(
                self.store.apply(unit, self._render(unit, unit.body), None)
            )
            result.actions.append(
                ReconcileAction(
                    action="create",
                    unit=key,
                    reason="not present in cluster",
                    revision_hash=desired_hash,
                )
            )
            self._emit_applied("create", unit.key, "not present in cluster")
            return

        labels = observed.live.get("metadata", {}).get("labels")
        if is_managed_by_operator(labels) and not is_owned_by_source(
            labels, self.source_id
        ):
            raise ConvergenceError(
                key,
                f"object is managed by source '{(labels or {}).get(SOURCE_LABEL_KEY)}', "
                f"not '{source_label_value(self.source_id)}'",
                retryable=False,
            )

        self_heal = self._self_heal_for(unit)
        live = normalize_manifest(strip_ownership(observed.live))

        if observed.revision_hash != desired_hash:
            reason = (
                "adopting existing object"
                if not observed.revision_hash
                else "declaration changed"
            )
            await self._admit(unit)
            merged = three_way_merge(
                observed.last_applied or None, unit.body, live, overwrite_drift=self_heal
            )
            await self._write(
                self.store.apply(
                    unit, self._render(unit, merged), observed.revision_hash
                )
            )
            result.actions.append(
                ReconcileAction(
                    action="update", unit=key, reason=reason, revision_hash=desired_hash
                )
            )
            self._emit_applied("update", unit.key, reason)
            if observed.last_applied:
                # Out-of-band changes the merge kept or overwrote
                differences = calculate_drift(observed.last_applied, live)
                if differences:
                    self._report_drift(key, differences, self_heal, result)
            return

        differences = calculate_drift(observed.last_applied or unit.body, live)
        if not differences:
            return

        if not self_heal:
            self._report_drift(key, differences, False, result)
            return

        await self._admit(unit)
        merged = three_way_merge(
            observed.last_applied or None, unit.body, live, overwrite_drift=True
        )
        await self._write(
            self.store.apply(unit, self._render(unit, merged), observed.revision_hash)
        )
        result.actions.append(
            ReconcileAction(
                action="update",
                unit=key,
                reason="drift healed",
                revision_hash=desired_hash,
            )
        )
        self._report_drift(key, differences, True, result)

    def _report_drift(
        self, key: str, differences: list[str], healed: bool, result: ReconcileResult
    ) -> None:
        result.drift.append(DriftReport(unit=key, differences=differences, healed=healed))
        self.events.emit(
            COMPONENT_RECONCILER,
            "drift",
            "healed" if healed else "reported",
            "; ".join(differences),
            source=self.source_id,
            unit=key,
        )

    async def _admit(self, unit: DesiredStateUnit) -> None:
        if self.admission is None:
            return
        decision = await self.admission.admit_with_timeout(unit.body, unit.namespace)
        if decision.allowed:
            return
        constraint = decision.constraint or "admission"
        message = decision.reason
        prefix = f"Denied by constraint '{constraint}': "
        if message.startswith(prefix):
            message = message[len(prefix) :]
        raise PolicyViolation(constraint, message, decision.violations)

    def _render(self, unit: DesiredStateUnit, body: ManifestBody) -> ManifestBody:
        """Attach ownership labels and last-applied annotations to a body."""
        rendered = copy.deepcopy(body)
        metadata = rendered.setdefault("metadata", {})
        metadata["labels"] = {
            **(metadata.get("labels") or {}),
            **managed_labels(self.source_id),
        }
        metadata["annotations"] = {
            **(metadata.get("annotations") or {}),
            **ownership_annotations(unit.revision_hash, unit.source_revision, unit.body),
        }
        return rendered

    async def _write[T](self, operation: Awaitable[T]) -> T:
        # The store call runs as its own task: cancelling the pass abandons
        # the wait, not the write
        task = asyncio.ensure_future(operation)
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait for writes that outlived a cancelled pass."""
        if self._in_flight:
            logger.info(
                f"Waiting for {len(self._in_flight)} in-flight writes of {self.source_id}"
            )
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    def _emit_applied(self, action: str, key: UnitKey, reason: str) -> None:
        self.events.emit(
            COMPONENT_RECONCILER,
            action,
            "applied",
            reason,
            source=self.source_id,
            unit=str(key),
            resource_type=key.kind,
            resource_name=key.name,
            namespace=key.namespace,
        )
