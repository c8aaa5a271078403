"""
Secret synchronizer.

Pulls values from external secret stores into local Kubernetes secrets.
Each sync fetches the value, hashes it and only writes the local secret
when the hash differs from the one recorded on the local secret (a missing
local secret is always re-materialized). A failed fetch never touches the
local secret: the last known good value keeps serving while the failure is
reported and retried with backoff.

At most one sync runs per binding; an overlapping call returns
``in_progress`` without fetching. Deleting a binding waits for its sync to
finish and then deletes the local secret.

Bindings of type ``kubernetes.io/tls`` also publish their certificate into
the CertificateRegistry read by the traffic router.
"""

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Protocol

from ..constants import (
    COMPONENT_SECRET_SYNC,
    PHASE_DEGRADED,
    PHASE_PENDING,
    PHASE_READY,
)
from ..errors import (
    ConfigurationError,
    OperatorError,
    SecretStoreUnavailable,
    TransientFetchError,
)
from ..models.secret import ExternalSecretBinding, SyncResult, TlsCertificate
from ..models.types import SecretData
from ..observability.events import EventRecorder, get_event_recorder
from ..observability.metrics import metrics_collector
from ..observability.tracing import get_tracer
from ..utils.certificates import tls_certificate_from_secret
from ..utils.hashing import content_hash
from ..utils.locks import KeyedLocks
from ..utils.secret_store import ExternalSecretStore
from .snapshots import SnapshotStore

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

TLS_SECRET_TYPE = "kubernetes.io/tls"


class LocalSecretWriter(Protocol):
    """The cluster's local secret store."""

    async def read_hash(self, namespace: str, name: str) -> str | None: ...

    async def materialize(
        self,
        binding: ExternalSecretBinding,
        data: SecretData,
        value_hash: str,
        version: str | None,
    ) -> None: ...

    async def delete(self, namespace: str, name: str) -> bool: ...


@dataclass(frozen=True)
class _Published:
    certificate: TlsCertificate
    sequence: int


class CertificateRegistry:
    """
    Most recently synced TLS material, keyed by binding.

    Readers get an immutable view; publish/withdraw swap in a new one.
    """

    def __init__(self) -> None:
        self._store: SnapshotStore[Mapping[str, _Published]] = SnapshotStore(
            MappingProxyType({}), name="certificates"
        )
        self._sequence = 0
        self._lock = threading.Lock()

    def publish(self, binding_id: str, certificate: TlsCertificate) -> None:
        with self._lock:
            self._sequence += 1
            entry = _Published(certificate, self._sequence)
        self._store.update(lambda m: MappingProxyType({**m, binding_id: entry}))
        metrics_collector.record_certificate(
            binding_id, certificate.not_after.timestamp()
        )

    def withdraw(self, binding_id: str) -> None:
        self._store.update(
            lambda m: MappingProxyType({k: v for k, v in m.items() if k != binding_id})
        )

    def value_hashes(self) -> frozenset[str]:
        """Value hashes of every published certificate."""
        return frozenset(
            entry.certificate.value_hash for entry in self._store.current().value.values()
        )

    def get(self, binding_id: str) -> TlsCertificate | None:
        entry = self._store.current().value.get(binding_id)
        return entry.certificate if entry else None

    def lookup(self, host: str) -> TlsCertificate | None:
        """
        Certificate to terminate TLS for host.

        Exact host entries win over wildcards; among equals the most
        recently synced one is returned. Expiry is left to the caller.
        """
        host = host.lower()
        best: tuple[int, int] | None = None
        found: TlsCertificate | None = None
        for entry in self._store.current().value.values():
            cert = entry.certificate
            if not cert.covers(host):
                continue
            rank = (1 if host in cert.hosts else 0, entry.sequence)
            if best is None or rank > best:
                best, found = rank, cert
        return found

    def __len__(self) -> int:
        return len(self._store.current().value)


class SecretSynchronizer:
    """Keeps local secrets eventually consistent with external stores."""

    def __init__(
        self,
        stores: Mapping[str, ExternalSecretStore],
        writer: LocalSecretWriter,
        certificates: CertificateRegistry | None = None,
        events: EventRecorder | None = None,
        backoff_base: float = 5.0,
        max_backoff: float = 300.0,
    ):
        self.stores = dict(stores)
        self.writer = writer
        self.certificates = certificates or CertificateRegistry()
        self.events = events or get_event_recorder()
        self.backoff_base = backoff_base
        self.max_backoff = max_backoff
        self.bindings: dict[str, ExternalSecretBinding] = {}
        self._locks = KeyedLocks("secret-sync")
        self._in_flight: set[str] = set()
        self._degraded: dict[str, str] = {}
        self._superseded: dict[str, ExternalSecretBinding] = {}

    def register(self, binding: ExternalSecretBinding) -> ExternalSecretBinding:
        """
        Track a declared binding.

        Re-registering an updated declaration keeps the sync bookkeeping
        unless the external reference or the target changed. A replaced
        binding is kept until release_superseded() cleans up after it.
        """
        existing = self.bindings.get(binding.binding_id)
        if existing is not None and (
            existing.ref == binding.ref and existing.target == binding.target
        ):
            existing.refresh_interval = binding.refresh_interval
            existing.tls_hosts = list(binding.tls_hosts)
            return existing
        if existing is not None:
            self._superseded.setdefault(binding.binding_id, existing)
        self.bindings[binding.binding_id] = binding
        return binding

    async def release_superseded(self, binding_id: str) -> bool:
        """
        Clean up after a binding replaced by register().

        Withdraws the old certificate and deletes the old local secret when
        the target name moved.

        Returns:
            True if a local secret was deleted
        """
        async with self._locks.hold(binding_id):
            old = self._superseded.pop(binding_id, None)
            current = self.bindings.get(binding_id)
            if old is None:
                return False
            self.certificates.withdraw(binding_id)
            if current is not None and current.target.name == old.target.name:
                return False
            deleted = await self.writer.delete(old.namespace, old.target.name)
        if deleted:
            logger.info(
                f"Deleted secret {old.namespace}/{old.target.name} "
                f"no longer targeted by {binding_id}"
            )
        self.events.emit(
            COMPONENT_SECRET_SYNC,
            "delete",
            "applied" if deleted else "unchanged",
            "binding target changed",
            binding=binding_id,
            namespace=old.namespace,
            resource_name=old.target.name,
        )
        return deleted

    def get(self, binding_id: str) -> ExternalSecretBinding | None:
        return self.bindings.get(binding_id)

    def degraded_stores(self) -> dict[str, str]:
        """Stores currently unreachable, with the last failure reason."""
        return dict(self._degraded)

    def is_syncing(self, binding_id: str) -> bool:
        return binding_id in self._in_flight

    def next_delay(self, binding: ExternalSecretBinding) -> float:
        """Seconds until the next sync of a binding."""
        if binding.consecutive_failures == 0:
            return float(binding.refresh_interval)
        delay = self.backoff_base * 2 ** (binding.consecutive_failures - 1)
        return min(self.max_backoff, delay)

    async def sync(self, binding: ExternalSecretBinding) -> SyncResult:
        """
        Synchronize one binding.

        Returns:
            The outcome; failures are reported, never raised
        """
        binding_id = binding.binding_id
        if binding_id in self._in_flight:
            logger.debug(f"Sync of {binding_id} already running, coalescing")
            metrics_collector.record_secret_sync(
                binding.namespace,
                binding.name,
                "in_progress",
                binding.consecutive_failures,
            )
            return SyncResult(binding=binding_id, outcome="in_progress")

        self._in_flight.add(binding_id)
        try:
            async with self._locks.hold(binding_id):
                with tracer.start_as_current_span("secret_sync.sync") as span:
                    span.set_attribute("mesh.binding", binding_id)
                    result = await self._sync(binding)
                    span.set_attribute("mesh.outcome", result.outcome)
        finally:
            self._in_flight.discard(binding_id)

        metrics_collector.record_secret_sync(
            binding.namespace, binding.name, result.outcome, binding.consecutive_failures
        )
        self.events.emit(
            COMPONENT_SECRET_SYNC,
            "sync",
            result.outcome,
            result.error or f"value hash {result.value_hash}",
            binding=binding_id,
            namespace=binding.namespace,
            resource_name=binding.target.name,
            error_type=result.error_type,
        )
        return result

    async def _sync(self, binding: ExternalSecretBinding) -> SyncResult:
        store = self.stores.get(binding.ref.store)
        if store is None:
            return self._failed(
                binding,
                ConfigurationError(f"unknown secret store '{binding.ref.store}'"),
            )

        try:
            value = await store.fetch(binding.ref)
        except SecretStoreUnavailable as e:
            self._mark_store(binding.ref.store, e.message)
            return self._failed(binding, e)
        except TransientFetchError as e:
            # The store answered; only this key is affected
            self._mark_store(binding.ref.store, None)
            return self._failed(binding, e)
        except Exception as e:
            logger.error(
                f"Unexpected failure fetching {binding.binding_id} from "
                f"{binding.ref.store}: {e}",
                exc_info=True,
            )
            return self._failed(
                binding,
                TransientFetchError(
                    binding.ref.store, binding.ref.key, f"unexpected {type(e).__name__}"
                ),
            )
        self._mark_store(binding.ref.store, None)

        value_hash = content_hash(value.data)
        certificate = None
        try:
            if binding.target.type == TLS_SECRET_TYPE:
                certificate = tls_certificate_from_secret(
                    value.data, binding.tls_hosts, value_hash, source=binding.binding_id
                )
            current_hash = await self.writer.read_hash(
                binding.namespace, binding.target.name
            )
            outcome = "unchanged"
            if current_hash != value_hash:
                await self.writer.materialize(binding, value.data, value_hash, value.version)
                outcome = "synced"
        except OperatorError as e:
            return self._failed(binding, e)

        if certificate is not None:
            self.certificates.publish(binding.binding_id, certificate)
        binding.record_success(value_hash, value.version)
        if outcome == "synced":
            logger.info(
                f"Synced {binding.binding_id} into secret "
                f"{binding.namespace}/{binding.target.name}"
            )
        return SyncResult(binding=binding.binding_id, outcome=outcome, value_hash=value_hash)

    def _failed(self, binding: ExternalSecretBinding, error: OperatorError) -> SyncResult:
        binding.record_failure(error.message)
        logger.warning(
            f"Sync of {binding.binding_id} failed "
            f"({binding.consecutive_failures} in a row): {error.message}"
        )
        return SyncResult(
            binding=binding.binding_id,
            outcome="failed",
            value_hash=binding.last_synced_hash,
            error=error.message,
            error_type=type(error).__name__,
        )

    def _mark_store(self, store: str, reason: str | None) -> None:
        was_degraded = store in self._degraded
        if reason is None:
            self._degraded.pop(store, None)
        else:
            self._degraded[store] = reason
        if was_degraded != (reason is not None):
            self.events.emit(
                COMPONENT_SECRET_SYNC,
                "store",
                "failed" if reason else "recovered",
                reason or f"secret store '{store}' reachable again",
                target=store,
            )
            metrics_collector.set_degraded(COMPONENT_SECRET_SYNC, store, reason is not None)

    async def remove(self, binding: ExternalSecretBinding) -> bool:
        """
        Forget a binding and delete its local secret.

        Returns:
            True if a local secret was deleted
        """
        binding_id = binding.binding_id
        async with self._locks.hold(binding_id):
            deleted = await self.writer.delete(binding.namespace, binding.target.name)
            self.certificates.withdraw(binding_id)
            self.bindings.pop(binding_id, None)
            superseded = self._superseded.pop(binding_id, None)
            if superseded is not None and superseded.target.name != binding.target.name:
                await self.writer.delete(superseded.namespace, superseded.target.name)
        metrics_collector.forget_binding(binding.namespace, binding.name)
        self.events.emit(
            COMPONENT_SECRET_SYNC,
            "delete",
            "applied" if deleted else "unchanged",
            "binding removed",
            binding=binding_id,
            namespace=binding.namespace,
            resource_name=binding.target.name,
        )
        return deleted

    def status(self, binding: ExternalSecretBinding) -> dict:
        """Status fields for the ExternalSecret resource."""
        if binding.consecutive_failures:
            phase = PHASE_DEGRADED
        elif binding.last_synced_hash is None:
            phase = PHASE_PENDING
        else:
            phase = PHASE_READY
        return {
            "phase": phase,
            "lastSyncedHash": binding.last_synced_hash,
            "lastSyncTime": (
                binding.last_synced_at.isoformat() if binding.last_synced_at else None
            ),
            "externalVersion": binding.external_version,
            "lastError": binding.last_error,
            "consecutiveFailures": binding.consecutive_failures,
            "observedAt": datetime.now(UTC).isoformat(),
        }
