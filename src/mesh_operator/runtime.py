"""
Process-wide wiring of the control plane components.

kopf handlers, webhooks, the gateway and the health checks all reach the
same component instances through get_control_plane(). Components share no
mutable state with each other beyond the versioned snapshots they expose.
"""

import logging
from dataclasses import dataclass, field

from .errors import ConfigurationError
from .models.source import MeshSourceSpec
from .observability.events import EventRecorder, get_event_recorder
from .services.admission import AdmissionController
from .services.policy_engine import PolicyDecisionEngine, StaticIdentityProvider
from .services.reconciler import (
    InMemoryWorkloadStore,
    ManifestDirectorySource,
    ReconciliationLoop,
    WorkloadStore,
)
from .services.router import TrafficRouter
from .services.secret_sync import (
    CertificateRegistry,
    LocalSecretWriter,
    SecretSynchronizer,
)
from .settings import settings
from .utils.kubernetes import KubernetesWorkloadStore
from .utils.secret_manager import InMemorySecretSink, SecretManager
from .utils.secret_store import ExternalSecretStore, InMemorySecretStore, VaultKVStore

logger = logging.getLogger(__name__)

DEFAULT_STORE_NAME = "vault"


@dataclass
class ControlPlane:
    """The five components plus the stores they converge into."""

    events: EventRecorder
    identity_provider: StaticIdentityProvider
    policy_engine: PolicyDecisionEngine
    admission: AdmissionController
    certificates: CertificateRegistry
    secret_sync: SecretSynchronizer
    router: TrafficRouter
    workload_store: WorkloadStore
    loops: dict[str, ReconciliationLoop] = field(default_factory=dict)

    def loop_for(self, source_id: str, spec: MeshSourceSpec) -> ReconciliationLoop:
        """
        Reconciliation loop of a MeshSource, created on first use.

        Sync policy changes are applied to an existing loop in place so its
        converged revision and degraded state survive spec updates.
        """
        policy = spec.sync_policy
        self_heal = (
            settings.reconcile_self_heal if policy.self_heal is None else policy.self_heal
        )
        prune = settings.reconcile_prune if policy.prune is None else policy.prune

        loop = self.loops.get(source_id)
        if loop is None:
            loop = ReconciliationLoop(
                self.workload_store,
                self.admission,
                source_id=source_id,
                self_heal=self_heal,
                prune=prune,
                max_retries=settings.reconcile_max_retries,
                initial_backoff=settings.reconcile_initial_backoff_seconds,
                backoff_factor=settings.reconcile_backoff_factor,
                max_concurrency=settings.reconcile_max_concurrency,
                events=self.events,
            )
            self.loops[source_id] = loop
        else:
            loop.self_heal = self_heal
            loop.prune = prune
        return loop

    def source_for(self, source_id: str, spec: MeshSourceSpec) -> ManifestDirectorySource:
        namespace = source_id.split("/", 1)[0]
        return ManifestDirectorySource(
            spec.path, name=source_id, default_namespace=spec.default_namespace or namespace
        )

    def forget_source(self, source_id: str) -> ReconciliationLoop | None:
        return self.loops.pop(source_id, None)

    async def drain(self) -> None:
        """Let writes that outlived cancelled passes finish."""
        for loop in list(self.loops.values()):
            await loop.drain()

    async def aclose(self) -> None:
        await self.drain()
        for store in self.secret_sync.stores.values():
            close = getattr(store, "aclose", None)
            if close is not None:
                await close()


def build_secret_stores(dry_run: bool) -> dict[str, ExternalSecretStore]:
    if dry_run:
        return {DEFAULT_STORE_NAME: InMemorySecretStore(DEFAULT_STORE_NAME)}
    if not settings.secret_store_url:
        raise ConfigurationError("SECRET_STORE_URL must be set")
    return {
        DEFAULT_STORE_NAME: VaultKVStore(
            name=DEFAULT_STORE_NAME,
            server_url=settings.secret_store_url,
            role=settings.secret_store_role,
            token_path=settings.secret_store_token_path,
            auth_path=settings.secret_store_auth_path,
            timeout=settings.secret_store_timeout_seconds,
            breaker_fail_max=settings.secret_store_breaker_fail_max,
            breaker_reset_seconds=settings.secret_store_breaker_reset_seconds,
        )
    }


def build_control_plane(
    dry_run: bool | None = None,
    workload_store: WorkloadStore | None = None,
    secret_writer: LocalSecretWriter | None = None,
    secret_stores: dict[str, ExternalSecretStore] | None = None,
) -> ControlPlane:
    """
    Assemble the control plane from operator settings.

    In dry-run mode every store is in-memory, so nothing reaches the cluster
    or the external secret store.
    """
    dry_run = settings.dry_run if dry_run is None else dry_run
    events = get_event_recorder()
    identity_provider = StaticIdentityProvider()
    certificates = CertificateRegistry()

    if workload_store is None:
        workload_store = InMemoryWorkloadStore() if dry_run else KubernetesWorkloadStore()
    if secret_writer is None:
        secret_writer = InMemorySecretSink() if dry_run else SecretManager()
    if secret_stores is None:
        secret_stores = build_secret_stores(dry_run)

    control_plane = ControlPlane(
        events=events,
        identity_provider=identity_provider,
        policy_engine=PolicyDecisionEngine(
            identity_provider,
            timeout=settings.authorization_timeout_seconds,
            clock_skew_seconds=settings.identity_clock_skew_seconds,
            events=events,
        ),
        admission=AdmissionController(
            timeout=settings.admission_timeout_seconds, events=events
        ),
        certificates=certificates,
        secret_sync=SecretSynchronizer(
            secret_stores,
            secret_writer,
            certificates=certificates,
            events=events,
            backoff_base=settings.secret_sync_backoff_base_seconds,
            max_backoff=settings.secret_sync_max_backoff_seconds,
        ),
        router=TrafficRouter(certificates, events=events),
        workload_store=workload_store,
    )
    logger.info(
        f"Control plane assembled ({'dry-run' if dry_run else 'cluster'} mode, "
        f"secret stores: {', '.join(secret_stores)})"
    )
    return control_plane


_control_plane: ControlPlane | None = None


def get_control_plane() -> ControlPlane:
    """Get the global control plane, building it on first use."""
    global _control_plane
    if _control_plane is None:
        _control_plane = build_control_plane()
    return _control_plane


def set_control_plane(control_plane: ControlPlane | None) -> None:
    """Replace the global control plane (None resets it)."""
    global _control_plane
    _control_plane = control_plane
