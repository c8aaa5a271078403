"""
Pydantic models for external secret bindings and synced TLS material.

An ExternalSecretBinding links a key in the external store to a local
Kubernetes secret. Its sync fields are updated after every successful sync;
the binding is removed only when its declaration is deleted.
"""

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..constants import DEFAULT_SECRET_REFRESH_SECONDS
from .types import SecretData


class ExternalReference(BaseModel):
    """Location of a value in the external secret store."""

    model_config = {"populate_by_name": True}

    store: str = Field(..., description="Name of the external store")
    key: str = Field(..., description="Path of the secret within the store")
    property: str | None = Field(
        None, description="Single property to extract; all properties when unset"
    )


class SecretTarget(BaseModel):
    """Local secret the external value is materialized into."""

    model_config = {"populate_by_name": True}

    name: str
    type: Literal["Opaque", "kubernetes.io/tls"] = "Opaque"


class ExternalSecretSpec(BaseModel):
    """Specification of an ExternalSecret resource."""

    model_config = {"populate_by_name": True}

    store_ref: str = Field(..., alias="storeRef")
    remote_key: str = Field(..., alias="remoteKey")
    property: str | None = None
    target: SecretTarget
    refresh_interval: int = Field(
        DEFAULT_SECRET_REFRESH_SECONDS, alias="refreshInterval", ge=1
    )
    tls_hosts: list[str] = Field(default_factory=list, alias="tlsHosts")

    def to_binding(self, name: str, namespace: str) -> "ExternalSecretBinding":
        return ExternalSecretBinding(
            name=name,
            namespace=namespace,
            ref=ExternalReference(
                store=self.store_ref, key=self.remote_key, property=self.property
            ),
            target=self.target,
            refresh_interval=self.refresh_interval,
            tls_hosts=self.tls_hosts,
        )


class ExternalSecretBinding(BaseModel):
    """A declared link between an external value and a local secret."""

    model_config = {"populate_by_name": True}

    name: str
    namespace: str
    ref: ExternalReference
    target: SecretTarget
    refresh_interval: int = Field(DEFAULT_SECRET_REFRESH_SECONDS, ge=1)
    tls_hosts: list[str] = Field(default_factory=list)

    # Sync bookkeeping
    last_synced_hash: str | None = None
    last_synced_at: datetime | None = None
    external_version: str | None = None
    last_error: str | None = None
    consecutive_failures: int = 0

    @property
    def binding_id(self) -> str:
        return f"{self.namespace}/{self.name}"

    def record_success(self, value_hash: str, version: str | None) -> None:
        self.last_synced_hash = value_hash
        self.last_synced_at = datetime.now(UTC)
        self.external_version = version
        self.last_error = None
        self.consecutive_failures = 0

    def record_failure(self, error: str) -> None:
        self.last_error = error
        self.consecutive_failures += 1


class ExternalSecretValue(BaseModel):
    """A value fetched from the external store."""

    data: SecretData
    version: str | None = None


SyncOutcome = Literal["synced", "unchanged", "failed", "in_progress"]


class SyncResult(BaseModel):
    """Outcome of a single sync attempt for one binding."""

    binding: str
    outcome: SyncOutcome
    value_hash: str | None = None
    error: str | None = None
    error_type: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in ("synced", "unchanged")


class TlsCertificate(BaseModel):
    """A certificate/key pair materialized by the secret synchronizer."""

    model_config = ConfigDict(frozen=True)

    hosts: tuple[str, ...]
    cert_pem: str
    key_pem: str
    not_after: datetime
    value_hash: str
    source: str = ""

    @field_validator("hosts", mode="before")
    @classmethod
    def normalize_hosts(cls, v):
        return tuple(h.lower() for h in v)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.not_after

    def covers(self, host: str) -> bool:
        host = host.lower()
        for pattern in self.hosts:
            if pattern == host:
                return True
            if pattern.startswith("*."):
                suffix = pattern[1:]
                label = host[: -len(suffix)]
                # Wildcards cover exactly one label
                if host.endswith(suffix) and label and "." not in label:
                    return True
        return False
