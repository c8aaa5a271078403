"""
Pydantic models for desired and observed workload state.

A DesiredStateUnit is one declaration read from a specific source revision.
It is never mutated: a newer revision produces a new unit. ObservedState is
the live counterpart and is only written by the reconciliation loop.
"""

import copy
from typing import Any, Literal, NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from ..constants import (
    REVISION_HASH_ANNOTATION,
    SELF_HEAL_ANNOTATION,
    SOURCE_REVISION_ANNOTATION,
)
from ..errors import ValidationError
from ..utils.hashing import content_hash
from ..utils.ownership import read_last_applied
from .types import ManifestBody

# Kinds that never carry a namespace
CLUSTER_SCOPED_KINDS = frozenset(
    {
        "Namespace",
        "ClusterRole",
        "ClusterRoleBinding",
        "CustomResourceDefinition",
        "PersistentVolume",
        "StorageClass",
        "MeshConstraintTemplate",
        "MeshConstraint",
    }
)

# Server-populated metadata that is not part of the declaration
VOLATILE_METADATA = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
    "managedFields",
    "selfLink",
)


class UnitKey(NamedTuple):
    """Identity of a workload across desired and observed state."""

    kind: str
    namespace: str | None
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


def normalize_manifest(manifest: ManifestBody) -> ManifestBody:
    """Drop status and server-populated metadata from a manifest copy."""
    body = copy.deepcopy(manifest)
    body.pop("status", None)
    metadata = body.get("metadata") or {}
    for field in VOLATILE_METADATA:
        metadata.pop(field, None)
    body["metadata"] = metadata
    return body


class DesiredStateUnit(BaseModel):
    """A named, versioned declaration of a workload or policy."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    api_version: str = Field(..., alias="apiVersion")
    kind: str
    name: str
    namespace: str | None = None
    body: ManifestBody = Field(
        ..., description="Normalized manifest managed by the operator"
    )
    source: str = Field("", description="Source the unit was read from")
    source_revision: str = Field(..., alias="sourceRevision")

    @classmethod
    def from_manifest(
        cls,
        manifest: Any,
        source_revision: str,
        source: str = "",
        default_namespace: str = "default",
    ) -> "DesiredStateUnit":
        """
        Build a unit from a parsed manifest document.

        Raises:
            ValidationError: If the document is not a well-formed manifest
        """
        if not isinstance(manifest, dict):
            raise ValidationError("manifest must be a mapping")

        api_version = manifest.get("apiVersion")
        kind = manifest.get("kind")
        metadata = manifest.get("metadata")
        if not isinstance(api_version, str) or not api_version:
            raise ValidationError("apiVersion is required", field="apiVersion")
        if not isinstance(kind, str) or not kind:
            raise ValidationError("kind is required", field="kind")
        if not isinstance(metadata, dict) or not metadata.get("name"):
            raise ValidationError("metadata.name is required", field="metadata.name")

        body = normalize_manifest(manifest)
        if kind in CLUSTER_SCOPED_KINDS:
            namespace = None
            body["metadata"].pop("namespace", None)
        else:
            namespace = metadata.get("namespace") or default_namespace
            body["metadata"]["namespace"] = namespace

        return cls(
            api_version=api_version,
            kind=kind,
            name=str(metadata["name"]),
            namespace=namespace,
            body=body,
            source=source,
            source_revision=source_revision,
        )

    @property
    def key(self) -> UnitKey:
        return UnitKey(self.kind, self.namespace, self.name)

    @property
    def revision_hash(self) -> str:
        """Hash of the managed payload, independent of the source revision."""
        return content_hash(self.body)

    @property
    def self_heal_override(self) -> bool | None:
        """Per-unit self-heal setting from annotations, if declared."""
        annotations = self.body.get("metadata", {}).get("annotations") or {}
        value = annotations.get(SELF_HEAL_ANNOTATION)
        if value is None:
            return None
        return str(value).lower() == "true"


class ObservedState(BaseModel):
    """The currently running representation of a DesiredStateUnit."""

    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field(..., alias="apiVersion")
    kind: str
    name: str
    namespace: str | None = None
    source: str = ""
    revision_hash: str = Field(..., alias="revisionHash")
    source_revision: str = Field("", alias="sourceRevision")
    last_applied: ManifestBody = Field(default_factory=dict, alias="lastApplied")
    live: ManifestBody = Field(default_factory=dict)
    status: str = "Unknown"
    replicas: int | None = None
    resource_version: str | None = Field(None, alias="resourceVersion")

    @property
    def key(self) -> UnitKey:
        return UnitKey(self.kind, self.namespace, self.name)

    @classmethod
    def from_object(cls, obj: ManifestBody, source: str = "") -> "ObservedState":
        """Build observed state from a live object written by the operator."""
        metadata = obj.get("metadata") or {}
        annotations = metadata.get("annotations") or {}
        status = obj.get("status") or {}
        replicas = status.get("readyReplicas")
        if replicas is None:
            replicas = (obj.get("spec") or {}).get("replicas")
        ready = any(
            c.get("type") in ("Ready", "Available") and c.get("status") == "True"
            for c in status.get("conditions") or []
        )
        return cls(
            api_version=obj.get("apiVersion", ""),
            kind=obj.get("kind", ""),
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace"),
            source=source,
            revision_hash=annotations.get(REVISION_HASH_ANNOTATION, ""),
            source_revision=annotations.get(SOURCE_REVISION_ANNOTATION, ""),
            last_applied=read_last_applied(annotations) or {},
            live=obj,
            status="Ready" if ready else ("Unknown" if not status else "Progressing"),
            replicas=replicas,
            resource_version=metadata.get("resourceVersion"),
        )


ActionType = Literal["create", "update", "delete"]


class ReconcileAction(BaseModel):
    """A change issued by the reconciliation loop."""

    model_config = ConfigDict(frozen=True)

    action: ActionType
    unit: str
    reason: str
    revision_hash: str | None = None


class UnitError(BaseModel):
    """A per-unit failure surfaced in the reconcile result."""

    unit: str
    error_type: str
    message: str
    retryable: bool = False
    attempts: int = 0


class DriftReport(BaseModel):
    """Out-of-band changes detected on a live object."""

    unit: str
    differences: list[str] = Field(default_factory=list)
    healed: bool = False


class ReconcileResult(BaseModel):
    """Outcome of one reconciliation pass."""

    source: str = ""
    revision: str | None = None
    actions: list[ReconcileAction] = Field(default_factory=list)
    errors: dict[str, UnitError] = Field(default_factory=dict)
    drift: list[DriftReport] = Field(default_factory=list)
    degraded: bool = False
    degraded_reason: str | None = None

    @property
    def converged(self) -> bool:
        return not self.degraded and not self.errors

    def summary(self) -> dict[str, Any]:
        """Counts suitable for status patches and log lines."""
        counts = {"create": 0, "update": 0, "delete": 0}
        for action in self.actions:
            counts[action.action] += 1
        return {
            "revision": self.revision,
            "created": counts["create"],
            "updated": counts["update"],
            "deleted": counts["delete"],
            "errors": len(self.errors),
            "drifted": len(self.drift),
            "degraded": self.degraded,
            "converged": self.converged,
        }
