"""
Pydantic models for MeshSource resources.

A MeshSource points the reconciliation loop at a checkout of manifests and
sets how it converges them.
"""

from pydantic import BaseModel, Field, field_validator


class SyncPolicy(BaseModel):
    """Convergence options; unset fields fall back to operator settings."""

    model_config = {"populate_by_name": True}

    self_heal: bool | None = Field(
        None,
        alias="selfHeal",
        description="Overwrite out-of-band changes instead of reporting drift",
    )
    prune: bool | None = Field(
        None, description="Delete workloads that are no longer declared"
    )


class MeshSourceSpec(BaseModel):
    """Specification of a MeshSource resource."""

    model_config = {"populate_by_name": True}

    path: str = Field(..., description="Directory holding the manifest checkout")
    default_namespace: str | None = Field(
        None,
        alias="defaultNamespace",
        description="Namespace for manifests that do not set one",
    )
    interval_seconds: int | None = Field(None, alias="intervalSeconds", ge=5)
    sync_policy: SyncPolicy = Field(default_factory=SyncPolicy, alias="syncPolicy")
    suspend: bool = Field(False, description="Stop reconciling without deleting")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v):
        if not v.startswith("/"):
            raise ValueError("path must be absolute")
        return v
