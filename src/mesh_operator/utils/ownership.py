"""
Ownership tracking for objects written by the mesh operator.

Workloads applied by the reconciliation loop and secrets materialized by the
secret synchronizer carry labels naming the operator and the declaring
source, plus annotations recording what was last applied. Only objects
carrying these labels are ever pruned.
"""

import json
from typing import Any

from ..constants import (
    BINDING_LABEL_KEY,
    LAST_APPLIED_ANNOTATION,
    OPERATOR_LABEL_KEY,
    OPERATOR_LABEL_VALUE,
    REVISION_HASH_ANNOTATION,
    SOURCE_LABEL_KEY,
    SOURCE_REVISION_ANNOTATION,
)
from ..models.types import ManifestBody


def source_label_value(source: str) -> str:
    """
    Encode a source id ("namespace/name") as a label value.

    Label values may not contain '/', so it is replaced by '.'.
    """
    return source.replace("/", ".")


def binding_label_value(binding_id: str) -> str:
    return binding_id.replace("/", ".")


def managed_labels(source: str) -> dict[str, str]:
    """Labels marking a workload as applied from the given source."""
    return {
        OPERATOR_LABEL_KEY: OPERATOR_LABEL_VALUE,
        SOURCE_LABEL_KEY: source_label_value(source),
    }


def secret_labels(binding_id: str) -> dict[str, str]:
    """Labels marking a secret as materialized for an ExternalSecret."""
    return {
        OPERATOR_LABEL_KEY: OPERATOR_LABEL_VALUE,
        BINDING_LABEL_KEY: binding_label_value(binding_id),
    }


def managed_selector(source: str) -> str:
    """Label selector matching every workload owned by a source."""
    return (
        f"{OPERATOR_LABEL_KEY}={OPERATOR_LABEL_VALUE},"
        f"{SOURCE_LABEL_KEY}={source_label_value(source)}"
    )


def ownership_annotations(
    revision_hash: str, source_revision: str, last_applied: ManifestBody
) -> dict[str, str]:
    """Annotations recording the applied revision hash and body."""
    return {
        REVISION_HASH_ANNOTATION: revision_hash,
        SOURCE_REVISION_ANNOTATION: source_revision,
        LAST_APPLIED_ANNOTATION: json.dumps(last_applied, sort_keys=True),
    }


def is_managed_by_operator(labels: dict[str, str] | None) -> bool:
    if not labels:
        return False
    return labels.get(OPERATOR_LABEL_KEY) == OPERATOR_LABEL_VALUE


def is_owned_by_source(labels: dict[str, str] | None, source: str) -> bool:
    """Check that an object was applied by the operator from this source."""
    return is_managed_by_operator(labels) and (
        labels or {}
    ).get(SOURCE_LABEL_KEY) == source_label_value(source)


def read_last_applied(annotations: dict[str, str] | None) -> dict[str, Any] | None:
    """
    Decode the last-applied body from annotations.

    Returns:
        The body, or None when the annotation is missing or unreadable
    """
    raw = (annotations or {}).get(LAST_APPLIED_ANNOTATION)
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def strip_ownership(body: ManifestBody) -> ManifestBody:
    """
    Remove operator bookkeeping from a body before it is diffed.

    The returned copy shares nested values other than metadata with body.
    """
    metadata = dict(body.get("metadata") or {})
    labels = {
        k: v
        for k, v in (metadata.get("labels") or {}).items()
        if k not in (OPERATOR_LABEL_KEY, SOURCE_LABEL_KEY)
    }
    annotations = {
        k: v
        for k, v in (metadata.get("annotations") or {}).items()
        if k
        not in (
            REVISION_HASH_ANNOTATION,
            SOURCE_REVISION_ANNOTATION,
            LAST_APPLIED_ANNOTATION,
        )
    }
    if labels:
        metadata["labels"] = labels
    else:
        metadata.pop("labels", None)
    if annotations:
        metadata["annotations"] = annotations
    else:
        metadata.pop("annotations", None)
    return {**body, "metadata": metadata}
