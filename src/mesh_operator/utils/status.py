"""
Status payload helpers for the operator's custom resources.

Conditions follow the Kubernetes conventions (type, status, reason,
message, lastTransitionTime, observedGeneration).
"""

from datetime import UTC, datetime
from typing import Any

from ..constants import (
    CONDITION_DEGRADED,
    CONDITION_DRIFTED,
    CONDITION_FALSE,
    CONDITION_READY,
    CONDITION_SYNCED,
    CONDITION_TRUE,
    PHASE_DEGRADED,
    PHASE_FAILED,
    PHASE_READY,
)
from ..models.desired_state import ReconcileResult
from ..models.secret import ExternalSecretBinding


def condition(
    condition_type: str,
    ok: bool,
    reason: str,
    message: str,
    generation: int = 0,
) -> dict[str, Any]:
    return {
        "type": condition_type,
        "status": CONDITION_TRUE if ok else CONDITION_FALSE,
        "reason": reason,
        "message": message,
        "lastTransitionTime": datetime.now(UTC).isoformat(),
        "observedGeneration": generation,
    }


def source_status(
    result: ReconcileResult,
    last_converged_revision: str | None,
    last_attempted_revision: str | None,
    generation: int = 0,
) -> dict[str, Any]:
    """Status of a MeshSource after a reconciliation pass."""
    summary = result.summary()
    if result.degraded:
        phase = PHASE_DEGRADED
        message = result.degraded_reason or "desired-state source unavailable"
    elif result.errors:
        phase = PHASE_FAILED
        message = f"{len(result.errors)} units failed to converge"
    else:
        phase = PHASE_READY
        message = f"Converged at revision {result.revision}"

    drifted = [report.unit for report in result.drift if not report.healed]
    conditions = [
        condition(CONDITION_READY, phase == PHASE_READY, phase, message, generation),
        condition(
            CONDITION_DEGRADED,
            result.degraded,
            "SourceUnavailable" if result.degraded else "SourceReadable",
            result.degraded_reason or "desired-state source readable",
            generation,
        ),
        condition(
            CONDITION_DRIFTED,
            bool(drifted),
            "DriftDetected" if drifted else "NoDrift",
            ", ".join(drifted) if drifted else "live state matches last applied",
            generation,
        ),
    ]
    return {
        "phase": phase,
        "message": message,
        "lastConvergedRevision": last_converged_revision,
        "lastAttemptedRevision": last_attempted_revision,
        "created": summary["created"],
        "updated": summary["updated"],
        "deleted": summary["deleted"],
        "drifted": summary["drifted"],
        "unitErrors": {
            key: {"type": error.error_type, "message": error.message}
            for key, error in sorted(result.errors.items())
        },
        "observedGeneration": generation,
        "conditions": conditions,
    }


def binding_conditions(binding: ExternalSecretBinding, generation: int = 0) -> list:
    synced = binding.consecutive_failures == 0 and binding.last_synced_hash is not None
    if synced:
        reason, message = "Synced", f"value hash {binding.last_synced_hash}"
    elif binding.last_error:
        reason, message = "FetchFailed", binding.last_error
    else:
        reason, message = "Pending", "waiting for the first sync"
    return [condition(CONDITION_SYNCED, synced, reason, message, generation)]
