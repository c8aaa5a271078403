"""
Validating admission webhook for workloads.

Every create or update of a Pod or pod controller is evaluated against the
active constraint snapshot. Denials name the violated constraint and the
offending field; warn-only constraints are passed back as admission
warnings. Evaluation that exceeds its budget, or fails, denies the request.
"""

import logging
from typing import Any

import kopf

from mesh_operator.runtime import get_control_plane

logger = logging.getLogger(__name__)


async def _admit(
    body: dict[str, Any],
    namespace: str | None,
    operation: str,
    warnings: list[str] | None,
) -> None:
    if operation == "DELETE":
        return

    candidate = dict(body)
    kind = candidate.get("kind", "unknown")
    name = (candidate.get("metadata") or {}).get("name", "")
    decision = await get_control_plane().admission.admit_with_timeout(candidate, namespace)

    if warnings is not None:
        warnings.extend(decision.warnings)
    if not decision.allowed:
        logger.info(f"Rejected {kind} {namespace}/{name}: {decision.reason}")
        raise kopf.AdmissionError(decision.reason, code=403)
    logger.debug(f"Admitted {kind} {namespace}/{name}")


@kopf.on.validate("apps", "v1", "deployments", id="admit-deployment")
async def admit_deployment(
    body: dict[str, Any],
    namespace: str | None,
    operation: str,
    warnings: list[str] | None = None,
    **kwargs: Any,
) -> None:
    await _admit(body, namespace, operation, warnings)


@kopf.on.validate("apps", "v1", "statefulsets", id="admit-statefulset")
async def admit_statefulset(
    body: dict[str, Any],
    namespace: str | None,
    operation: str,
    warnings: list[str] | None = None,
    **kwargs: Any,
) -> None:
    await _admit(body, namespace, operation, warnings)


@kopf.on.validate("apps", "v1", "daemonsets", id="admit-daemonset")
async def admit_daemonset(
    body: dict[str, Any],
    namespace: str | None,
    operation: str,
    warnings: list[str] | None = None,
    **kwargs: Any,
) -> None:
    await _admit(body, namespace, operation, warnings)


@kopf.on.validate("v1", "pods", id="admit-pod")
async def admit_pod(
    body: dict[str, Any],
    namespace: str | None,
    operation: str,
    warnings: list[str] | None = None,
    **kwargs: Any,
) -> None:
    await _admit(body, namespace, operation, warnings)
