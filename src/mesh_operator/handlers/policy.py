"""
MeshAuthorizationPolicy handlers - Keeps the authorization snapshot current.

Each policy contributes the rules it declares plus one allow rule per edge
of its service dependency graph. Applying or deleting a policy publishes a
new policy snapshot; decisions in flight keep evaluating the previous one.
"""

import logging
from typing import Any

import kopf
from pydantic import ValidationError

from mesh_operator.constants import API_GROUP, API_VERSION, PHASE_READY, POLICY_PLURAL
from mesh_operator.models.policy import MeshAuthorizationPolicySpec
from mesh_operator.observability.tracing import traced_handler
from mesh_operator.runtime import get_control_plane

logger = logging.getLogger(__name__)


@kopf.on.create(POLICY_PLURAL, group=API_GROUP, version=API_VERSION)
@kopf.on.update(POLICY_PLURAL, group=API_GROUP, version=API_VERSION)
@kopf.on.resume(POLICY_PLURAL, group=API_GROUP, version=API_VERSION)
@traced_handler("apply_policy", resource_type="meshauthorizationpolicy")
async def apply_policy(
    spec: dict[str, Any],
    name: str,
    namespace: str,
    patch: kopf.Patch,
    **kwargs: Any,
) -> None:
    """Compile a MeshAuthorizationPolicy into rules and publish them."""
    try:
        policy_spec = MeshAuthorizationPolicySpec.model_validate(dict(spec))
        rules = policy_spec.to_rules(namespace, name)
    except ValidationError as e:
        raise kopf.PermanentError(f"Invalid MeshAuthorizationPolicy {name}: {e}") from e

    policy_id = f"{namespace}/{name}"
    version = get_control_plane().policy_engine.apply_policy(policy_id, rules)
    logger.info(
        f"Published {len(rules)} authorization rules from {policy_id} "
        f"(snapshot v{version})"
    )
    patch.status["phase"] = PHASE_READY
    patch.status["ruleCount"] = len(rules)
    patch.status["snapshotVersion"] = version


@kopf.on.delete(POLICY_PLURAL, group=API_GROUP, version=API_VERSION)
async def delete_policy(name: str, namespace: str, **kwargs: Any) -> None:
    """Withdraw every rule declared by the deleted policy."""
    policy_id = f"{namespace}/{name}"
    version = get_control_plane().policy_engine.remove_policy(policy_id)
    logger.info(f"Withdrew authorization rules of {policy_id} (snapshot v{version})")
