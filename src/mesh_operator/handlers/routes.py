"""
MeshRoute handlers - Keeps the ingress route table snapshot current.
"""

import logging
from typing import Any

import kopf
from pydantic import ValidationError

from mesh_operator.constants import API_GROUP, API_VERSION, PHASE_READY, ROUTE_PLURAL
from mesh_operator.models.route import MeshRouteSpec
from mesh_operator.observability.tracing import traced_handler
from mesh_operator.runtime import get_control_plane

logger = logging.getLogger(__name__)


@kopf.on.create(ROUTE_PLURAL, group=API_GROUP, version=API_VERSION)
@kopf.on.update(ROUTE_PLURAL, group=API_GROUP, version=API_VERSION)
@kopf.on.resume(ROUTE_PLURAL, group=API_GROUP, version=API_VERSION)
@traced_handler("apply_route", resource_type="meshroute")
async def apply_route(
    spec: dict[str, Any],
    name: str,
    namespace: str,
    patch: kopf.Patch,
    **kwargs: Any,
) -> None:
    try:
        rules = MeshRouteSpec.model_validate(dict(spec)).to_rules(namespace, name)
    except ValidationError as e:
        raise kopf.PermanentError(f"Invalid MeshRoute {name}: {e}") from e

    route_id = f"{namespace}/{name}"
    control_plane = get_control_plane()
    version = control_plane.router.apply_route(route_id, rules)
    logger.info(f"Published {len(rules)} route rules from {route_id} (snapshot v{version})")

    uncovered = sorted(
        {rule.host for rule in rules if control_plane.certificates.lookup(rule.host) is None}
    )
    patch.status["phase"] = PHASE_READY
    patch.status["ruleCount"] = len(rules)
    patch.status["snapshotVersion"] = version
    patch.status["hostsWithoutCertificate"] = uncovered


@kopf.on.delete(ROUTE_PLURAL, group=API_GROUP, version=API_VERSION)
async def delete_route(name: str, namespace: str, **kwargs: Any) -> None:
    route_id = f"{namespace}/{name}"
    version = get_control_plane().router.remove_route(route_id)
    logger.info(f"Withdrew route rules of {route_id} (snapshot v{version})")
