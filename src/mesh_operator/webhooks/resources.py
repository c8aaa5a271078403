"""
Validating admission webhooks for mesh custom resources.

Validates:
- Every spec against its pydantic model, so invalid declarations are
  rejected before they are stored instead of failing in a handler
- Deletion of a MeshConstraintTemplate that constraints still reference
- MeshConstraints whose template is not known yet (warning only, since a
  template and its constraints are often applied together)
"""

import logging
from typing import Any

import kopf
from pydantic import BaseModel, ValidationError

from mesh_operator.constants import (
    API_GROUP,
    API_VERSION,
    CONSTRAINT_PLURAL,
    ERROR_TEMPLATE_IN_USE,
    ERROR_UNKNOWN_TEMPLATE,
    EXTERNAL_SECRET_PLURAL,
    POLICY_PLURAL,
    ROUTE_PLURAL,
    SOURCE_PLURAL,
    TEMPLATE_PLURAL,
)
from mesh_operator.models.constraint import MeshConstraintSpec, MeshConstraintTemplateSpec
from mesh_operator.models.policy import MeshAuthorizationPolicySpec
from mesh_operator.models.route import MeshRouteSpec
from mesh_operator.models.secret import ExternalSecretSpec
from mesh_operator.models.source import MeshSourceSpec
from mesh_operator.runtime import get_control_plane

logger = logging.getLogger(__name__)


def validate_spec[M: BaseModel](
    model: type[M], spec: dict[str, Any], kind: str, name: str
) -> M:
    """
    Validate a custom resource spec.

    Raises:
        kopf.AdmissionError: If the spec does not match the model
    """
    try:
        return model.model_validate(dict(spec or {}))
    except ValidationError as e:
        error_msg = f"Invalid {kind} specification: {e}"
        logger.warning(f"{kind} {name} validation failed: {error_msg}")
        raise kopf.AdmissionError(error_msg) from e


@kopf.on.validate(API_GROUP, API_VERSION, SOURCE_PLURAL, id="validate-source")
async def validate_source(spec: dict, name: str, operation: str, **kwargs: Any) -> None:
    if operation != "DELETE":
        validate_spec(MeshSourceSpec, spec, "MeshSource", name)


@kopf.on.validate(API_GROUP, API_VERSION, POLICY_PLURAL, id="validate-policy")
async def validate_policy(
    spec: dict, name: str, namespace: str, operation: str, **kwargs: Any
) -> None:
    if operation == "DELETE":
        return
    policy = validate_spec(
        MeshAuthorizationPolicySpec, spec, "MeshAuthorizationPolicy", name
    )
    # Expanding also validates the generated rules (principals, paths, ports)
    try:
        policy.to_rules(namespace, name)
    except ValidationError as e:
        raise kopf.AdmissionError(f"Invalid MeshAuthorizationPolicy rules: {e}") from e


@kopf.on.validate(API_GROUP, API_VERSION, TEMPLATE_PLURAL, id="validate-template")
async def validate_template(spec: dict, name: str, operation: str, **kwargs: Any) -> None:
    if operation == "DELETE":
        users = get_control_plane().admission.current().value.users_of(name)
        if users:
            error_msg = ERROR_TEMPLATE_IN_USE.format(name, ", ".join(sorted(users)))
            logger.info(f"Rejected deletion of template {name}: {error_msg}")
            raise kopf.AdmissionError(error_msg, code=409)
        return
    validate_spec(MeshConstraintTemplateSpec, spec, "MeshConstraintTemplate", name)


@kopf.on.validate(API_GROUP, API_VERSION, CONSTRAINT_PLURAL, id="validate-constraint")
async def validate_constraint(
    spec: dict,
    name: str,
    operation: str,
    warnings: list[str] | None = None,
    **kwargs: Any,
) -> None:
    if operation == "DELETE":
        return
    constraint = validate_spec(MeshConstraintSpec, spec, "MeshConstraint", name)
    templates = get_control_plane().admission.current().value.templates
    if constraint.template not in templates and warnings is not None:
        warnings.append(ERROR_UNKNOWN_TEMPLATE.format(name, constraint.template))


@kopf.on.validate(
    API_GROUP, API_VERSION, EXTERNAL_SECRET_PLURAL, id="validate-external-secret"
)
async def validate_external_secret(
    spec: dict,
    name: str,
    operation: str,
    warnings: list[str] | None = None,
    **kwargs: Any,
) -> None:
    if operation == "DELETE":
        return
    external_secret = validate_spec(ExternalSecretSpec, spec, "ExternalSecret", name)
    stores = get_control_plane().secret_sync.stores
    if external_secret.store_ref not in stores and warnings is not None:
        warnings.append(
            f"secret store '{external_secret.store_ref}' is not configured; "
            f"known stores: {', '.join(sorted(stores))}"
        )


@kopf.on.validate(API_GROUP, API_VERSION, ROUTE_PLURAL, id="validate-route")
async def validate_route(
    spec: dict, name: str, namespace: str, operation: str, **kwargs: Any
) -> None:
    if operation == "DELETE":
        return
    route = validate_spec(MeshRouteSpec, spec, "MeshRoute", name)
    try:
        route.to_rules(namespace, name)
    except ValidationError as e:
        raise kopf.AdmissionError(f"Invalid MeshRoute rules: {e}") from e
