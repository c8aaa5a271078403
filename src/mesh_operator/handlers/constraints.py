"""
Constraint handlers - Keeps the admission constraint snapshot current.

MeshConstraintTemplate and MeshConstraint are cluster scoped. A constraint
whose template is not known yet (e.g. on operator restart, where resume
order is arbitrary) is retried until the template arrives. A template that
is still referenced cannot be removed; its deletion is retried until the
referencing constraints are gone.
"""

import logging
from typing import Any

import kopf
from pydantic import ValidationError

from mesh_operator.constants import (
    API_GROUP,
    API_VERSION,
    CONSTRAINT_PLURAL,
    PHASE_READY,
    TEMPLATE_PLURAL,
)
from mesh_operator.errors import TemplateInUseError
from mesh_operator.errors import ValidationError as SpecValidationError
from mesh_operator.models.constraint import MeshConstraintSpec, MeshConstraintTemplateSpec
from mesh_operator.observability.tracing import traced_handler
from mesh_operator.runtime import get_control_plane

logger = logging.getLogger(__name__)


@kopf.on.create(TEMPLATE_PLURAL, group=API_GROUP, version=API_VERSION)
@kopf.on.update(TEMPLATE_PLURAL, group=API_GROUP, version=API_VERSION)
@kopf.on.resume(TEMPLATE_PLURAL, group=API_GROUP, version=API_VERSION)
@traced_handler("apply_template", resource_type="meshconstrainttemplate")
async def apply_template(
    spec: dict[str, Any], name: str, patch: kopf.Patch, **kwargs: Any
) -> None:
    try:
        template = MeshConstraintTemplateSpec.model_validate(dict(spec)).to_template(name)
    except ValidationError as e:
        raise kopf.PermanentError(f"Invalid MeshConstraintTemplate {name}: {e}") from e

    version = get_control_plane().admission.apply_template(template)
    logger.info(f"Published constraint template {name} (snapshot v{version})")
    patch.status["phase"] = PHASE_READY
    patch.status["snapshotVersion"] = version


@kopf.on.delete(TEMPLATE_PLURAL, group=API_GROUP, version=API_VERSION)
async def delete_template(name: str, **kwargs: Any) -> None:
    """Remove a template once no constraint references it."""
    try:
        version = get_control_plane().admission.remove_template(name)
    except TemplateInUseError as e:
        raise kopf.TemporaryError(e.message, delay=60) from e
    logger.info(f"Removed constraint template {name} (snapshot v{version})")


@kopf.on.create(CONSTRAINT_PLURAL, group=API_GROUP, version=API_VERSION)
@kopf.on.update(CONSTRAINT_PLURAL, group=API_GROUP, version=API_VERSION)
@kopf.on.resume(CONSTRAINT_PLURAL, group=API_GROUP, version=API_VERSION)
@traced_handler("apply_constraint", resource_type="meshconstraint")
async def apply_constraint(
    spec: dict[str, Any], name: str, patch: kopf.Patch, **kwargs: Any
) -> None:
    try:
        constraint = MeshConstraintSpec.model_validate(dict(spec)).to_constraint(name)
    except ValidationError as e:
        raise kopf.PermanentError(f"Invalid MeshConstraint {name}: {e}") from e

    try:
        version = get_control_plane().admission.apply_constraint(constraint)
    except SpecValidationError as e:
        # The template may not have been resumed yet
        raise kopf.TemporaryError(e.message, delay=10) from e
    logger.info(
        f"Published constraint {name} on template {constraint.template} "
        f"(snapshot v{version})"
    )
    patch.status["phase"] = PHASE_READY
    patch.status["snapshotVersion"] = version


@kopf.on.delete(CONSTRAINT_PLURAL, group=API_GROUP, version=API_VERSION)
async def delete_constraint(name: str, **kwargs: Any) -> None:
    version = get_control_plane().admission.remove_constraint(name)
    logger.info(f"Removed constraint {name} (snapshot v{version})")
