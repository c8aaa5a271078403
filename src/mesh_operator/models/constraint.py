"""
Pydantic models for constraint templates and constraints.

A template defines a reusable rule shape (a predicate over one field); a
constraint binds a template to a scope and parameters. ConstraintSet keeps
both as an immutable snapshot and guards template removal.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from ..errors import TemplateInUseError, ValidationError
from .types import ConstraintParameters

PredicateName = Literal[
    "boolean-field-true",
    "required-field",
    "disallowed-values",
    "allowed-values",
    "max-value",
    "pattern",
    "required-labels",
]


class ConstraintTemplate(BaseModel):
    """Reusable rule shape evaluated against candidate specifications."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    predicate: PredicateName
    field: str | None = Field(
        None, description="Dotted field path; '[*]' iterates over list items"
    )
    absence_is_violation: bool = Field(False, alias="absenceIsViolation")
    message: str | None = Field(None, description="Violation message template")


class ConstraintMatch(BaseModel):
    """Scope a constraint applies to; empty lists match everything."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    namespaces: list[str] = Field(default_factory=list)
    excluded_namespaces: list[str] = Field(
        default_factory=list, alias="excludedNamespaces"
    )
    kinds: list[str] = Field(default_factory=list)

    def matches(self, namespace: str | None, kind: str) -> bool:
        if self.kinds and kind not in self.kinds:
            return False
        if namespace in self.excluded_namespaces:
            return False
        return not self.namespaces or namespace in self.namespaces


class Constraint(BaseModel):
    """A template bound to a scope and parameters."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    template: str
    match: ConstraintMatch = Field(default_factory=ConstraintMatch)
    parameters: ConstraintParameters = Field(default_factory=dict)
    enforcement_action: Literal["deny", "warn"] = Field(
        "deny", alias="enforcementAction"
    )


class MeshConstraintTemplateSpec(BaseModel):
    """Specification of a MeshConstraintTemplate resource."""

    model_config = {"populate_by_name": True}

    predicate: PredicateName
    field: str | None = None
    absence_is_violation: bool = Field(False, alias="absenceIsViolation")
    message: str | None = None

    def to_template(self, name: str) -> ConstraintTemplate:
        return ConstraintTemplate(
            name=name,
            predicate=self.predicate,
            field=self.field,
            absence_is_violation=self.absence_is_violation,
            message=self.message,
        )


class MeshConstraintSpec(BaseModel):
    """Specification of a MeshConstraint resource."""

    model_config = {"populate_by_name": True}

    template: str
    match: ConstraintMatch = Field(default_factory=ConstraintMatch)
    parameters: ConstraintParameters = Field(default_factory=dict)
    enforcement_action: Literal["deny", "warn"] = Field(
        "deny", alias="enforcementAction"
    )

    def to_constraint(self, name: str) -> Constraint:
        return Constraint(
            name=name,
            template=self.template,
            match=self.match,
            parameters=self.parameters,
            enforcement_action=self.enforcement_action,
        )


@dataclass(frozen=True)
class ConstraintSet:
    """Immutable set of templates and the constraints bound to them."""

    templates: MappingProxyType = field(
        default_factory=lambda: MappingProxyType({})
    )
    constraints: tuple[Constraint, ...] = ()

    def with_template(self, template: ConstraintTemplate) -> "ConstraintSet":
        templates = dict(self.templates)
        templates[template.name] = template
        return ConstraintSet(MappingProxyType(templates), self.constraints)

    def without_template(self, name: str) -> "ConstraintSet":
        """
        Remove a template.

        Raises:
            TemplateInUseError: If any constraint still references the template
        """
        users = [c.name for c in self.constraints if c.template == name]
        if users:
            raise TemplateInUseError(name, users)
        templates = {k: v for k, v in self.templates.items() if k != name}
        return ConstraintSet(MappingProxyType(templates), self.constraints)

    def with_constraint(self, constraint: Constraint) -> "ConstraintSet":
        """
        Add or replace a constraint.

        Raises:
            ValidationError: If the referenced template is unknown
        """
        if constraint.template not in self.templates:
            raise ValidationError(
                f"Constraint '{constraint.name}' references unknown template "
                f"'{constraint.template}'",
                field="template",
            )
        kept = tuple(c for c in self.constraints if c.name != constraint.name)
        return ConstraintSet(self.templates, kept + (constraint,))

    def without_constraint(self, name: str) -> "ConstraintSet":
        return ConstraintSet(
            self.templates, tuple(c for c in self.constraints if c.name != name)
        )

    def constraints_for(self, namespace: str | None, kind: str) -> list[Constraint]:
        return [c for c in self.constraints if c.match.matches(namespace, kind)]

    def users_of(self, template: str) -> list[str]:
        return [c.name for c in self.constraints if c.template == template]


class AdmissionDecision(BaseModel):
    """Verdict of the admission controller for one candidate."""

    allowed: bool
    reason: str = ""
    constraint: str | None = None
    violations: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    snapshot_version: int | None = None
