"""Unit tests for the admission controller."""

import asyncio
import copy
import time

import pytest

from mesh_operator.errors import TemplateInUseError, ValidationError
from mesh_operator.models.constraint import (
    Constraint,
    ConstraintSet,
    ConstraintTemplate,
    MeshConstraintSpec,
    MeshConstraintTemplateSpec,
)
from mesh_operator.services.admission import (
    AdmissionController,
    admit,
    expand_pod_spec_path,
    resolve_field,
)
from tests.fixtures.mesh_resources import (
    NO_PRIVILEGED_CONSTRAINT,
    NO_PRIVILEGED_TEMPLATE,
    deployment,
)


@pytest.fixture
def controller(events):
    controller = AdmissionController(timeout=1.0, events=events)
    controller.apply_template(
        MeshConstraintTemplateSpec.model_validate(NO_PRIVILEGED_TEMPLATE).to_template(
            "no-privileged"
        )
    )
    controller.apply_constraint(
        MeshConstraintSpec.model_validate(NO_PRIVILEGED_CONSTRAINT).to_constraint(
            "no-privileged"
        )
    )
    return controller


class TestFieldResolution:
    """Test dotted field paths with list expansion."""

    def test_wildcard_expands_list_items(self):
        obj = {"a": [{"b": 1}, {"b": 2}, {"c": 3}]}
        assert resolve_field(obj, "a[*].b") == [1, 2]

    def test_index_selects_one_item(self):
        obj = {"a": [{"b": 1}, {"b": 2}]}
        assert resolve_field(obj, "a[1].b") == [2]
        assert resolve_field(obj, "a[5].b") == []

    def test_absent_or_malformed_paths_resolve_to_nothing(self):
        assert resolve_field({"a": "not-a-list"}, "a[*].b") == []
        assert resolve_field({"a": {"b": 1}}, "a.c.d") == []
        assert resolve_field("not-a-dict", "a") == []

    def test_pod_spec_prefix_depends_on_kind(self):
        assert (
            expand_pod_spec_path("podSpec.containers", "Deployment")
            == "spec.template.spec.containers"
        )
        assert expand_pod_spec_path("podSpec.containers", "Pod") == "spec.containers"
        assert (
            expand_pod_spec_path("podSpec.containers", "CronJob")
            == "spec.jobTemplate.spec.template.spec.containers"
        )
        assert expand_pod_spec_path("podSpec.containers", "ConfigMap") is None
        assert expand_pod_spec_path("metadata.labels", "ConfigMap") == "metadata.labels"


class TestAdmit:
    """Test the pure admission decision."""

    def test_privileged_container_is_denied_naming_constraint_and_field(self, controller):
        decision = controller.admit(deployment(privileged=True))

        assert decision.allowed is False
        assert decision.constraint == "no-privileged"
        assert "no-privileged" in decision.reason
        assert "securityContext.privileged" in decision.reason

    def test_unprivileged_container_is_allowed(self, controller):
        decision = controller.admit(deployment(privileged=False))
        assert decision.allowed is True
        assert decision.reason == ""

    def test_absent_field_is_not_a_violation(self, controller):
        decision = controller.admit(deployment(privileged=None))
        assert decision.allowed is True

    def test_absence_is_violation_when_template_says_so(self):
        template = ConstraintTemplate(
            name="needs-limits",
            predicate="boolean-field-true",
            field="podSpec.containers[*].resources",
            absence_is_violation=True,
        )
        constraint = Constraint(name="needs-limits", template="needs-limits")
        constraints = ConstraintSet().with_template(template).with_constraint(constraint)

        decision = admit(deployment(), constraints)

        assert decision.allowed is False
        assert "is required but absent" in decision.reason

    def test_admit_is_pure_and_deterministic(self, controller):
        candidate = deployment(privileged=True)
        before = copy.deepcopy(candidate)
        snapshot = controller.current()

        first = admit(candidate, snapshot.value, snapshot_version=snapshot.version)
        second = admit(candidate, snapshot.value, snapshot_version=snapshot.version)

        assert first == second
        assert candidate == before

    def test_malformed_candidate_is_not_denied_on_missing_fields(self, controller):
        decision = controller.admit({"kind": "Deployment", "spec": "garbage"})
        assert decision.allowed is True

    def test_warn_constraints_produce_warnings_only(self, controller):
        controller.apply_template(
            ConstraintTemplate(
                name="owner-label", predicate="required-labels", field="metadata.labels"
            )
        )
        controller.apply_constraint(
            Constraint(
                name="owner-label",
                template="owner-label",
                parameters={"labels": ["owner"]},
                enforcement_action="warn",
            )
        )

        decision = controller.admit(deployment(privileged=False))

        assert decision.allowed is True
        assert decision.warnings == ["[owner-label] metadata.labels missing required labels: owner"]

    def test_constraint_scope_limits_kinds_and_namespaces(self):
        template = ConstraintTemplate(
            name="max-replicas", predicate="max-value", field="spec.replicas"
        )
        constraint = Constraint.model_validate(
            {
                "name": "max-replicas",
                "template": "max-replicas",
                "parameters": {"max": 3},
                "match": {"kinds": ["Deployment"], "excludedNamespaces": ["batch"]},
            }
        )
        constraints = ConstraintSet().with_template(template).with_constraint(constraint)

        assert not admit(deployment(replicas=5), constraints).allowed
        assert admit(deployment(replicas=5, namespace="batch"), constraints).allowed
        assert admit(deployment(replicas=3), constraints).allowed

    def test_first_denying_constraint_determines_reason(self):
        constraints = (
            ConstraintSet()
            .with_template(
                ConstraintTemplate(name="tag", predicate="pattern", field="podSpec.containers[*].image")
            )
            .with_template(
                ConstraintTemplate(name="replicas", predicate="max-value", field="spec.replicas")
            )
            .with_constraint(
                Constraint(name="a-pinned", template="tag", parameters={"pattern": r".*@sha256:.*"})
            )
            .with_constraint(
                Constraint(name="b-replicas", template="replicas", parameters={"max": 1})
            )
        )

        decision = admit(deployment(replicas=2), constraints)

        assert decision.constraint == "a-pinned"
        assert len(decision.violations) == 2


class TestConstraintSet:
    """Test snapshot updates of templates and constraints."""

    def test_template_in_use_cannot_be_removed(self, controller):
        with pytest.raises(TemplateInUseError) as exc_info:
            controller.remove_template("no-privileged")

        assert "no-privileged" in exc_info.value.message
        assert "no-privileged" in controller.current().value.templates

    def test_template_removable_after_constraints_are_gone(self, controller):
        controller.remove_constraint("no-privileged")
        controller.remove_template("no-privileged")
        assert controller.current().value.templates == {}

    def test_constraint_on_unknown_template_is_rejected(self, controller):
        version = controller.current().version
        with pytest.raises(ValidationError):
            controller.apply_constraint(Constraint(name="x", template="missing"))
        assert controller.current().version == version

    def test_every_change_publishes_a_new_version(self, controller):
        version = controller.current().version
        controller.remove_constraint("no-privileged")
        assert controller.current().version == version + 1


class TestAdmitWithTimeout:
    """Test the bounded request-path wrapper."""

    @pytest.mark.asyncio
    async def test_decision_emits_event(self, controller, events):
        decision = await controller.admit_with_timeout(deployment(privileged=True), "shop")

        assert decision.allowed is False
        recorded = events.recent(component="admission")
        assert recorded[-1].outcome == "denied"
        assert recorded[-1].fields["resource_name"] == "web"

    @pytest.mark.asyncio
    async def test_exceeding_budget_denies(self, controller, monkeypatch):
        def slow_admit(candidate, namespace=None):
            time.sleep(0.2)
            return controller.current()

        monkeypatch.setattr(controller, "admit", slow_admit)

        decision = await controller.admit_with_timeout(deployment(), timeout=0.01)

        assert decision.allowed is False
        assert "exceeded" in decision.reason

    @pytest.mark.asyncio
    async def test_evaluation_error_denies(self, controller, monkeypatch):
        def broken_admit(candidate, namespace=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(controller, "admit", broken_admit)

        decision = await controller.admit_with_timeout(deployment())

        assert decision.allowed is False
        assert decision.reason == "admission evaluation failed; denied"

    @pytest.mark.asyncio
    async def test_concurrent_evaluations_see_consistent_snapshots(self, controller):
        results = await asyncio.gather(
            *(controller.admit_with_timeout(deployment(privileged=True)) for _ in range(10))
        )
        assert {r.snapshot_version for r in results} == {controller.current().version}
        assert all(not r.allowed for r in results)
