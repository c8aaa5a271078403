"""Unit tests for custom resource status payloads."""

from mesh_operator.models.desired_state import (
    DriftReport,
    ReconcileAction,
    ReconcileResult,
    UnitError,
)
from mesh_operator.models.secret import ExternalSecretSpec
from mesh_operator.utils.status import binding_conditions, condition, source_status
from tests.fixtures.mesh_resources import STRIPE_EXTERNAL_SECRET


def conditions_by_type(status):
    return {c["type"]: c for c in status["conditions"]}


class TestCondition:
    def test_condition_fields(self):
        result = condition("Ready", False, "Failed", "1 unit failed", generation=4)

        assert result["status"] == "False"
        assert result["observedGeneration"] == 4
        assert "lastTransitionTime" in result


class TestSourceStatus:
    """Test MeshSource status after a pass."""

    def test_converged_pass_is_ready(self):
        result = ReconcileResult(
            source="shop/app",
            revision="abc123",
            actions=[ReconcileAction(action="create", unit="Deployment/shop/web", reason="new")],
        )

        status = source_status(result, "abc123", "abc123", generation=2)

        assert status["phase"] == "Ready"
        assert status["created"] == 1
        assert status["message"] == "Converged at revision abc123"
        conditions = conditions_by_type(status)
        assert conditions["Ready"]["status"] == "True"
        assert conditions["Degraded"]["status"] == "False"
        assert conditions["Drifted"]["status"] == "False"

    def test_unit_errors_fail_the_source(self):
        result = ReconcileResult(
            revision="abc123",
            errors={
                "Deployment/shop/web": UnitError(
                    unit="Deployment/shop/web",
                    error_type="PolicyViolation",
                    message="denied",
                )
            },
        )

        status = source_status(result, None, "abc123")

        assert status["phase"] == "Failed"
        assert status["unitErrors"] == {
            "Deployment/shop/web": {"type": "PolicyViolation", "message": "denied"}
        }

    def test_unreadable_source_is_degraded(self):
        result = ReconcileResult(degraded=True, degraded_reason="checkout missing")

        status = source_status(result, "abc123", None)

        assert status["phase"] == "Degraded"
        assert status["lastConvergedRevision"] == "abc123"
        assert conditions_by_type(status)["Degraded"]["reason"] == "SourceUnavailable"

    def test_only_unhealed_drift_is_reported(self):
        result = ReconcileResult(
            revision="abc123",
            drift=[
                DriftReport(unit="Deployment/shop/web", differences=["x"], healed=True),
                DriftReport(unit="Deployment/shop/api", differences=["y"]),
            ],
        )

        drifted = conditions_by_type(source_status(result, "abc123", "abc123"))["Drifted"]

        assert drifted["status"] == "True"
        assert drifted["message"] == "Deployment/shop/api"


class TestBindingConditions:
    """Test the Synced condition of ExternalSecrets."""

    def binding(self):
        return ExternalSecretSpec.model_validate(STRIPE_EXTERNAL_SECRET).to_binding(
            "stripe", "payments"
        )

    def test_pending_before_first_sync(self):
        assert binding_conditions(self.binding())[0]["reason"] == "Pending"

    def test_synced_then_failed(self):
        binding = self.binding()
        binding.record_success("h1", "1")
        assert binding_conditions(binding)[0]["reason"] == "Synced"

        binding.record_failure("store unreachable")
        synced = binding_conditions(binding)[0]
        assert synced["status"] == "False"
        assert synced["reason"] == "FetchFailed"
        assert synced["message"] == "store unreachable"
