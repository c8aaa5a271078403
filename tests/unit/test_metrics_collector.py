"""
Unit tests for MetricsCollector methods in observability/metrics.py.

Tests the individual methods of MetricsCollector to verify they call the
correct Prometheus metric objects with the correct label values.
"""

from unittest.mock import MagicMock, patch

import pytest

from mesh_operator.observability.metrics import MetricsCollector


@pytest.fixture
def collector():
    """Create a MetricsCollector with the registry init patched out."""
    with patch(
        "mesh_operator.observability.metrics.get_metrics_registry",
        return_value=MagicMock(),
    ):
        return MetricsCollector()


class TestReconciliationMetrics:
    """Test reconciliation metric methods."""

    @pytest.mark.asyncio
    @patch("mesh_operator.observability.metrics.RECONCILIATION_DURATION")
    @patch("mesh_operator.observability.metrics.RECONCILIATION_TOTAL")
    async def test_track_reconciliation_success(self, mock_total, mock_duration, collector):
        async with collector.track_reconciliation("shop/app"):
            pass

        mock_total.labels.assert_called_with(source="shop/app", result="success")
        mock_total.labels().inc.assert_called_once()
        mock_duration.labels.assert_called_with(source="shop/app")

    @pytest.mark.asyncio
    @patch("mesh_operator.observability.metrics.RECONCILIATION_DURATION")
    @patch("mesh_operator.observability.metrics.RECONCILIATION_TOTAL")
    async def test_track_reconciliation_error(self, mock_total, mock_duration, collector):
        with pytest.raises(RuntimeError):
            async with collector.track_reconciliation("shop/app"):
                raise RuntimeError("boom")

        mock_total.labels.assert_called_with(source="shop/app", result="error")

    @patch("mesh_operator.observability.metrics.LAST_CONVERGED_TIMESTAMP")
    @patch("mesh_operator.observability.metrics.CONFIG_DRIFT")
    @patch("mesh_operator.observability.metrics.RECONCILE_ACTIONS")
    def test_record_reconcile_result(self, mock_actions, mock_drift, mock_converged, collector):
        """Only non-zero action counts are recorded."""
        collector.record_reconcile_result(
            "shop/app", {"created": 2, "updated": 0, "deleted": 1, "drifted": 3, "converged": True}
        )

        calls = [c.kwargs for c in mock_actions.labels.call_args_list]
        assert calls == [
            {"source": "shop/app", "action": "created"},
            {"source": "shop/app", "action": "deleted"},
        ]
        mock_drift.labels().set.assert_called_with(3)
        mock_converged.labels().set.assert_called_once()

    @patch("mesh_operator.observability.metrics.LAST_CONVERGED_TIMESTAMP")
    @patch("mesh_operator.observability.metrics.CONFIG_DRIFT")
    def test_unconverged_pass_keeps_timestamp(self, mock_drift, mock_converged, collector):
        collector.record_reconcile_result("shop/app", {"converged": False})
        mock_converged.labels.assert_not_called()

    @patch("mesh_operator.observability.metrics.RECONCILIATION_ERRORS")
    def test_record_unit_error(self, mock_errors, collector):
        collector.record_unit_error("shop/app", "PolicyViolation", retryable=False)
        mock_errors.labels.assert_called_with(
            source="shop/app", error_type="PolicyViolation", retryable="false"
        )


class TestDecisionMetrics:
    """Test admission, authorization and route metric methods."""

    @patch("mesh_operator.observability.metrics.ADMISSION_LATENCY")
    @patch("mesh_operator.observability.metrics.ADMISSION_DECISIONS")
    def test_record_admission(self, mock_decisions, mock_latency, collector):
        collector.record_admission("Deployment", allowed=False, duration=0.01)

        mock_decisions.labels.assert_called_with(kind="Deployment", result="denied")
        mock_latency.labels().observe.assert_called_with(0.01)

    @patch("mesh_operator.observability.metrics.AUTHORIZATION_LATENCY")
    @patch("mesh_operator.observability.metrics.AUTHORIZATION_DECISIONS")
    def test_record_authorization(self, mock_decisions, mock_latency, collector):
        collector.record_authorization("shop/checkout", "allowed", 0.002)

        mock_decisions.labels.assert_called_with(target="shop/checkout", outcome="allowed")
        mock_latency.observe.assert_called_with(0.002)

    @patch("mesh_operator.observability.metrics.ROUTE_DECISIONS")
    def test_record_route(self, mock_routes, collector):
        collector.record_route("redirect")
        mock_routes.labels.assert_called_with(outcome="redirect")


class TestSecretSyncMetrics:
    """Test secret sync metric methods."""

    @patch("mesh_operator.observability.metrics.SECRET_SYNC_LAST_SUCCESS")
    @patch("mesh_operator.observability.metrics.SECRET_SYNC_FAILURES")
    @patch("mesh_operator.observability.metrics.SECRET_SYNC_TOTAL")
    def test_successful_sync(self, mock_total, mock_failures, mock_success, collector):
        collector.record_secret_sync("payments", "stripe", "synced", 0)

        mock_total.labels.assert_called_with(namespace="payments", outcome="synced")
        mock_failures.labels().set.assert_called_with(0)
        mock_success.labels().set.assert_called_once()

    @patch("mesh_operator.observability.metrics.SECRET_SYNC_LAST_SUCCESS")
    @patch("mesh_operator.observability.metrics.SECRET_SYNC_FAILURES")
    @patch("mesh_operator.observability.metrics.SECRET_SYNC_TOTAL")
    def test_failed_sync_keeps_last_success(
        self, mock_total, mock_failures, mock_success, collector
    ):
        collector.record_secret_sync("payments", "stripe", "failed", 3)

        mock_failures.labels().set.assert_called_with(3)
        mock_success.labels.assert_not_called()

    @patch("mesh_operator.observability.metrics.SECRET_SYNC_LAST_SUCCESS")
    @patch("mesh_operator.observability.metrics.SECRET_SYNC_FAILURES")
    def test_forget_binding_tolerates_missing_series(
        self, mock_failures, mock_success, collector
    ):
        mock_success.remove.side_effect = KeyError("stripe")

        collector.forget_binding("payments", "stripe")

        mock_failures.remove.assert_called_once_with("payments", "stripe")


class TestComponentState:
    """Test degraded, circuit breaker and snapshot gauges."""

    @patch("mesh_operator.observability.metrics.DEGRADED_STATUS")
    def test_set_degraded(self, mock_degraded, collector):
        collector.set_degraded("reconciler", "shop/app", True)
        mock_degraded.labels.assert_called_with(component="reconciler", name="shop/app")
        mock_degraded.labels().set.assert_called_with(1)

    @patch("mesh_operator.observability.metrics.CIRCUIT_BREAKER_STATE")
    def test_set_circuit_state(self, mock_state, collector):
        collector.set_circuit_state("secret-store/vault", 2)
        mock_state.labels().set.assert_called_with(2)

    @patch("mesh_operator.observability.metrics.SNAPSHOT_VERSION")
    def test_record_snapshot(self, mock_version, collector):
        collector.record_snapshot("policies", 7)
        mock_version.labels.assert_called_with(snapshot="policies")
        mock_version.labels().set.assert_called_with(7)
