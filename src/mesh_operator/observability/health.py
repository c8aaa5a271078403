"""
Health check utilities for the mesh operator.

Besides Kubernetes connectivity and CRD presence, health reflects the
stale-but-serving state of the control plane: an unreadable desired-state
source or an unreachable secret store reports ``degraded`` rather than
``unhealthy``, because the last converged state keeps being served.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..constants import (
    API_GROUP,
    CONSTRAINT_PLURAL,
    EXTERNAL_SECRET_PLURAL,
    POLICY_PLURAL,
    ROUTE_PLURAL,
    SOURCE_PLURAL,
    TEMPLATE_PLURAL,
)

logger = logging.getLogger(__name__)

REQUIRED_CRDS = [
    f"{plural}.{API_GROUP}"
    for plural in (
        SOURCE_PLURAL,
        POLICY_PLURAL,
        TEMPLATE_PLURAL,
        CONSTRAINT_PLURAL,
        EXTERNAL_SECRET_PLURAL,
        ROUTE_PLURAL,
    )
]


@dataclass
class HealthCheckResult:
    """Result of a health check operation."""

    name: str
    status: str  # "healthy", "unhealthy", "degraded", "unknown"
    message: str
    details: dict[str, Any] | None = None
    duration: float = 0.0
    timestamp: float = 0.0


class HealthChecker:
    """Performs health checks for the operator and its control plane."""

    def __init__(self, k8s_client: client.ApiClient | None = None, control_plane=None):
        self.k8s_client = k8s_client
        self._control_plane = control_plane

    def _get_client(self) -> client.ApiClient:
        if not self.k8s_client:
            from ..utils.kubernetes import get_kubernetes_client

            self.k8s_client = get_kubernetes_client()
        return self.k8s_client

    def _get_control_plane(self):
        if self._control_plane is None:
            from ..runtime import get_control_plane

            self._control_plane = get_control_plane()
        return self._control_plane

    async def check_all(self) -> dict[str, HealthCheckResult]:
        checks = {
            "kubernetes_api": self._check_kubernetes_api(),
            "crds_installed": self._check_crds_installed(),
            "desired_state_sources": self._check_sources(),
            "secret_stores": self._check_secret_stores(),
        }

        results = {}
        for name, check_coro in checks.items():
            try:
                results[name] = await check_coro
            except Exception as e:
                results[name] = HealthCheckResult(
                    name=name,
                    status="unhealthy",
                    message=f"Health check failed: {str(e)}",
                    timestamp=time.time(),
                )
        return results

    async def _check_kubernetes_api(self) -> HealthCheckResult:
        """Check Kubernetes API connectivity."""
        start_time = time.time()
        try:
            core_api = client.CoreV1Api(self._get_client())
            core_api.list_namespace(limit=1, timeout_seconds=5)
            duration = time.time() - start_time
            return HealthCheckResult(
                name="kubernetes_api",
                status="healthy",
                message="Kubernetes API is accessible",
                details={"response_time_ms": round(duration * 1000, 2)},
                duration=duration,
                timestamp=time.time(),
            )
        except ApiException as e:
            return HealthCheckResult(
                name="kubernetes_api",
                status="unhealthy",
                message=f"Kubernetes API error: {e.reason}",
                details={"status_code": e.status},
                duration=time.time() - start_time,
                timestamp=time.time(),
            )
        except Exception as e:
            return HealthCheckResult(
                name="kubernetes_api",
                status="unhealthy",
                message=f"Failed to connect to Kubernetes API: {str(e)}",
                duration=time.time() - start_time,
                timestamp=time.time(),
            )

    async def _check_crds_installed(self) -> HealthCheckResult:
        """Check if required CRDs are installed."""
        start_time = time.time()
        try:
            api_extensions = client.ApiextensionsV1Api(self._get_client())
            installed, missing = [], []
            for crd_name in REQUIRED_CRDS:
                try:
                    api_extensions.read_custom_resource_definition(name=crd_name)
                    installed.append(crd_name)
                except ApiException as e:
                    if e.status == 404:
                        missing.append(crd_name)
                    else:
                        raise

            if missing:
                return HealthCheckResult(
                    name="crds_installed",
                    status="unhealthy",
                    message=f"Missing required CRDs: {', '.join(missing)}",
                    details={"installed": installed, "missing": missing},
                    duration=time.time() - start_time,
                    timestamp=time.time(),
                )
            return HealthCheckResult(
                name="crds_installed",
                status="healthy",
                message="All required CRDs are installed",
                details={"installed": installed},
                duration=time.time() - start_time,
                timestamp=time.time(),
            )
        except Exception as e:
            return HealthCheckResult(
                name="crds_installed",
                status="unhealthy",
                message=f"Failed to check CRDs: {str(e)}",
                duration=time.time() - start_time,
                timestamp=time.time(),
            )

    async def _check_sources(self) -> HealthCheckResult:
        """Report sources whose last pass could not read the desired state."""
        start_time = time.time()
        loops = self._get_control_plane().loops
        degraded = {
            source_id: loop.degraded_reason
            for source_id, loop in loops.items()
            if loop.degraded
        }
        details = {
            source_id: {
                "last_converged_revision": loop.last_converged_revision,
                "degraded": loop.degraded,
            }
            for source_id, loop in loops.items()
        }
        if degraded:
            return HealthCheckResult(
                name="desired_state_sources",
                status="degraded",
                message=(
                    f"Serving last converged state for: {', '.join(sorted(degraded))}"
                ),
                details=details,
                duration=time.time() - start_time,
                timestamp=time.time(),
            )
        return HealthCheckResult(
            name="desired_state_sources",
            status="healthy",
            message=f"{len(loops)} source(s) readable",
            details=details,
            duration=time.time() - start_time,
            timestamp=time.time(),
        )

    async def _check_secret_stores(self) -> HealthCheckResult:
        """Report external secret stores that are unreachable."""
        start_time = time.time()
        synchronizer = self._get_control_plane().secret_sync
        unavailable = synchronizer.degraded_stores()
        if unavailable:
            return HealthCheckResult(
                name="secret_stores",
                status="degraded",
                message=(
                    "Keeping last-known-good secrets; unreachable stores: "
                    f"{', '.join(sorted(unavailable))}"
                ),
                details={"unavailable": sorted(unavailable)},
                duration=time.time() - start_time,
                timestamp=time.time(),
            )
        return HealthCheckResult(
            name="secret_stores",
            status="healthy",
            message="External secret stores reachable",
            duration=time.time() - start_time,
            timestamp=time.time(),
        )

    def get_overall_health(self, results: dict[str, HealthCheckResult]) -> str:
        if not results:
            return "unknown"
        statuses = [result.status for result in results.values()]
        if "unhealthy" in statuses:
            return "unhealthy"
        if "degraded" in statuses or "unknown" in statuses:
            return "degraded"
        return "healthy"

    def to_dict(self, results: dict[str, HealthCheckResult]) -> dict[str, Any]:
        return {
            "status": self.get_overall_health(results),
            "timestamp": time.time(),
            "checks": {
                name: {
                    "status": result.status,
                    "message": result.message,
                    "details": result.details,
                    "duration": result.duration,
                    "timestamp": result.timestamp,
                }
                for name, result in results.items()
            },
        }
