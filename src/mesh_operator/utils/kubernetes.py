"""
Kubernetes utilities for the mesh operator.

Provides API client setup, custom resource status patching and the
cluster-backed workload store used by the reconciliation loop.

The workload store records every kind it applies for a source in an
inventory ConfigMap next to the MeshSource, so objects of kinds outside
DEFAULT_MANAGED_KINDS are still listed (and pruned) after a restart.

The workload store keeps the last-applied body and its revision hash in
annotations on every object it writes. Writes are compare-and-swap: the
caller states the revision hash it expects to find, and the write itself is
conditioned on the resourceVersion that was read, so a concurrent writer
makes the operation fail instead of being silently overwritten.
"""

import asyncio
import logging
from typing import Any

from kubernetes import client, config, dynamic
from kubernetes.client.rest import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from ..constants import (
    API_GROUP,
    API_VERSION,
    INVENTORY_CONFIGMAP_PREFIX,
    INVENTORY_SOURCE_ANNOTATION,
    OPERATOR_LABEL_KEY,
    OPERATOR_LABEL_VALUE,
    REVISION_HASH_ANNOTATION,
)
from ..errors import ConvergenceError, KubernetesAPIError
from ..models.desired_state import DesiredStateUnit, ObservedState, UnitKey
from ..models.types import ManifestBody
from ..settings import settings
from .ownership import is_owned_by_source, managed_selector

logger = logging.getLogger(__name__)

# Kinds listed when looking for pruning candidates; kinds applied at runtime
# are added on first use
DEFAULT_MANAGED_KINDS: dict[str, str] = {
    "Deployment": "apps/v1",
    "StatefulSet": "apps/v1",
    "DaemonSet": "apps/v1",
    "Service": "v1",
    "ServiceAccount": "v1",
    "ConfigMap": "v1",
    "NetworkPolicy": "networking.k8s.io/v1",
    "MeshAuthorizationPolicy": f"{API_GROUP}/{API_VERSION}",
    "MeshRoute": f"{API_GROUP}/{API_VERSION}",
    "ExternalSecret": f"{API_GROUP}/{API_VERSION}",
    "MeshConstraintTemplate": f"{API_GROUP}/{API_VERSION}",
    "MeshConstraint": f"{API_GROUP}/{API_VERSION}",
}

def inventory_location(source: str) -> tuple[str, str]:
    """Namespace and name of the kind inventory ConfigMap of a source."""
    namespace, _, name = source.rpartition("/")
    return namespace or settings.operator_namespace, f"{INVENTORY_CONFIGMAP_PREFIX}{name}"


# HTTP statuses that indicate a lost compare-and-swap
CONFLICT_STATUSES = {409, 412}


def get_kubernetes_client() -> client.ApiClient:
    """
    Get configured Kubernetes API client.

    Tries in-cluster configuration first, then the local kubeconfig for
    development.
    """
    try:
        config.load_incluster_config()
        logger.debug("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            config.load_kube_config()
            logger.debug("Loaded kubeconfig from local environment")
        except config.ConfigException as e:
            logger.error(f"Failed to load Kubernetes configuration: {e}")
            raise
    return client.ApiClient()


def patch_custom_status(
    plural: str, namespace: str | None, name: str, status: dict[str, Any]
) -> None:
    """
    Merge-patch the status subresource of one of the operator's resources.

    A resource deleted in the meantime is ignored.
    """
    api = client.CustomObjectsApi(get_kubernetes_client())
    body = {"status": status}
    try:
        if namespace:
            api.patch_namespaced_custom_object_status(
                API_GROUP, API_VERSION, namespace, plural, name, body
            )
        else:
            api.patch_cluster_custom_object_status(
                API_GROUP, API_VERSION, plural, name, body
            )
    except ApiException as e:
        if e.status == 404:
            logger.debug(f"{plural}/{name} disappeared before status patch")
            return
        raise KubernetesAPIError(
            f"Failed to patch status of {plural}/{name}: {e.reason}", reason=e.reason
        ) from e


class KubernetesWorkloadStore:
    """Cluster workload API backed by the kubernetes dynamic client."""

    def __init__(
        self,
        k8s_client: client.ApiClient | None = None,
        kinds: dict[str, str] | None = None,
    ):
        self.k8s_client = k8s_client
        self.kinds = dict(kinds or DEFAULT_MANAGED_KINDS)
        self._dynamic: dynamic.DynamicClient | None = None
        self._core: client.CoreV1Api | None = None
        # source -> {kind: apiVersion} already recorded in its inventory
        self._inventory: dict[str, dict[str, str]] = {}

    @property
    def dynamic_client(self) -> dynamic.DynamicClient:
        if self._dynamic is None:
            self._dynamic = dynamic.DynamicClient(
                self.k8s_client or get_kubernetes_client()
            )
        return self._dynamic

    @property
    def core_api(self) -> client.CoreV1Api:
        if self._core is None:
            self._core = client.CoreV1Api(self.k8s_client or get_kubernetes_client())
        return self._core

    def _resource(self, kind: str):
        api_version = self.kinds.get(kind)
        if api_version is None:
            raise ConvergenceError(kind, "kind is not known to the workload store")
        try:
            return self.dynamic_client.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as e:
            raise ConvergenceError(
                kind, f"{api_version} {kind} is not served by the cluster", retryable=False
            ) from e

    def _read(self, key: UnitKey) -> ManifestBody | None:
        resource = self._resource(key.kind)
        try:
            obj = resource.get(name=key.name, namespace=key.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return obj.to_dict()

    def _read_inventory(self, source: str) -> dict[str, str]:
        namespace, name = inventory_location(source)
        try:
            config_map = self.core_api.read_namespaced_config_map(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return {}
            raise KubernetesAPIError(
                f"Failed to read kind inventory {namespace}/{name}: {e.reason}",
                reason=e.reason,
            ) from e
        return dict(config_map.data or {})

    def _record_kind(self, source: str, kind: str, api_version: str) -> None:
        """Add a kind to the source inventory before anything of it is written."""
        if self._inventory.get(source, {}).get(kind) == api_version:
            return
        namespace, name = inventory_location(source)
        try:
            try:
                self.core_api.patch_namespaced_config_map(
                    name, namespace, {"data": {kind: api_version}}
                )
            except ApiException as e:
                if e.status != 404:
                    raise
                self.core_api.create_namespaced_config_map(
                    namespace,
                    client.V1ConfigMap(
                        metadata=client.V1ObjectMeta(
                            name=name,
                            namespace=namespace,
                            labels={OPERATOR_LABEL_KEY: OPERATOR_LABEL_VALUE},
                            annotations={INVENTORY_SOURCE_ANNOTATION: source},
                        ),
                        data={kind: api_version},
                    ),
                )
        except ApiException as e:
            raise ConvergenceError(
                f"{kind} of {source}", f"failed to record kind in inventory: {e.reason}"
            ) from e
        self._inventory.setdefault(source, {})[kind] = api_version

    def _forget_source(self, source: str) -> None:
        namespace, name = inventory_location(source)
        try:
            self.core_api.delete_namespaced_config_map(name, namespace)
        except ApiException as e:
            if e.status != 404:
                raise KubernetesAPIError(
                    f"Failed to delete kind inventory {namespace}/{name}: {e.reason}",
                    reason=e.reason,
                ) from e
        self._inventory.pop(source, None)

    def _list_managed(self, source: str) -> list[ManifestBody]:
        inventory = self._read_inventory(source)
        self._inventory[source] = dict(inventory)
        for kind, api_version in inventory.items():
            self.kinds.setdefault(kind, api_version)

        objects: list[ManifestBody] = []
        selector = managed_selector(source)
        for kind in list(self.kinds):
            try:
                resource = self._resource(kind)
            except ConvergenceError:
                # CRD not installed; nothing of this kind can be managed
                continue
            result = resource.get(label_selector=selector)
            objects.extend(item.to_dict() for item in result.items)
        return objects

    def _check_expected(
        self, key: UnitKey, current: ManifestBody | None, expected_hash: str | None
    ) -> None:
        current_hash = None
        if current is not None:
            annotations = (current.get("metadata") or {}).get("annotations") or {}
            current_hash = annotations.get(REVISION_HASH_ANNOTATION, "")
        if current_hash != expected_hash:
            raise ConvergenceError(
                str(key),
                f"revision hash changed concurrently "
                f"(expected {expected_hash}, found {current_hash})",
            )

    def _apply(
        self, unit: DesiredStateUnit, body: ManifestBody, expected_hash: str | None
    ) -> ManifestBody:
        self.kinds.setdefault(unit.kind, unit.api_version)
        if unit.source:
            self._record_kind(unit.source, unit.kind, unit.api_version)
        resource = self._resource(unit.kind)
        current = self._read(unit.key)
        self._check_expected(unit.key, current, expected_hash)

        try:
            if current is None:
                obj = resource.create(body=body, namespace=unit.namespace)
            else:
                body = {
                    **body,
                    "metadata": {
                        **body["metadata"],
                        "resourceVersion": current["metadata"]["resourceVersion"],
                    },
                }
                obj = resource.replace(body=body, namespace=unit.namespace)
        except ApiException as e:
            if e.status in CONFLICT_STATUSES:
                raise ConvergenceError(
                    str(unit.key), "object changed concurrently"
                ) from e
            raise ConvergenceError(
                str(unit.key),
                f"API server rejected the write: {e.reason}",
                retryable=e.status is None or e.status >= 500 or e.status == 429,
            ) from e
        return obj.to_dict()

    def _delete(self, key: UnitKey, expected_hash: str | None) -> None:
        resource = self._resource(key.kind)
        current = self._read(key)
        if current is None:
            return
        self._check_expected(key, current, expected_hash)
        preconditions = client.V1Preconditions(
            resource_version=current["metadata"]["resourceVersion"]
        )
        try:
            resource.delete(
                name=key.name,
                namespace=key.namespace,
                body=client.V1DeleteOptions(preconditions=preconditions),
            )
        except ApiException as e:
            if e.status == 404:
                return
            if e.status in CONFLICT_STATUSES:
                raise ConvergenceError(str(key), "object changed concurrently") from e
            raise ConvergenceError(str(key), f"delete failed: {e.reason}") from e

    async def list_managed(self, source: str) -> list[ObservedState]:
        objects = await asyncio.to_thread(self._list_managed, source)
        return [
            ObservedState.from_object(obj, source=source)
            for obj in objects
            if is_owned_by_source((obj.get("metadata") or {}).get("labels"), source)
        ]

    async def get(self, key: UnitKey) -> ObservedState | None:
        obj = await asyncio.to_thread(self._read, key)
        return ObservedState.from_object(obj) if obj is not None else None

    async def apply(
        self, unit: DesiredStateUnit, body: ManifestBody, expected_hash: str | None
    ) -> ObservedState:
        obj = await asyncio.to_thread(self._apply, unit, body, expected_hash)
        return ObservedState.from_object(obj, source=unit.source)

    async def delete(self, key: UnitKey, expected_hash: str | None) -> None:
        await asyncio.to_thread(self._delete, key, expected_hash)

    async def forget_source(self, source: str) -> None:
        """Drop the kind inventory of a deleted source."""
        await asyncio.to_thread(self._forget_source, source)
