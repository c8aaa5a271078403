"""
Materialization of synced values as Kubernetes secrets.

Secrets written here carry the operator's ownership labels and annotations
recording the value hash, the external version and the sync time. Deleting
an already absent secret is not an error.
"""

import base64
import logging
from datetime import UTC, datetime
from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..constants import (
    EXTERNAL_VERSION_ANNOTATION,
    SYNCED_AT_ANNOTATION,
    VALUE_HASH_ANNOTATION,
)
from ..errors import KubernetesAPIError
from ..models.secret import ExternalSecretBinding
from ..models.types import SecretData
from .ownership import is_managed_by_operator, secret_labels

logger = logging.getLogger(__name__)


def build_secret_body(
    binding: ExternalSecretBinding,
    data: SecretData,
    value_hash: str,
    version: str | None,
) -> dict[str, Any]:
    annotations = {
        VALUE_HASH_ANNOTATION: value_hash,
        SYNCED_AT_ANNOTATION: datetime.now(UTC).isoformat(),
    }
    if version is not None:
        annotations[EXTERNAL_VERSION_ANNOTATION] = version
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": binding.target.name,
            "namespace": binding.namespace,
            "labels": secret_labels(binding.binding_id),
            "annotations": annotations,
        },
        "type": binding.target.type,
        "data": {
            key: base64.b64encode(value.encode()).decode() for key, value in data.items()
        },
    }


class SecretManager:
    """Manages the local Kubernetes secrets of external secret bindings."""

    def __init__(self, k8s_client: client.ApiClient | None = None):
        self.k8s_client = k8s_client
        self._v1: client.CoreV1Api | None = None

    @property
    def v1(self) -> client.CoreV1Api:
        if self._v1 is None:
            if self.k8s_client:
                self._v1 = client.CoreV1Api(self.k8s_client)
            else:
                self._v1 = client.CoreV1Api()
        return self._v1

    async def get_secret(self, name: str, namespace: str) -> client.V1Secret | None:
        """
        Retrieve a secret.

        Returns:
            Secret object if found, None if not found

        Raises:
            KubernetesAPIError: If read fails for reasons other than 404
        """
        try:
            return self.v1.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise KubernetesAPIError(
                f"Failed to read secret {namespace}/{name}: {e.reason}",
                reason=e.reason,
            ) from e

    async def read_hash(self, namespace: str, name: str) -> str | None:
        """Value hash recorded on the local secret, None if it does not exist."""
        secret = await self.get_secret(name, namespace)
        if secret is None:
            return None
        annotations = (secret.metadata.annotations if secret.metadata else None) or {}
        # A secret without our hash (e.g. created by hand) is treated as stale
        return annotations.get(VALUE_HASH_ANNOTATION, "")

    async def materialize(
        self,
        binding: ExternalSecretBinding,
        data: SecretData,
        value_hash: str,
        version: str | None,
    ) -> None:
        """
        Create or replace the local secret of a binding.

        Raises:
            KubernetesAPIError: If the write fails, or the name is taken by a
                secret the operator does not manage
        """
        name, namespace = binding.target.name, binding.namespace
        body = build_secret_body(binding, data, value_hash, version)
        try:
            self.v1.create_namespaced_secret(namespace=namespace, body=body)
            logger.info(f"Created secret {namespace}/{name} for {binding.binding_id}")
            return
        except ApiException as e:
            if e.status != 409:
                raise KubernetesAPIError(
                    f"Failed to create secret {namespace}/{name}: {e.reason}",
                    reason=e.reason,
                ) from e

        existing = await self.get_secret(name, namespace)
        labels = (existing.metadata.labels if existing and existing.metadata else None)
        if existing is not None and not is_managed_by_operator(labels):
            raise KubernetesAPIError(
                f"Secret {namespace}/{name} exists and is not managed by the operator",
                reason="Conflict",
                retryable=False,
            )
        try:
            self.v1.replace_namespaced_secret(name=name, namespace=namespace, body=body)
            logger.info(f"Updated secret {namespace}/{name} for {binding.binding_id}")
        except ApiException as e:
            raise KubernetesAPIError(
                f"Failed to update secret {namespace}/{name}: {e.reason}",
                reason=e.reason,
            ) from e

    async def delete(self, namespace: str, name: str) -> bool:
        """
        Delete a local secret.

        Returns:
            True if a secret was deleted, False if it did not exist
        """
        try:
            self.v1.delete_namespaced_secret(name=name, namespace=namespace)
            logger.info(f"Deleted secret {namespace}/{name}")
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise KubernetesAPIError(
                f"Failed to delete secret {namespace}/{name}: {e.reason}",
                reason=e.reason,
            ) from e


class InMemorySecretSink:
    """Local secret store kept in a dict, used in dry-run mode and tests."""

    def __init__(self) -> None:
        self.secrets: dict[tuple[str, str], dict[str, Any]] = {}

    async def read_hash(self, namespace: str, name: str) -> str | None:
        secret = self.secrets.get((namespace, name))
        if secret is None:
            return None
        return secret["metadata"]["annotations"].get(VALUE_HASH_ANNOTATION, "")

    async def materialize(
        self,
        binding: ExternalSecretBinding,
        data: SecretData,
        value_hash: str,
        version: str | None,
    ) -> None:
        body = build_secret_body(binding, data, value_hash, version)
        self.secrets[(binding.namespace, binding.target.name)] = body

    async def delete(self, namespace: str, name: str) -> bool:
        return self.secrets.pop((namespace, name), None) is not None

    def decoded(self, namespace: str, name: str) -> SecretData | None:
        secret = self.secrets.get((namespace, name))
        if secret is None:
            return None
        return {k: base64.b64decode(v).decode() for k, v in secret["data"].items()}
