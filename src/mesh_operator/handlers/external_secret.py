"""
ExternalSecret handlers - Drives the secret synchronizer.

Each ExternalSecret gets one kopf daemon, which is the only caller of
sync() for its binding, so at most one fetch/update is in flight per
binding. The daemon sleeps for the refresh interval after a successful
sync and backs off exponentially after failures. Renaming the target or
deleting the resource deletes the previously materialized local secret.
"""

import asyncio
import logging
from typing import Any

import kopf
from pydantic import ValidationError

from mesh_operator.constants import API_GROUP, API_VERSION, EXTERNAL_SECRET_PLURAL
from mesh_operator.models.secret import ExternalSecretBinding, ExternalSecretSpec
from mesh_operator.observability.tracing import traced_handler
from mesh_operator.runtime import get_control_plane
from mesh_operator.utils.kubernetes import patch_custom_status
from mesh_operator.utils.status import binding_conditions

logger = logging.getLogger(__name__)


def parse_binding(spec: dict[str, Any], name: str, namespace: str) -> ExternalSecretBinding:
    try:
        return ExternalSecretSpec.model_validate(dict(spec)).to_binding(name, namespace)
    except ValidationError as e:
        raise kopf.PermanentError(f"Invalid ExternalSecret {name}: {e}") from e


@kopf.on.create(EXTERNAL_SECRET_PLURAL, group=API_GROUP, version=API_VERSION)
@kopf.on.update(EXTERNAL_SECRET_PLURAL, group=API_GROUP, version=API_VERSION)
@kopf.on.resume(EXTERNAL_SECRET_PLURAL, group=API_GROUP, version=API_VERSION)
@traced_handler("register_external_secret", resource_type="externalsecret")
async def register_external_secret(
    spec: dict[str, Any],
    name: str,
    namespace: str,
    status: dict[str, Any],
    **kwargs: Any,
) -> None:
    """Track the binding; the last synced hash is restored from status."""
    synchronizer = get_control_plane().secret_sync
    binding = synchronizer.register(parse_binding(spec, name, namespace))
    if binding.last_synced_hash is None:
        binding.last_synced_hash = status.get("lastSyncedHash")
    await synchronizer.release_superseded(binding.binding_id)
    logger.info(
        f"Registered ExternalSecret {binding.binding_id} "
        f"({binding.ref.store}:{binding.ref.key} -> secret {binding.target.name})"
    )


@kopf.daemon(
    EXTERNAL_SECRET_PLURAL,
    group=API_GROUP,
    version=API_VERSION,
    cancellation_timeout=10.0,
)
async def run_external_secret(
    spec: dict[str, Any],
    name: str,
    namespace: str,
    meta: dict[str, Any],
    stopped: kopf.DaemonStopped,
    **kwargs: Any,
) -> None:
    """Sync one binding on its refresh interval until stopped."""
    synchronizer = get_control_plane().secret_sync
    binding_id = f"{namespace}/{name}"

    while not stopped:
        binding = synchronizer.get(binding_id)
        if binding is None:
            binding = synchronizer.register(parse_binding(spec, name, namespace))

        result = await synchronizer.sync(binding)
        if result.outcome != "in_progress":
            status = synchronizer.status(binding)
            status["conditions"] = binding_conditions(
                binding, generation=meta.get("generation", 0)
            )
            try:
                await asyncio.to_thread(
                    patch_custom_status, EXTERNAL_SECRET_PLURAL, namespace, name, status
                )
            except Exception as e:
                logger.warning(f"Failed to patch status of ExternalSecret {binding_id}: {e}")

        await stopped.wait(synchronizer.next_delay(binding))


@kopf.on.delete(EXTERNAL_SECRET_PLURAL, group=API_GROUP, version=API_VERSION)
@traced_handler("delete_external_secret", resource_type="externalsecret")
async def delete_external_secret(
    spec: dict[str, Any], name: str, namespace: str, **kwargs: Any
) -> None:
    """Cascade the deletion to the materialized local secret."""
    synchronizer = get_control_plane().secret_sync
    binding = synchronizer.get(f"{namespace}/{name}")
    if binding is None:
        try:
            binding = ExternalSecretSpec.model_validate(dict(spec)).to_binding(
                name, namespace
            )
        except ValidationError:
            logger.warning(f"ExternalSecret {namespace}/{name} was never valid")
            return

    deleted = await synchronizer.remove(binding)
    logger.info(
        f"ExternalSecret {binding.binding_id} removed"
        + (f", deleted secret {binding.target.name}" if deleted else "")
    )
