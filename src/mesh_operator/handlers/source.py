"""
MeshSource handlers - Runs the reconciliation loop of each declared source.

Each MeshSource gets a kopf daemon that loads the manifest checkout it
points to and converges it into the cluster every ``intervalSeconds``. The
daemon patches the resource status with the converged and attempted
revisions, action counts, per-unit errors and Ready/Degraded/Drifted
conditions.

Deleting a MeshSource with pruning enabled deletes every workload applied
from it.
"""

import asyncio
import logging
from typing import Any

import kopf
from pydantic import ValidationError

from mesh_operator.constants import API_GROUP, API_VERSION, SOURCE_PLURAL
from mesh_operator.models.source import MeshSourceSpec
from mesh_operator.observability.tracing import traced_handler
from mesh_operator.runtime import get_control_plane
from mesh_operator.settings import settings
from mesh_operator.utils.kubernetes import patch_custom_status
from mesh_operator.utils.status import source_status

logger = logging.getLogger(__name__)


def parse_source_spec(spec: dict[str, Any], name: str) -> MeshSourceSpec:
    try:
        return MeshSourceSpec.model_validate(dict(spec))
    except ValidationError as e:
        raise kopf.PermanentError(f"Invalid MeshSource {name}: {e}") from e


@kopf.on.create(SOURCE_PLURAL, group=API_GROUP, version=API_VERSION)
@kopf.on.update(SOURCE_PLURAL, group=API_GROUP, version=API_VERSION)
@kopf.on.resume(SOURCE_PLURAL, group=API_GROUP, version=API_VERSION)
@traced_handler("register_source", resource_type="meshsource")
async def register_source(
    spec: dict[str, Any], name: str, namespace: str, **kwargs: Any
) -> None:
    """
    Validate a MeshSource and (re)configure its reconciliation loop.

    The daemon picks up the configured loop on its next pass.
    """
    source_spec = parse_source_spec(spec, name)
    source_id = f"{namespace}/{name}"
    loop = get_control_plane().loop_for(source_id, source_spec)
    logger.info(
        f"Registered MeshSource {source_id} (path={source_spec.path}, "
        f"selfHeal={loop.self_heal}, prune={loop.prune})"
    )


@kopf.daemon(
    SOURCE_PLURAL,
    group=API_GROUP,
    version=API_VERSION,
    cancellation_timeout=30.0,
    initial_delay=1.0,
)
async def run_source(
    spec: dict[str, Any],
    name: str,
    namespace: str,
    meta: dict[str, Any],
    stopped: kopf.DaemonStopped,
    **kwargs: Any,
) -> None:
    """
    Reconcile a MeshSource until the resource is deleted or the operator stops.

    ``spec`` is a live view, so interval and sync policy changes apply from
    the next pass on. Pass failures are logged and retried on the next tick;
    they never stop the daemon.
    """
    source_id = f"{namespace}/{name}"
    control_plane = get_control_plane()

    while not stopped:
        source_spec = parse_source_spec(spec, name)
        interval = source_spec.interval_seconds or settings.reconcile_interval_seconds

        if source_spec.suspend:
            logger.debug(f"MeshSource {source_id} is suspended")
            await stopped.wait(interval)
            continue

        loop = control_plane.loop_for(source_id, source_spec)
        source = control_plane.source_for(source_id, source_spec)
        try:
            result = await loop.run_once(source)
        except Exception as e:
            logger.error(f"Reconciliation pass of {source_id} failed: {e}", exc_info=True)
        else:
            status = source_status(
                result,
                loop.last_converged_revision,
                loop.last_attempted_revision,
                generation=meta.get("generation", 0),
            )
            try:
                await asyncio.to_thread(
                    patch_custom_status, SOURCE_PLURAL, namespace, name, status
                )
            except Exception as e:
                logger.warning(f"Failed to patch status of MeshSource {source_id}: {e}")

        await stopped.wait(interval)

    logger.info(f"Reconciliation daemon of {source_id} stopped ({stopped.reason})")


@kopf.on.delete(SOURCE_PLURAL, group=API_GROUP, version=API_VERSION)
@traced_handler("delete_source", resource_type="meshsource")
async def delete_source(
    spec: dict[str, Any], name: str, namespace: str, **kwargs: Any
) -> None:
    """
    Handle MeshSource deletion.

    With pruning enabled every workload applied from the source is deleted
    before the resource goes away; failures keep the finalizer and retry.
    """
    source_id = f"{namespace}/{name}"
    control_plane = get_control_plane()
    try:
        source_spec = MeshSourceSpec.model_validate(dict(spec))
    except ValidationError:
        logger.warning(f"Deleting invalid MeshSource {source_id} without pruning")
        control_plane.forget_source(source_id)
        return

    loop = control_plane.loop_for(source_id, source_spec)
    if loop.prune:
        logger.info(f"Pruning workloads of deleted MeshSource {source_id}")
        result = await loop.reconcile([], revision=None)
        if result.errors:
            raise kopf.TemporaryError(
                f"Failed to prune {len(result.errors)} workloads of {source_id}",
                delay=30,
            )
    await control_plane.workload_store.forget_source(source_id)
    control_plane.forget_source(source_id)
    logger.info(f"MeshSource {source_id} removed")
