"""Volume management: create/attach on provision, detach/delete on teardown."""

import logging

from stackvm.errors import (
    StackVMError,
    StageError,
    VolumeAttachError,
    VolumeCreateError,
    VolumeDeleteError,
    VolumeDetachError,
)
from stackvm.provisioning.poller import poll_until, status_in
from stackvm.provisioning.types import (
    VOLUME_AVAILABLE,
    VOLUME_DELETED,
    VOLUME_ERROR,
    VOLUME_ERROR_DELETING,
    Volume,
    VolumeSpec,
)

logger = logging.getLogger(__name__)


async def _wait_for_volume(gateway, volume_id, ready, config, failed=None):
    async def fetch():
        return await gateway.volume_status(volume_id)

    return await poll_until(
        fetch,
        status_in(*ready),
        is_failed=status_in(*failed) if failed else None,
        timeout=config.volume_timeout,
        interval=config.poll_interval,
        description=f"volume {volume_id}",
    )


async def create_and_attach_volume(gateway, instance_id, volume, config):
    """Create *volume*, wait for it to become available and attach it.

    Returns:
        A new Volume with ``id`` and the effective ``device`` set.

    Raises:
        VolumeCreateError: creation or the availability wait failed.
        VolumeAttachError: the attach call failed.
        Both carry ``cleanup_errors`` if deleting the orphaned volume failed.
    """
    name = volume.name or f"{instance_id}-volume"
    logger.info(f"Creating volume '{name}' ({volume.size} GB)...")
    try:
        volume_id = await gateway.create_volume(VolumeSpec(name=name, size=volume.size, type=volume.type))
    except StackVMError as e:
        raise VolumeCreateError(f"failed to create volume '{name}': {e}") from e

    try:
        await _wait_for_volume(gateway, volume_id, [VOLUME_AVAILABLE], config, failed=[VOLUME_ERROR])
    except StackVMError as e:
        cleanup = await _delete_orphan(gateway, volume_id)
        raise VolumeCreateError(f"volume {volume_id} did not become available: {e}", cleanup) from e

    try:
        device = await gateway.attach_volume(volume_id, instance_id, volume.device)
    except StackVMError as e:
        cleanup = await _delete_orphan(gateway, volume_id)
        raise VolumeAttachError(f"failed to attach volume {volume_id} to {instance_id}: {e}", cleanup) from e

    logger.info(f"Volume {volume_id} attached to {instance_id} as {device or 'auto'}.")
    return Volume(name=name, size=volume.size, type=volume.type, device=device or volume.device, id=volume_id)


async def _delete_orphan(gateway, volume_id):
    try:
        await gateway.delete_volume(volume_id)
    except StackVMError as e:
        logger.error(f"Failed to delete unattached volume {volume_id}: {e}")
        return [StageError("delete_volume", e)]
    return []


async def detach_and_delete_volume(gateway, instance_id, volume_id, config):
    """Detach a volume, wait until it is released and delete it."""
    logger.info(f"Detaching volume {volume_id} from {instance_id}...")
    try:
        await gateway.detach_volume(volume_id, instance_id)
        status = await _wait_for_volume(
            gateway, volume_id, [VOLUME_AVAILABLE, VOLUME_DELETED, VOLUME_ERROR_DELETING], config
        )
    except StackVMError as e:
        raise VolumeDetachError(f"failed to detach volume {volume_id}: {e}") from e

    if status == VOLUME_DELETED:
        logger.info(f"Volume {volume_id} is already deleted.")
        return

    try:
        await gateway.delete_volume(volume_id)
    except StackVMError as e:
        raise VolumeDeleteError(f"failed to delete volume {volume_id}: {e}") from e
    logger.info(f"Volume {volume_id} deleted.")
