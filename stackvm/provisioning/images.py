"""Image resolution: reuse an image by name or upload one."""

import logging

from stackvm.errors import NotFoundError
from stackvm.provisioning.poller import poll_until, status_in
from stackvm.provisioning.types import IMAGE_DELETED, IMAGE_KILLED, IMAGE_QUEUED

logger = logging.getLogger(__name__)


async def resolve_image(gateway, descriptor, config):
    """Return the image ID to boot *descriptor* from.

    An explicit ``image_id`` wins; otherwise the first image named
    ``image_metadata.name`` is used, and if none exists the image at
    ``image_path`` is uploaded.
    """
    if descriptor.image_id:
        return descriptor.image_id

    metadata = descriptor.image_metadata
    if not metadata.name:
        raise NotFoundError("image", "<unnamed>")

    image_id = await gateway.find_image_by_name(metadata.name)
    if image_id:
        logger.info(f"Using existing image '{metadata.name}' (id={image_id}).")
        return image_id

    if not descriptor.image_path:
        raise NotFoundError("image", metadata.name)
    return await upload_image(gateway, metadata, descriptor.image_path, config)


async def upload_image(gateway, metadata, path, config):
    """Upload *path* as a new image and wait until it leaves the queued state.

    A failed upload leaves whatever image record the provider created.
    """
    logger.info(f"Uploading image '{metadata.name}' from {path}...")
    image_id = await gateway.upload_image(metadata, path)

    async def fetch():
        return await gateway.image_status(image_id)

    status = await poll_until(
        fetch,
        lambda s: s != IMAGE_QUEUED,
        is_failed=status_in(IMAGE_KILLED, IMAGE_DELETED),
        timeout=config.image_upload_timeout,
        interval=config.poll_interval,
        description=f"image {image_id} upload",
    )
    logger.info(f"Image uploaded (id={image_id}, status={status}).")
    return image_id
