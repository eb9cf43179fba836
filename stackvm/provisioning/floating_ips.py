"""Floating IP allocation/association and the reverse on teardown."""

import logging

from stackvm.errors import CombinedError, ProviderError, StackVMError, StageError

logger = logging.getLogger(__name__)


async def allocate_and_associate(gateway, instance_id, pool):
    """Allocate a floating IP from *pool* and associate it with the instance.

    If association fails the allocated IP is deleted (best effort) so it does
    not leak; the raised CombinedError lists both failures.
    """
    logger.info(f"Allocating floating IP from pool '{pool}'...")
    try:
        fip = await gateway.allocate_floating_ip(pool)
    except StackVMError as e:
        raise ProviderError(f"unable to create a floating ip: {e}", stage="allocate_floating_ip") from e

    try:
        await gateway.associate_floating_ip(instance_id, fip.ip)
    except StackVMError as e:
        errors = [StageError("associate_floating_ip", e)]
        try:
            await gateway.delete_floating_ip(fip.id)
        except StackVMError as delete_err:
            logger.error(f"Failed to delete unassociated floating IP {fip.ip}: {delete_err}")
            errors.append(StageError("delete_floating_ip", delete_err))
        raise CombinedError(errors) from e

    logger.info(f"Floating IP {fip.ip} associated with {instance_id}.")
    return fip


async def disassociate_and_delete(gateway, instance_id, fip):
    """Disassociate and delete *fip*. Both steps always run.

    Returns:
        List of StageError, empty if both succeeded.
    """
    errors = []
    try:
        await gateway.disassociate_floating_ip(instance_id, fip.ip)
    except StackVMError as e:
        errors.append(StageError("disassociate_floating_ip", e))

    try:
        await gateway.delete_floating_ip(fip.id)
    except StackVMError as e:
        errors.append(StageError("delete_floating_ip", e))

    if not errors:
        logger.info(f"Floating IP {fip.ip} released.")
    return errors
