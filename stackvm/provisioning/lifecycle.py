"""VM lifecycle orchestration: provision, start, halt, state, destroy.

Provision runs a fixed sequence of dependent provider calls. Once the
instance exists, any later failure tears everything down again and the caller
gets a ProvisionError listing the failure and any teardown failures. Destroy
attempts every teardown stage regardless of earlier failures.
"""

import ipaddress
import logging
from dataclasses import replace

from stackvm.config import LifecycleConfig, validate_descriptor
from stackvm.errors import (
    AlreadyProvisionedError,
    CombinedError,
    InvalidStateError,
    MissingIdentifierError,
    NotFoundError,
    NotSupportedError,
    ProvisionError,
    StackVMError,
    StageError,
)
from stackvm.provisioning.floating_ips import allocate_and_associate, disassociate_and_delete
from stackvm.provisioning.images import resolve_image
from stackvm.provisioning.poller import poll_until
from stackvm.provisioning.ssh import probe_ssh, wait_for_ssh
from stackvm.provisioning.ssh_transport import SSHClient
from stackvm.provisioning.types import (
    ADDRESS_FIXED,
    ADDRESS_FLOATING,
    DEFAULT_SECURITY_GROUP,
    PRIVATE_IP,
    PUBLIC_IP,
    InstanceSpec,
    ProviderStatus,
    VMState,
    translate_status,
)
from stackvm.provisioning.volumes import create_and_attach_volume, detach_and_delete_volume

logger = logging.getLogger(__name__)


def _default_gateway_factory(descriptor):
    from stackvm.gateway.openstack import OpenStackGateway

    return OpenStackGateway.from_descriptor(descriptor)


class VirtualMachine:
    """Lifecycle operations over one VMDescriptor.

    The descriptor is the only state: provisioning writes the acquired
    identifiers onto it and destroy clears them. A descriptor must not be
    driven by two operations at once.

    Args:
        descriptor: the VMDescriptor to operate on.
        config: LifecycleConfig with timeouts and poll interval.
        gateway_factory: callable(descriptor) -> ProviderGateway. The gateway
            is created on first use and dropped by destroy().
        ssh_probe: coroutine(host, credentials, port) -> bool used for SSH
            readiness.
    """

    def __init__(self, descriptor, config=None, gateway_factory=None, ssh_probe=None):
        self.descriptor = descriptor
        self.config = config or LifecycleConfig()
        self._gateway_factory = gateway_factory or _default_gateway_factory
        self._ssh_probe = ssh_probe or probe_ssh
        self._gateway = None

    def get_name(self):
        return self.descriptor.name

    def _get_gateway(self):
        if self._gateway is None:
            self._gateway = self._gateway_factory(self.descriptor)
        return self._gateway

    def _require_instance(self):
        if not self.descriptor.instance_id:
            raise MissingIdentifierError("instance ID")
        return self.descriptor.instance_id

    # ── Provision ─────────────────────────────────────────────────

    async def provision(self):
        """Create the instance and everything attached to it.

        Raises:
            AlreadyProvisionedError: the descriptor already owns an instance.
            ConfigurationError: required descriptor fields are missing.
            NotFoundError: the flavor or image cannot be resolved.
            ProviderError: image resolution or instance creation failed.
            ProvisionError: a later stage failed; the instance was torn down.
        """
        vm = self.descriptor
        if vm.instance_id:
            raise AlreadyProvisionedError(f"VM '{vm.name}' already owns instance {vm.instance_id}")
        validate_descriptor(vm)
        gateway = self._get_gateway()

        flavor_id = await gateway.resolve_flavor(vm.flavor_name)
        logger.info(f"Flavor '{vm.flavor_name}' -> {flavor_id}")

        acquired = vm.acquired
        image_id = await resolve_image(gateway, vm, self.config)
        acquired = replace(acquired, image_id=image_id)
        vm.commit(acquired)

        spec = InstanceSpec(
            name=vm.name,
            flavor_id=flavor_id,
            image_id=image_id,
            networks=list(vm.networks),
            security_groups=[vm.security_group or DEFAULT_SECURITY_GROUP],
            user_data=vm.user_data,
            admin_password=vm.admin_password,
        )
        logger.info(f"Creating instance '{vm.name}' (flavor={vm.flavor_name}, image={image_id})...")
        instance_id = await gateway.create_instance(spec)
        acquired = replace(acquired, instance_id=instance_id)
        vm.commit(acquired)
        logger.info(f"Instance created (id={instance_id}). Waiting for it to run...")

        stages = [
            ("wait_running", self._wait_running),
            ("floating_ip", self._attach_floating_ip),
            ("wait_ssh", self._wait_ssh_ready),
            ("volume", self._attach_volume),
        ]
        for stage, step in stages:
            try:
                acquired = await step(gateway, acquired)
            except Exception as e:
                await self._rollback(stage, e)
            vm.commit(acquired)

        logger.info(f"VM '{vm.name}' provisioned (instance={instance_id}, ip={vm.floating_ip.ip}).")

    async def _wait_running(self, gateway, acquired):
        await self._wait_for_state(gateway, acquired.instance_id, VMState.RUNNING)
        return acquired

    async def _attach_floating_ip(self, gateway, acquired):
        fip = await allocate_and_associate(gateway, acquired.instance_id, self.descriptor.floating_ip_pool)
        return replace(acquired, floating_ip=fip)

    async def _wait_ssh_ready(self, gateway, acquired):
        await self._wait_ssh(acquired.floating_ip.ip)
        return acquired

    async def _attach_volume(self, gateway, acquired):
        volume = self.descriptor.volume
        if volume.size <= 0:
            return acquired
        attached = await create_and_attach_volume(gateway, acquired.instance_id, volume, self.config)
        return replace(acquired, volume_id=attached.id, volume_device=attached.device)

    async def _rollback(self, stage, error):
        if isinstance(error, CombinedError):
            causes = list(error.errors)
        else:
            causes = [StageError(stage, error)]
        causes.extend(getattr(error, "cleanup_errors", []))

        instance_id = self.descriptor.instance_id
        logger.error(f"Provision failed at {stage}: {error}. Tearing down instance {instance_id}...")
        teardown_errors = []
        try:
            await self.destroy()
        except CombinedError as e:
            teardown_errors = e.errors
        except StackVMError as e:
            teardown_errors = [StageError("destroy", e)]
        raise ProvisionError(causes, teardown_errors, instance_id) from error

    # ── Waits ─────────────────────────────────────────────────────

    async def _wait_for_state(self, gateway, instance_id, target):
        async def fetch():
            return translate_status(await gateway.instance_status(instance_id))

        await poll_until(
            fetch,
            lambda state: state == target,
            is_failed=lambda state: state == VMState.ERROR,
            timeout=self.config.action_timeout,
            interval=self.config.poll_interval,
            description=f"instance {instance_id} to be {target.value}",
        )

    async def _wait_ssh(self, host):
        await wait_for_ssh(
            host,
            self.descriptor.credentials,
            port=self.config.ssh_port,
            timeout=self.config.ssh_timeout,
            interval=self.config.poll_interval,
            probe=self._ssh_probe,
        )

    # ── Destroy ───────────────────────────────────────────────────

    async def destroy(self):
        """Release the floating IP, the volume and the instance, in that order.

        Every stage is attempted even if an earlier one fails. Identifiers are
        cleared only for resources that were actually removed, so a later
        destroy() can retry the rest. The gateway is always dropped.

        Raises:
            MissingIdentifierError: no instance to destroy.
            CombinedError: one or more stages failed.
        """
        vm = self.descriptor
        instance_id = self._require_instance()
        gateway = self._get_gateway()
        errors = []
        try:
            if vm.floating_ip is not None:
                fip_errors = await disassociate_and_delete(gateway, instance_id, vm.floating_ip)
                errors.extend(fip_errors)
                if "delete_floating_ip" not in {e.stage for e in fip_errors}:
                    vm.floating_ip = None

            if vm.volume.id:
                try:
                    await detach_and_delete_volume(gateway, instance_id, vm.volume.id, self.config)
                    vm.volume.id = ""
                except StackVMError as e:
                    errors.append(StageError(getattr(e, "stage", "volume") or "volume", e))

            try:
                await self._delete_instance(gateway, instance_id)
                vm.instance_id = ""
            except StackVMError as e:
                errors.append(StageError("delete_instance", e))
        finally:
            self._gateway = None
            await gateway.close()

        if errors:
            logger.error(f"Destroy of instance {instance_id} incomplete: {len(errors)} stage(s) failed.")
            raise CombinedError(errors)
        logger.info(f"Instance {instance_id} destroyed.")

    async def _delete_instance(self, gateway, instance_id):
        logger.info(f"Deleting instance {instance_id}...")
        try:
            await gateway.delete_instance(instance_id)
        except NotFoundError:
            logger.warning(f"Instance {instance_id} already gone.")
            return

        async def fetch():
            return await gateway.instance_status(instance_id)

        await poll_until(
            fetch,
            lambda status: status is None or ProviderStatus.parse(status) == ProviderStatus.DELETED,
            is_failed=lambda status: ProviderStatus.parse(status) == ProviderStatus.ERROR,
            timeout=self.config.action_timeout,
            interval=self.config.poll_interval,
            description=f"instance {instance_id} deletion",
        )

    # ── Start / Halt / State ──────────────────────────────────────

    async def get_state(self):
        """Return the normalized VMState of the instance."""
        instance_id = self._require_instance()
        status = await self._get_gateway().instance_status(instance_id)
        if status is None:
            raise NotFoundError("instance", instance_id)
        return translate_status(status)

    async def halt(self):
        """Stop a running instance and wait until it is halted."""
        instance_id = self._require_instance()
        state = await self.get_state()
        if state != VMState.RUNNING:
            raise InvalidStateError(f"the VM is not running ({state.value}), so cannot be halted")

        gateway = self._get_gateway()
        logger.info(f"Stopping instance {instance_id}...")
        await gateway.stop_instance(instance_id)
        await self._wait_for_state(gateway, instance_id, VMState.HALTED)
        logger.info(f"Instance {instance_id} halted.")

    async def start(self):
        """Boot a halted instance and wait until it accepts SSH."""
        instance_id = self._require_instance()
        state = await self.get_state()
        if state != VMState.HALTED:
            raise InvalidStateError(f"the VM is not halted ({state.value}), so cannot be started")

        logger.info(f"Starting instance {instance_id}...")
        await self._get_gateway().start_instance(instance_id)
        await self._wait_ssh(await self._public_ip())

    async def suspend(self):
        raise NotSupportedError("suspend is not supported by this provider")

    async def resume(self):
        raise NotSupportedError("resume is not supported by this provider")

    # ── Addresses / SSH ───────────────────────────────────────────

    async def get_ips(self):
        """Return ``[public, private]``; either slot may be None.

        Slot 0 only takes floating addresses and slot 1 only fixed ones.
        """
        instance_id = self._require_instance()
        addresses = await self._get_gateway().instance_addresses(instance_id, self.descriptor.networks)
        ips = [None, None]
        for address in addresses:
            if address.get("type") == ADDRESS_FLOATING:
                ips[PUBLIC_IP] = ipaddress.ip_address(address["addr"])
            elif address.get("type") == ADDRESS_FIXED:
                ips[PRIVATE_IP] = ipaddress.ip_address(address["addr"])
        return ips

    async def _public_ip(self):
        if self.descriptor.floating_ip is not None:
            return self.descriptor.floating_ip.ip
        public = (await self.get_ips())[PUBLIC_IP]
        if public is None:
            raise NotFoundError("public IP", self.descriptor.instance_id)
        return str(public)

    async def get_ssh_client(self, options=None):
        """Return an SSHClient bound to the VM's public IP."""
        public = (await self.get_ips())[PUBLIC_IP]
        if public is None:
            raise NotFoundError("public IP", self.descriptor.instance_id)
        return SSHClient(public, self.descriptor.credentials, port=self.config.ssh_port, options=options)
