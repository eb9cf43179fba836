"""Provider gateway interface consumed by the lifecycle orchestrator."""

from abc import ABC, abstractmethod


class ProviderGateway(ABC):
    """Authenticated handle to the provider's compute/image/volume/network APIs.

    Every method is a coroutine. Remote failures raise ``ProviderError``
    (or ``AuthFailureError`` / ``NotFoundError``) from ``stackvm.errors``.
    """

    # ── Flavors and images ─────────────────────────────────────────

    @abstractmethod
    async def resolve_flavor(self, name):
        """Return the flavor ID for *name*, or raise NotFoundError."""

    @abstractmethod
    async def find_image_by_name(self, name):
        """Return the ID of the first image named exactly *name*, or ""."""

    @abstractmethod
    async def upload_image(self, metadata, path):
        """Create an image record from *metadata*, upload *path*, return its ID."""

    @abstractmethod
    async def image_status(self, image_id):
        """Return the raw image status string."""

    # ── Instances ─────────────────────────────────────────────────

    @abstractmethod
    async def create_instance(self, spec):
        """Create an instance from an InstanceSpec and return its ID."""

    @abstractmethod
    async def delete_instance(self, instance_id):
        pass

    @abstractmethod
    async def start_instance(self, instance_id):
        pass

    @abstractmethod
    async def stop_instance(self, instance_id):
        pass

    @abstractmethod
    async def instance_status(self, instance_id):
        """Return the raw instance status, or None if the instance is gone."""

    @abstractmethod
    async def instance_addresses(self, instance_id, network_ids):
        """Return ``[{"addr": ..., "type": "fixed"|"floating", "network": ...}]``
        for the instance's addresses on *network_ids*."""

    # ── Floating IPs ──────────────────────────────────────────────

    @abstractmethod
    async def allocate_floating_ip(self, pool):
        """Allocate a floating IP from *pool* and return a FloatingIP."""

    @abstractmethod
    async def associate_floating_ip(self, instance_id, ip):
        pass

    @abstractmethod
    async def disassociate_floating_ip(self, instance_id, ip):
        pass

    @abstractmethod
    async def delete_floating_ip(self, floating_ip_id):
        pass

    # ── Volumes ───────────────────────────────────────────────────

    @abstractmethod
    async def create_volume(self, spec):
        """Create a volume from a VolumeSpec and return its ID."""

    @abstractmethod
    async def attach_volume(self, volume_id, instance_id, device=""):
        """Attach the volume and return the device it was attached as."""

    @abstractmethod
    async def detach_volume(self, volume_id, instance_id):
        pass

    @abstractmethod
    async def delete_volume(self, volume_id):
        pass

    @abstractmethod
    async def volume_status(self, volume_id):
        """Return the raw volume status, or "deleted" if the volume is gone."""

    async def close(self):
        """Release the session. Default: nothing to release."""
