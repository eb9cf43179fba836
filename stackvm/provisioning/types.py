"""Data types for the VM descriptor and provider statuses."""

import base64
import json
from dataclasses import asdict, dataclass, field, fields
from enum import Enum


class ProviderStatus(str, Enum):
    """Instance statuses as reported by the compute API."""

    ACTIVE = "ACTIVE"
    SHUTOFF = "SHUTOFF"
    ERROR = "ERROR"
    BUILD = "BUILD"
    REBOOT = "REBOOT"
    DELETED = "DELETED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw):
        try:
            return cls(str(raw).upper())
        except ValueError:
            return cls.UNKNOWN


class VMState(str, Enum):
    """Normalized lifecycle state."""

    RUNNING = "running"
    HALTED = "halted"
    ERROR = "error"
    UNKNOWN = "unknown"


# Unmapped provider statuses translate to UNKNOWN
STATE_TRANSLATION = {
    ProviderStatus.ACTIVE: VMState.RUNNING,
    ProviderStatus.SHUTOFF: VMState.HALTED,
    ProviderStatus.ERROR: VMState.ERROR,
}


def translate_status(raw):
    """Map a raw provider status string to a VMState."""
    return STATE_TRANSLATION.get(ProviderStatus.parse(raw), VMState.UNKNOWN)


VOLUME_AVAILABLE = "available"
VOLUME_IN_USE = "in-use"
VOLUME_DELETED = "deleted"
VOLUME_ERROR = "error"
VOLUME_ERROR_DELETING = "error_deleting"

IMAGE_QUEUED = "queued"
IMAGE_KILLED = "killed"
IMAGE_DELETED = "deleted"

ADDRESS_FLOATING = "floating"
ADDRESS_FIXED = "fixed"

PUBLIC_IP = 0
PRIVATE_IP = 1

DEFAULT_SECURITY_GROUP = "default"


@dataclass
class ImageMetadata:
    """Image to upload when none with a matching name exists."""

    name: str = ""
    container_format: str = ""
    disk_format: str = ""
    min_disk: int = 0
    min_ram: int = 0


@dataclass
class Volume:
    """Desired volume attributes plus the acquired provider ``id``."""

    name: str = ""
    size: int = 0
    type: str = ""
    device: str = ""
    id: str = ""


@dataclass
class FloatingIP:
    id: str
    ip: str
    pool: str = ""


@dataclass
class SSHCredentials:
    user: str = ""
    password: str = ""
    private_key_path: str = ""


@dataclass
class InstanceSpec:
    """Arguments for a compute create call."""

    name: str
    flavor_id: str
    image_id: str
    networks: list[str] = field(default_factory=list)
    security_groups: list[str] = field(default_factory=lambda: [DEFAULT_SECURITY_GROUP])
    user_data: bytes = b""
    admin_password: str = ""


@dataclass
class VolumeSpec:
    name: str
    size: int
    type: str = ""


@dataclass(frozen=True)
class AcquiredResources:
    """Provider identifiers acquired while provisioning.

    Threaded through the provisioning stages; each stage returns a new value
    with its own identifier filled in.
    """

    image_id: str = ""
    instance_id: str = ""
    floating_ip: FloatingIP | None = None
    volume_id: str = ""
    volume_device: str = ""


@dataclass
class VMDescriptor:
    """Configuration and provider-acquired identifiers of one VM."""

    identity_endpoint: str = ""
    username: str = ""
    password: str = ""
    region: str = ""
    tenant_name: str = ""
    flavor_name: str = ""
    image_id: str = ""
    image_metadata: ImageMetadata = field(default_factory=ImageMetadata)
    image_path: str = ""
    volume: Volume = field(default_factory=Volume)
    instance_id: str = ""
    name: str = ""
    networks: list[str] = field(default_factory=list)
    floating_ip_pool: str = ""
    floating_ip: FloatingIP | None = None
    security_group: str = ""
    user_data: bytes = b""
    admin_password: str = ""
    credentials: SSHCredentials = field(default_factory=SSHCredentials)

    @property
    def acquired(self) -> AcquiredResources:
        return AcquiredResources(
            image_id=self.image_id,
            instance_id=self.instance_id,
            floating_ip=self.floating_ip,
            volume_id=self.volume.id,
            volume_device=self.volume.device if self.volume.id else "",
        )

    def commit(self, acquired: AcquiredResources):
        """Write an accumulator's identifiers back onto the descriptor."""
        self.image_id = acquired.image_id
        self.instance_id = acquired.instance_id
        self.floating_ip = acquired.floating_ip
        self.volume.id = acquired.volume_id
        if acquired.volume_id:
            self.volume.device = acquired.volume_device

    # ── Serialization ─────────────────────────────────────────────

    def to_dict(self) -> dict:
        data = asdict(self)
        data["user_data"] = base64.b64encode(self.user_data).decode() if self.user_data else ""
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "VMDescriptor":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}

        if kwargs.get("image_metadata") is not None:
            kwargs["image_metadata"] = _build(ImageMetadata, kwargs["image_metadata"])
        if kwargs.get("volume") is not None:
            kwargs["volume"] = _build(Volume, kwargs["volume"])
        if kwargs.get("credentials") is not None:
            kwargs["credentials"] = _build(SSHCredentials, kwargs["credentials"])
        if kwargs.get("floating_ip"):
            kwargs["floating_ip"] = _build(FloatingIP, kwargs["floating_ip"])
        else:
            kwargs["floating_ip"] = None

        user_data = kwargs.get("user_data") or ""
        if isinstance(user_data, str):
            kwargs["user_data"] = base64.b64decode(user_data) if user_data else b""
        kwargs["networks"] = list(kwargs.get("networks") or [])
        return cls(**kwargs)

    def to_json(self, indent=2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, text: str) -> "VMDescriptor":
        return cls.from_dict(json.loads(text))


def _build(klass, data):
    known = {f.name for f in fields(klass)}
    return klass(**{k: v for k, v in data.items() if k in known})
