"""VM lifecycle: descriptor types, readiness polling, resource managers, orchestrator."""

from stackvm.provisioning.lifecycle import VirtualMachine
from stackvm.provisioning.poller import poll_until
from stackvm.provisioning.ssh import probe_ssh, wait_for_ssh
from stackvm.provisioning.ssh_transport import SSHClient, SSHOptions
from stackvm.provisioning.types import (
    PRIVATE_IP,
    PUBLIC_IP,
    FloatingIP,
    ImageMetadata,
    SSHCredentials,
    VMDescriptor,
    VMState,
    Volume,
)

__all__ = [
    "VirtualMachine",
    "VMDescriptor",
    "VMState",
    "ImageMetadata",
    "Volume",
    "FloatingIP",
    "SSHCredentials",
    "PUBLIC_IP",
    "PRIVATE_IP",
    "poll_until",
    "probe_ssh",
    "wait_for_ssh",
    "SSHClient",
    "SSHOptions",
]
