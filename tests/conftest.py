"""Shared pytest fixtures for all test modules."""

import os
import subprocess
import sys

import pytest

from stackvm.config import LifecycleConfig
from stackvm.errors import NotFoundError
from stackvm.gateway.base import ProviderGateway
from stackvm.provisioning.lifecycle import VirtualMachine
from stackvm.provisioning.types import FloatingIP, ImageMetadata, SSHCredentials, VMDescriptor


PROJECT_ROOT = os.path.normpath(os.path.join(os.path.dirname(__file__), ".."))


@pytest.fixture(scope="session")
def project_root():
    """Absolute path to the project root directory."""
    return PROJECT_ROOT


@pytest.fixture(scope="session")
def run_cli(project_root):
    """Return a callable that invokes the stackvm CLI as a subprocess."""

    def _run(*args):
        result = subprocess.run(
            [sys.executable, "-m", "stackvm.stackvm", *args],
            capture_output=True,
            text=True,
            cwd=project_root,
        )
        return result.returncode, result.stdout, result.stderr

    return _run


# ── Fake provider ───────────────────────────────────────────────────


class FakeGateway(ProviderGateway):
    """In-memory provider that records every call.

    ``fail`` maps a method name to the exception that method raises.
    ``instance_statuses`` is consumed one entry per status query; once
    empty, ``default_status`` is returned until the instance is deleted.
    """

    def __init__(self):
        self.calls = []
        self.fail = {}
        self.flavors = {"m1.small": "flavor-1"}
        self.images = {"ubuntu-22.04": "image-1"}
        self.image_statuses = ["queued", "saving", "active"]
        self.next_instance_id = "abc-123"
        self.instance_statuses = []
        self.default_status = "ACTIVE"
        self.deleted = set()
        self.volume_statuses = []
        self.default_volume_status = "available"
        self.addresses = [
            {"addr": "10.0.0.5", "type": "fixed", "network": "private"},
            {"addr": "203.0.113.10", "type": "floating", "network": "private"},
        ]
        self.closed = 0

    def _record(self, name, *args):
        self.calls.append((name, args))
        if name in self.fail:
            raise self.fail[name]

    def called(self, name):
        """Argument tuples of every call to *name*, in order."""
        return [args for n, args in self.calls if n == name]

    @property
    def call_names(self):
        return [n for n, _ in self.calls]

    async def resolve_flavor(self, name):
        self._record("resolve_flavor", name)
        if name not in self.flavors:
            raise NotFoundError("flavor", name)
        return self.flavors[name]

    async def find_image_by_name(self, name):
        self._record("find_image_by_name", name)
        return self.images.get(name, "")

    async def upload_image(self, metadata, path):
        self._record("upload_image", metadata, path)
        return "image-uploaded"

    async def image_status(self, image_id):
        self._record("image_status", image_id)
        if len(self.image_statuses) > 1:
            return self.image_statuses.pop(0)
        return self.image_statuses[0]

    async def create_instance(self, spec):
        self._record("create_instance", spec)
        return self.next_instance_id

    async def delete_instance(self, instance_id):
        self._record("delete_instance", instance_id)
        self.deleted.add(instance_id)

    async def start_instance(self, instance_id):
        self._record("start_instance", instance_id)
        self.default_status = "ACTIVE"

    async def stop_instance(self, instance_id):
        self._record("stop_instance", instance_id)
        self.default_status = "SHUTOFF"

    async def instance_status(self, instance_id):
        self._record("instance_status", instance_id)
        if instance_id in self.deleted:
            return None
        if self.instance_statuses:
            return self.instance_statuses.pop(0)
        return self.default_status

    async def instance_addresses(self, instance_id, network_ids):
        self._record("instance_addresses", instance_id, tuple(network_ids))
        return list(self.addresses)

    async def allocate_floating_ip(self, pool):
        self._record("allocate_floating_ip", pool)
        return FloatingIP(id="fip-1", ip="203.0.113.10", pool=pool)

    async def associate_floating_ip(self, instance_id, ip):
        self._record("associate_floating_ip", instance_id, ip)

    async def disassociate_floating_ip(self, instance_id, ip):
        self._record("disassociate_floating_ip", instance_id, ip)

    async def delete_floating_ip(self, floating_ip_id):
        self._record("delete_floating_ip", floating_ip_id)

    async def create_volume(self, spec):
        self._record("create_volume", spec)
        return "vol-1"

    async def attach_volume(self, volume_id, instance_id, device=""):
        self._record("attach_volume", volume_id, instance_id, device)
        return device or "/dev/vdb"

    async def detach_volume(self, volume_id, instance_id):
        self._record("detach_volume", volume_id, instance_id)

    async def delete_volume(self, volume_id):
        self._record("delete_volume", volume_id)

    async def volume_status(self, volume_id):
        self._record("volume_status", volume_id)
        if self.volume_statuses:
            return self.volume_statuses.pop(0)
        return self.default_volume_status

    async def close(self):
        self.closed += 1


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def fast_config():
    """Short timeouts and no sleeping between polls."""
    return LifecycleConfig(
        action_timeout=0.05,
        image_upload_timeout=0.05,
        volume_timeout=0.05,
        ssh_timeout=0.05,
        poll_interval=0,
    )


@pytest.fixture
def descriptor():
    return VMDescriptor(
        identity_endpoint="https://keystone.test:5000",
        username="demo",
        password="demo-password",
        region="RegionOne",
        tenant_name="demo",
        flavor_name="m1.small",
        image_metadata=ImageMetadata(name="ubuntu-22.04", container_format="bare", disk_format="qcow2"),
        name="test-vm",
        networks=["net-1"],
        floating_ip_pool="public",
        credentials=SSHCredentials(user="ubuntu", private_key_path="/tmp/id_ed25519"),
    )


@pytest.fixture
def make_vm(gateway, fast_config, descriptor):
    """Return a factory for VirtualMachine bound to the fake gateway.

    ``ssh_ready`` controls what the SSH probe reports; the probe records
    the hosts it was asked about in ``vm.probed``.
    """

    def _make(desc=None, ssh_ready=True):
        probed = []

        async def probe(host, credentials, port=22):
            probed.append(str(host))
            return ssh_ready

        vm = VirtualMachine(desc or descriptor, fast_config, gateway_factory=lambda d: gateway, ssh_probe=probe)
        vm.probed = probed
        return vm

    return _make
