"""Unit tests for the VirtualMachine lifecycle orchestrator against a fake provider."""

import ipaddress

import pytest

from stackvm.errors import (
    ActionTimeoutError,
    AlreadyProvisionedError,
    CombinedError,
    ConfigurationError,
    InvalidStateError,
    MissingIdentifierError,
    NotFoundError,
    NotSupportedError,
    ProviderError,
    ProvisionError,
    VolumeAttachError,
)
from stackvm.provisioning.types import FloatingIP, Volume, VMState


# ── provision ────────────────────────────────────────────────────


async def test_provision_success(make_vm, gateway, descriptor):
    vm = make_vm()
    await vm.provision()

    assert descriptor.instance_id == "abc-123"
    assert descriptor.image_id == "image-1"
    assert descriptor.floating_ip == FloatingIP(id="fip-1", ip="203.0.113.10", pool="public")
    assert descriptor.volume.id == ""
    assert vm.probed == ["203.0.113.10"]
    assert gateway.called("associate_floating_ip") == [("abc-123", "203.0.113.10")]
    assert "create_volume" not in gateway.call_names
    assert await vm.get_state() == VMState.RUNNING


async def test_provision_instance_spec(make_vm, gateway, descriptor):
    descriptor.user_data = b"#cloud-config\n"
    descriptor.admin_password = "s3cret-pass"
    await make_vm().provision()

    (spec,) = gateway.called("create_instance")[0]
    assert spec.name == "test-vm"
    assert spec.flavor_id == "flavor-1"
    assert spec.image_id == "image-1"
    assert spec.networks == ["net-1"]
    assert spec.security_groups == ["default"]
    assert spec.user_data == b"#cloud-config\n"
    assert spec.admin_password == "s3cret-pass"


async def test_provision_custom_security_group(make_vm, gateway, descriptor):
    descriptor.security_group = "web"
    await make_vm().provision()
    (spec,) = gateway.called("create_instance")[0]
    assert spec.security_groups == ["web"]


async def test_provision_missing_flavor_creates_nothing(make_vm, gateway, descriptor):
    gateway.flavors = {}
    with pytest.raises(NotFoundError, match="m1.small"):
        await make_vm().provision()
    assert "create_instance" not in gateway.call_names
    assert descriptor.instance_id == ""


async def test_provision_already_provisioned_fails_fast(make_vm, gateway, descriptor):
    descriptor.instance_id = "existing"
    with pytest.raises(AlreadyProvisionedError):
        await make_vm().provision()
    assert gateway.calls == []


async def test_provision_requires_floating_ip_pool(make_vm, gateway, descriptor):
    descriptor.floating_ip_pool = ""
    with pytest.raises(ConfigurationError, match="floating_ip_pool"):
        await make_vm().provision()
    assert gateway.calls == []


async def test_provision_instance_create_failure_is_not_rolled_back(make_vm, gateway, descriptor):
    gateway.fail["create_instance"] = ProviderError("quota exceeded", stage="create_instance")
    with pytest.raises(ProviderError, match="quota exceeded"):
        await make_vm().provision()
    assert gateway.called("delete_instance") == []
    assert descriptor.instance_id == ""


async def test_provision_running_timeout_deletes_instance(make_vm, gateway, descriptor):
    gateway.default_status = "BUILD"
    vm = make_vm()
    with pytest.raises(ProvisionError) as exc_info:
        await vm.provision()

    err = exc_info.value
    assert isinstance(err.cause.error, ActionTimeoutError)
    assert err.rolled_back
    assert gateway.called("delete_instance") == [("abc-123",)]
    assert descriptor.instance_id == ""
    assert "allocate_floating_ip" not in gateway.call_names


async def test_provision_instance_error_status_triggers_teardown(make_vm, gateway, descriptor):
    gateway.instance_statuses = ["BUILD", "ERROR"]
    with pytest.raises(ProvisionError) as exc_info:
        await make_vm().provision()
    assert exc_info.value.cause.stage == "wait_running"
    assert isinstance(exc_info.value.cause.error, ProviderError)
    assert gateway.called("delete_instance") == [("abc-123",)]


async def test_provision_association_failure_rolls_back(make_vm, gateway, descriptor):
    gateway.fail["associate_floating_ip"] = ProviderError("association refused")
    with pytest.raises(ProvisionError) as exc_info:
        await make_vm().provision()

    err = exc_info.value
    message = str(err)
    assert "association refused" in message
    assert "instance abc-123 deleted" in message
    assert err.cause.stage == "associate_floating_ip"
    assert gateway.called("delete_floating_ip") == [("fip-1",)]
    assert gateway.called("delete_instance") == [("abc-123",)]
    assert descriptor.floating_ip is None
    assert descriptor.instance_id == ""


async def test_provision_association_failure_reports_all_cleanup_failures(make_vm, gateway, descriptor):
    gateway.fail["associate_floating_ip"] = ProviderError("association refused")
    gateway.fail["delete_floating_ip"] = ProviderError("fip delete failed")
    gateway.fail["delete_instance"] = ProviderError("instance delete failed")
    with pytest.raises(ProvisionError) as exc_info:
        await make_vm().provision()

    err = exc_info.value
    assert err.stages == ["associate_floating_ip", "delete_floating_ip", "delete_instance"]
    assert not err.rolled_back
    assert "instance delete failed" in str(err)
    # Instance could not be deleted, so it stays attributed to the descriptor
    assert descriptor.instance_id == "abc-123"


async def test_provision_allocation_failure_rolls_back(make_vm, gateway):
    gateway.fail["allocate_floating_ip"] = ProviderError("pool exhausted")
    with pytest.raises(ProvisionError, match="pool exhausted"):
        await make_vm().provision()
    assert "associate_floating_ip" not in gateway.call_names
    assert gateway.called("delete_instance") == [("abc-123",)]


async def test_provision_ssh_timeout_releases_floating_ip(make_vm, gateway, descriptor):
    vm = make_vm(ssh_ready=False)
    with pytest.raises(ProvisionError) as exc_info:
        await vm.provision()

    assert isinstance(exc_info.value.cause.error, ActionTimeoutError)
    assert exc_info.value.cause.stage == "wait_ssh"
    assert gateway.called("disassociate_floating_ip") == [("abc-123", "203.0.113.10")]
    assert gateway.called("delete_floating_ip") == [("fip-1",)]
    assert gateway.called("delete_instance") == [("abc-123",)]
    assert descriptor.floating_ip is None


async def test_provision_with_volume(make_vm, gateway, descriptor):
    descriptor.volume = Volume(name="data", size=10, type="ssd")
    await make_vm().provision()

    (spec,) = gateway.called("create_volume")[0]
    assert (spec.name, spec.size, spec.type) == ("data", 10, "ssd")
    assert gateway.called("attach_volume") == [("vol-1", "abc-123", "")]
    assert descriptor.volume.id == "vol-1"
    assert descriptor.volume.device == "/dev/vdb"


async def test_provision_volume_attach_failure_tears_everything_down(make_vm, gateway, descriptor):
    descriptor.volume = Volume(name="data", size=10)
    gateway.fail["attach_volume"] = ProviderError("no free device")
    with pytest.raises(ProvisionError) as exc_info:
        await make_vm().provision()

    err = exc_info.value
    assert isinstance(err.cause.error, VolumeAttachError)
    assert err.rolled_back
    # The unattached volume is deleted; teardown then has no volume to detach
    assert gateway.called("delete_volume") == [("vol-1",)]
    assert "detach_volume" not in gateway.call_names
    assert gateway.called("delete_floating_ip") == [("fip-1",)]
    assert gateway.called("delete_instance") == [("abc-123",)]
    assert descriptor.volume.id == ""


async def test_provision_uploads_missing_image(make_vm, gateway, descriptor):
    gateway.images = {}
    descriptor.image_path = "/images/ubuntu.qcow2"
    await make_vm().provision()
    assert gateway.called("upload_image")[0][1] == "/images/ubuntu.qcow2"
    assert descriptor.image_id == "image-uploaded"


async def test_provision_explicit_image_id_skips_lookup(make_vm, gateway, descriptor):
    descriptor.image_id = "image-explicit"
    await make_vm().provision()
    assert "find_image_by_name" not in gateway.call_names
    (spec,) = gateway.called("create_instance")[0]
    assert spec.image_id == "image-explicit"


# ── destroy ──────────────────────────────────────────────────────


async def test_destroy_without_instance_raises_every_time(make_vm, gateway):
    vm = make_vm()
    for _ in range(2):
        with pytest.raises(MissingIdentifierError):
            await vm.destroy()
    assert gateway.calls == []


async def test_destroy_order(make_vm, gateway, descriptor):
    descriptor.volume = Volume(name="data", size=10)
    vm = make_vm()
    await vm.provision()
    gateway.calls.clear()

    await vm.destroy()

    mutating = [n for n in gateway.call_names if not n.endswith("_status")]
    assert mutating == [
        "disassociate_floating_ip",
        "delete_floating_ip",
        "detach_volume",
        "delete_volume",
        "delete_instance",
    ]
    assert descriptor.instance_id == ""
    assert descriptor.floating_ip is None
    assert descriptor.volume.id == ""
    assert vm._gateway is None
    assert gateway.closed == 1


async def test_destroy_attempts_every_stage(make_vm, gateway, descriptor):
    descriptor.instance_id = "abc-123"
    descriptor.floating_ip = FloatingIP(id="fip-1", ip="203.0.113.10")
    descriptor.volume = Volume(size=10, id="vol-1", device="/dev/vdb")
    gateway.fail["disassociate_floating_ip"] = ProviderError("not associated")
    gateway.fail["delete_volume"] = ProviderError("volume busy")
    vm = make_vm()

    with pytest.raises(CombinedError) as exc_info:
        await vm.destroy()

    assert exc_info.value.stages == ["disassociate_floating_ip", "delete_volume"]
    assert "not associated" in str(exc_info.value)
    assert "volume busy" in str(exc_info.value)
    assert gateway.called("delete_floating_ip") == [("fip-1",)]
    assert gateway.called("delete_instance") == [("abc-123",)]
    # Only the volume survives; a second destroy would retry it
    assert descriptor.floating_ip is None
    assert descriptor.volume.id == "vol-1"
    assert descriptor.instance_id == ""
    assert vm._gateway is None


async def test_destroy_instance_already_gone(make_vm, gateway, descriptor):
    descriptor.instance_id = "abc-123"
    gateway.fail["delete_instance"] = NotFoundError("instance", "abc-123")
    await make_vm().destroy()
    assert descriptor.instance_id == ""


# ── start / halt / state ─────────────────────────────────────────


async def test_halt_running_vm(make_vm, gateway, descriptor):
    descriptor.instance_id = "abc-123"
    vm = make_vm()
    await vm.halt()
    assert gateway.called("stop_instance") == [("abc-123",)]
    assert await vm.get_state() == VMState.HALTED


async def test_halt_already_halted_does_not_call_stop(make_vm, gateway, descriptor):
    descriptor.instance_id = "abc-123"
    gateway.default_status = "SHUTOFF"
    with pytest.raises(InvalidStateError):
        await make_vm().halt()
    assert "stop_instance" not in gateway.call_names


async def test_halt_without_instance(make_vm):
    with pytest.raises(MissingIdentifierError):
        await make_vm().halt()


async def test_start_waits_for_ssh_on_floating_ip(make_vm, gateway, descriptor):
    descriptor.instance_id = "abc-123"
    descriptor.floating_ip = FloatingIP(id="fip-1", ip="203.0.113.10")
    gateway.default_status = "SHUTOFF"
    vm = make_vm()
    await vm.start()
    assert gateway.called("start_instance") == [("abc-123",)]
    assert vm.probed == ["203.0.113.10"]


async def test_start_ssh_timeout(make_vm, gateway, descriptor):
    descriptor.instance_id = "abc-123"
    descriptor.floating_ip = FloatingIP(id="fip-1", ip="203.0.113.10")
    gateway.default_status = "SHUTOFF"
    with pytest.raises(ActionTimeoutError):
        await make_vm(ssh_ready=False).start()


async def test_start_running_vm_does_not_call_start(make_vm, gateway, descriptor):
    descriptor.instance_id = "abc-123"
    with pytest.raises(InvalidStateError):
        await make_vm().start()
    assert "start_instance" not in gateway.call_names


@pytest.mark.parametrize(
    "status,expected",
    [
        ("ACTIVE", VMState.RUNNING),
        ("SHUTOFF", VMState.HALTED),
        ("ERROR", VMState.ERROR),
        ("BUILD", VMState.UNKNOWN),
        ("RESCUE", VMState.UNKNOWN),
    ],
)
async def test_get_state_translation(make_vm, gateway, descriptor, status, expected):
    descriptor.instance_id = "abc-123"
    gateway.default_status = status
    assert await make_vm().get_state() == expected


async def test_get_state_missing_instance(make_vm, gateway, descriptor):
    descriptor.instance_id = "abc-123"
    gateway.deleted.add("abc-123")
    with pytest.raises(NotFoundError):
        await make_vm().get_state()


async def test_suspend_and_resume_not_supported(make_vm):
    vm = make_vm()
    with pytest.raises(NotSupportedError):
        await vm.suspend()
    with pytest.raises(NotSupportedError):
        await vm.resume()


# ── addresses / ssh ──────────────────────────────────────────────


async def test_get_ips_positions(make_vm, gateway, descriptor):
    descriptor.instance_id = "abc-123"
    ips = await make_vm().get_ips()
    assert ips == [ipaddress.ip_address("203.0.113.10"), ipaddress.ip_address("10.0.0.5")]
    assert gateway.called("instance_addresses") == [("abc-123", ("net-1",))]


async def test_get_ips_only_fixed(make_vm, gateway, descriptor):
    descriptor.instance_id = "abc-123"
    gateway.addresses = [
        {"addr": "10.0.0.5", "type": "fixed"},
        {"addr": "10.0.0.6", "type": "something-else"},
    ]
    ips = await make_vm().get_ips()
    assert len(ips) == 2
    assert ips[0] is None
    assert ips[1] == ipaddress.ip_address("10.0.0.5")


async def test_get_ssh_client(make_vm, descriptor):
    descriptor.instance_id = "abc-123"
    client = await make_vm().get_ssh_client()
    assert client.host == "203.0.113.10"
    assert client.address == "ubuntu@203.0.113.10"


async def test_get_ssh_client_without_public_ip(make_vm, gateway, descriptor):
    descriptor.instance_id = "abc-123"
    gateway.addresses = [{"addr": "10.0.0.5", "type": "fixed"}]
    with pytest.raises(NotFoundError, match="public IP"):
        await make_vm().get_ssh_client()


def test_get_name(make_vm):
    assert make_vm().get_name() == "test-vm"
