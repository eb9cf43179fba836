"""VM lifecycle CLI handlers: provision, destroy, start, halt, state, ips, ssh."""

import asyncio
import json
import logging
import sys
from dataclasses import asdict, replace
from pathlib import Path

from stackvm.config import LifecycleConfig, load_config
from stackvm.errors import StackVMError
from stackvm.provisioning.lifecycle import VirtualMachine
from stackvm.provisioning.types import VMDescriptor
from stackvm.redact import register_secret

logger = logging.getLogger(__name__)

# State file key holding the LifecycleConfig next to the descriptor fields
_TIMEOUTS_KEY = "timeouts"


def _load_state(state_path):
    """Read a state file; return (VMDescriptor, LifecycleConfig)."""
    path = Path(state_path)
    if not path.exists():
        logger.error(f"No state file found at {path}")
        sys.exit(1)
    data = json.loads(path.read_text())
    descriptor = VMDescriptor.from_dict(data)
    try:
        config = LifecycleConfig.from_dict(data.get(_TIMEOUTS_KEY))
    except StackVMError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    _register_secrets(descriptor)
    return descriptor, config


def _save_state(state_path, descriptor, config):
    data = descriptor.to_dict()
    data[_TIMEOUTS_KEY] = asdict(config)
    Path(state_path).write_text(json.dumps(data, indent=2))


def _register_secrets(descriptor):
    register_secret(descriptor.password)
    register_secret(descriptor.admin_password)
    register_secret(descriptor.credentials.password)


def _run(coro_fn, args, descriptor, config, save=True):
    """Run one lifecycle coroutine, persist the state file, exit 1 on failure."""
    vm = VirtualMachine(descriptor, _timeouts(args, config))
    try:
        return asyncio.run(coro_fn(vm))
    except StackVMError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    finally:
        if save:
            _save_state(args.state, descriptor, config)


# ── CLI handlers ───────────────────────────────────────────────────


def handle_provision(args):
    """CLI handler for 'vm provision'."""
    try:
        descriptor, config = load_config(args.config)
    except StackVMError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    _register_secrets(descriptor)
    state_path = Path(args.state)
    if state_path.exists() and not args.force and VMDescriptor.from_json(state_path.read_text()).instance_id:
        logger.error(f"State file {args.state} holds a live instance. Destroy that VM first or pass --force.")
        sys.exit(1)

    _run(lambda vm: vm.provision(), args, descriptor, config)
    logger.info(f"State written to {args.state}")


def handle_destroy(args):
    """CLI handler for 'vm destroy'."""
    descriptor, config = _load_state(args.state)
    _run(lambda vm: vm.destroy(), args, descriptor, config)
    if not descriptor.instance_id:
        Path(args.state).unlink()
        logger.info(f"Removed {args.state}")


def handle_start(args):
    """CLI handler for 'vm start'."""
    descriptor, config = _load_state(args.state)
    _run(lambda vm: vm.start(), args, descriptor, config)


def handle_halt(args):
    """CLI handler for 'vm halt'."""
    descriptor, config = _load_state(args.state)
    _run(lambda vm: vm.halt(), args, descriptor, config)


def handle_state(args):
    """CLI handler for 'vm state'."""
    state = _run(lambda vm: vm.get_state(), args, *_load_state(args.state), save=False)
    logger.info(state.value)


def handle_ips(args):
    """CLI handler for 'vm ips'."""
    public, private = _run(lambda vm: vm.get_ips(), args, *_load_state(args.state), save=False)
    logger.info(f"Public:   {public or '-'}")
    logger.info(f"Private:  {private or '-'}")


def handle_ssh(args):
    """CLI handler for 'vm ssh': run a command on the VM."""

    async def _ssh(vm):
        client = await vm.get_ssh_client()
        return await client.run(" ".join(args.remote_command))

    rc, stdout, stderr = _run(_ssh, args, *_load_state(args.state), save=False)
    if stdout:
        sys.stdout.write(stdout)
    if stderr:
        sys.stderr.write(stderr)
    sys.exit(rc)


def _timeouts(args, config):
    """Apply --timeout on top of the persisted config for this run only."""
    if getattr(args, "timeout", None):
        config = replace(config, action_timeout=args.timeout, ssh_timeout=args.timeout)
    return config


# ── Registration ───────────────────────────────────────────────────


def register_vm_command(subparsers):
    """Register the 'vm' command with its lifecycle action subparsers."""
    vm_parser = subparsers.add_parser("vm", help="Manage an OpenStack VM")
    actions = vm_parser.add_subparsers(dest="action", required=True)

    parser = actions.add_parser("provision", help="Create a VM from a YAML config")
    parser.add_argument("--config", required=True, help="Path to the VM config YAML")
    parser.add_argument("--state", default="vm.json", help="State file to write (default: vm.json)")
    parser.add_argument("--force", action="store_true", help="Overwrite an existing state file")
    parser.set_defaults(func=handle_provision)

    for name, handler, help_text in [
        ("destroy", handle_destroy, "Delete the VM and its floating IP and volume"),
        ("start", handle_start, "Boot a halted VM"),
        ("halt", handle_halt, "Stop a running VM"),
    ]:
        parser = actions.add_parser(name, help=help_text)
        parser.add_argument("--state", default="vm.json", help="State file (default: vm.json)")
        parser.add_argument("--timeout", type=int, default=None, help="Seconds to wait for the action (default: 900)")
        parser.set_defaults(func=handler)

    for name, handler, help_text in [
        ("state", handle_state, "Print the VM state"),
        ("ips", handle_ips, "Print the public and private IPs"),
    ]:
        parser = actions.add_parser(name, help=help_text)
        parser.add_argument("--state", default="vm.json", help="State file (default: vm.json)")
        parser.set_defaults(func=handler)

    parser = actions.add_parser("ssh", help="Run a command on the VM over SSH")
    parser.add_argument("--state", default="vm.json", help="State file (default: vm.json)")
    parser.add_argument("remote_command", nargs="+", help="Command to run")
    parser.set_defaults(func=handle_ssh)
