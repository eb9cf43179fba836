"""SSH transport: run commands and copy files on a provisioned VM via ssh/scp."""

import logging
from dataclasses import dataclass

from stackvm.provisioning.shell import run_shell_cmd

logger = logging.getLogger(__name__)


@dataclass
class SSHOptions:
    connect_timeout: int = 10
    server_alive_interval: int = 60
    server_alive_count_max: int = 5


def _common_opts(options):
    return [
        "-o", "StrictHostKeyChecking=no",
        "-o", "UserKnownHostsFile=/dev/null",
        "-o", "BatchMode=yes",
        "-o", f"ConnectTimeout={options.connect_timeout}",
        "-o", f"ServerAliveInterval={options.server_alive_interval}",
        "-o", f"ServerAliveCountMax={options.server_alive_count_max}",
    ]


def ssh_base_args(address, ssh_key, ssh_port, options=None):
    """Build base SSH arguments ending with the target address."""
    args = ["ssh", *_common_opts(options or SSHOptions())]
    if ssh_key:
        args += ["-i", ssh_key]
    if ssh_port and ssh_port != 22:
        args += ["-p", str(ssh_port)]
    args.append(address)
    return args


class SSHClient:
    """Runs commands on a VM through the system ssh/scp binaries.

    Authentication is key based (BatchMode); password-only credentials are
    carried but cannot be used non-interactively.
    """

    def __init__(self, host, credentials, port=22, options=None):
        self.host = str(host)
        self.credentials = credentials
        self.port = port
        self.options = options or SSHOptions()

    @property
    def address(self):
        user = self.credentials.user
        return f"{user}@{self.host}" if user else self.host

    async def run(self, command, timeout=600):
        """Run *command* remotely; return (returncode, stdout, stderr)."""
        args = ssh_base_args(self.address, self.credentials.private_key_path, self.port, self.options)
        args.append(command)
        rc, stdout, stderr = await run_shell_cmd(args, timeout=timeout)
        if rc != 0 and stderr:
            logger.error(f"SSH error ({self.address}): {stderr.strip()}")
        return rc, stdout, stderr

    async def copy_file(self, local_path, remote_path, timeout=300):
        """Copy a local file to the VM via scp; return (returncode, stderr)."""
        args = ["scp", *_common_opts(self.options)]
        if self.credentials.private_key_path:
            args += ["-i", self.credentials.private_key_path]
        if self.port and self.port != 22:
            args += ["-P", str(self.port)]
        args += [local_path, f"{self.address}:{remote_path}"]
        rc, _, stderr = await run_shell_cmd(args, timeout=timeout)
        if rc != 0:
            logger.error(f"Failed to SCP {local_path} to {self.address}:{remote_path}: {stderr.strip()}")
        return rc, stderr
