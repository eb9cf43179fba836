"""SSH readiness probing."""

import asyncio
import contextlib
import logging

from stackvm.provisioning.poller import poll_until
from stackvm.provisioning.shell import run_shell_cmd
from stackvm.provisioning.ssh_transport import SSHOptions, ssh_base_args

logger = logging.getLogger(__name__)


async def probe_ssh(host, credentials, port=22, connect_timeout=5):
    """Return True if an SSH handshake with *host* succeeds.

    With a private key this logs in and runs ``true``. With password-only
    credentials it only checks that the port answers with an SSH banner.
    """
    host = str(host)
    if credentials.private_key_path:
        address = f"{credentials.user}@{host}" if credentials.user else host
        args = ssh_base_args(address, credentials.private_key_path, port, SSHOptions(connect_timeout=connect_timeout))
        args.append("true")
        rc, _, _ = await run_shell_cmd(args, timeout=connect_timeout * 3)
        return rc == 0
    return await _probe_banner(host, port, connect_timeout)


async def _probe_banner(host, port, connect_timeout):
    try:
        reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=connect_timeout)
    except (OSError, TimeoutError):
        return False
    try:
        banner = await asyncio.wait_for(reader.readline(), timeout=connect_timeout)
    except (OSError, TimeoutError):
        return False
    finally:
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
    return banner.startswith(b"SSH-")


async def wait_for_ssh(host, credentials, port=22, timeout=900, interval=5, probe=probe_ssh):
    """Poll SSH connectivity until success; raise ActionTimeoutError on timeout."""
    logger.info(f"Waiting for SSH connectivity to {host}:{port} (timeout: {timeout}s)...")

    async def fetch():
        return await probe(host, credentials, port)

    await poll_until(fetch, bool, timeout=timeout, interval=interval, description=f"SSH on {host}:{port}")
    logger.info("SSH is ready.")
