"""
Shell access to the Proxmox host.

Commands such as ``pct exec`` and ``sysctl`` only exist on the host itself,
so they run either through a local subprocess (when this tool runs on the
host) or over SSH with paramiko.
"""

import logging
import os
import socket
import subprocess
import time
from typing import Optional, Union

import paramiko

from pve_provisioner.models import CommandResult, HostCommandError

logger = logging.getLogger(__name__)

# Seconds between channel checks while a remote command runs
CHANNEL_POLL_INTERVAL = 0.1
READ_CHUNK = 32768


class LocalHostShell:
    """Runs host commands with subprocess on the local machine."""

    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        logger.debug(f"[local]$ {command}")
        try:
            result = subprocess.run(
                ["bash", "-c", command],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TimeoutError(f"Command timed out after {timeout}s") from e
        except OSError as e:
            raise HostCommandError(f"Could not run command: {e}") from e

        return CommandResult(exit_code=result.returncode, stdout=result.stdout, stderr=result.stderr)


class SSHHostShell:
    """Runs host commands over SSH using paramiko."""

    def __init__(self, host: str, user: str = "root", key_path: str = "~/.ssh/id_rsa") -> None:
        self.host = host
        self.user = user
        self.key_path = os.path.expanduser(key_path)

    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        logger.debug(f"[{self.host}]$ {command}")

        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(hostname=self.host, username=self.user, key_filename=self.key_path)
        except (paramiko.SSHException, OSError) as e:
            ssh.close()
            raise HostCommandError(f"SSH connection to {self.host} failed: {e}") from e

        try:
            stdin, stdout, stderr = ssh.exec_command(command, timeout=timeout)
            out, err = self._collect(stdout, stderr, timeout)
            exit_code = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            raise TimeoutError(f"Command timed out after {timeout}s on {self.host}") from e
        finally:
            ssh.close()

        return CommandResult(exit_code=exit_code, stdout=out, stderr=err)

    @staticmethod
    def _collect(stdout: paramiko.ChannelFile, stderr: paramiko.ChannelFile, timeout: Optional[float]):
        """Read output until the command exits.

        ``timeout`` bounds the whole command, not a single read.

        Raises:
            TimeoutError: If the command is still running at the deadline
        """
        channel = stdout.channel
        deadline = time.monotonic() + timeout if timeout else None
        out_chunks, err_chunks = [], []

        while not channel.exit_status_ready():
            if deadline is not None and time.monotonic() >= deadline:
                channel.close()
                raise TimeoutError(f"Command timed out after {timeout}s")
            if channel.recv_ready():
                out_chunks.append(channel.recv(READ_CHUNK))
            elif channel.recv_stderr_ready():
                err_chunks.append(channel.recv_stderr(READ_CHUNK))
            else:
                time.sleep(CHANNEL_POLL_INTERVAL)

        # Whatever arrived between the last check and exit
        out_chunks.append(stdout.read())
        err_chunks.append(stderr.read())
        out = b"".join(out_chunks).decode(errors="replace").strip()
        err = b"".join(err_chunks).decode(errors="replace").strip()
        return out, err


def build_host_shell(
    ssh_host: str, ssh_user: str = "root", ssh_key_path: str = "~/.ssh/id_rsa"
) -> Union[SSHHostShell, LocalHostShell]:
    """SSH shell when a host is configured, local shell otherwise."""
    if ssh_host:
        return SSHHostShell(ssh_host, user=ssh_user, key_path=ssh_key_path)
    return LocalHostShell()
