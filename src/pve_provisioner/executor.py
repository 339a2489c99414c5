"""Runs command blocks inside containers and classifies their outcome."""

import logging
import shlex
from typing import Any, Optional

from pve_provisioner.models import CommandResult, Criticality, HostCommandError, StepResult

logger = logging.getLogger(__name__)


class RemoteExecutor:
    """Executes scripts inside a container through ``pct exec`` on the host.

    Never retries. A non-zero exit, a timeout or an unreachable host all
    become a failed StepResult; whether that failure matters is decided by
    the step's criticality.
    """

    def __init__(self, host_shell: Any, step_timeout: Optional[float] = 900) -> None:
        """
        Args:
            host_shell: LocalHostShell or SSHHostShell for the Proxmox host
            step_timeout: Default per-step timeout in seconds
        """
        self.host_shell = host_shell
        self.step_timeout = step_timeout

    @staticmethod
    def build_command(instance_id: int, script: str) -> str:
        """Host command that runs ``script`` in a login shell inside the container."""
        body = "set -euo pipefail\n" + script
        return f"pct exec {instance_id} -- bash -lc {shlex.quote(body)}"

    def exec(self, instance_id: int, script: str, timeout: Optional[float] = None) -> CommandResult:
        """Run ``script`` inside the container and return the raw result.

        Raises:
            TimeoutError: If the command exceeds the timeout
            HostCommandError: If the host could not be reached
        """
        return self.host_shell.run(self.build_command(instance_id, script), timeout=timeout or self.step_timeout)

    def execute(
        self,
        instance_id: int,
        script: str,
        name: str = "command",
        criticality: Criticality = Criticality.CRITICAL,
        timeout: Optional[float] = None,
    ) -> StepResult:
        """Run a named step and translate its outcome into a StepResult."""
        logger.info(f"🔧 [{instance_id}] {name}")

        try:
            result = self.exec(instance_id, script, timeout=timeout)
        except TimeoutError as e:
            step = StepResult(name=name, ok=False, criticality=criticality, timed_out=True, stderr=str(e))
        except HostCommandError as e:
            step = StepResult(name=name, ok=False, criticality=criticality, stderr=str(e))
        else:
            step = StepResult(
                name=name,
                ok=result.ok,
                criticality=criticality,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        if step.ok:
            logger.info(f"✅ [{instance_id}] {name}")
        elif step.is_fatal:
            logger.error(f"❌ [{instance_id}] {name} failed ({self._describe(step)}): {step.stderr[-500:]}")
        else:
            logger.warning(f"⚠️  [{instance_id}] {name} failed ({self._describe(step)}), continuing")

        return step

    @staticmethod
    def _describe(step: StepResult) -> str:
        if step.timed_out:
            return "timeout"
        if step.exit_code is None:
            return "host unreachable"
        return f"exit {step.exit_code}"
