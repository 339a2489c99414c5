#!/usr/bin/env python3
"""
src/pve_provisioner/orchestrator.py

Two-tier provisioning: create an unprivileged container and try the rootless
install; if that fails, create a second, privileged container under a new id
and try the Docker install there.

    Init -> AllocatingPrimary -> InstallingPrimary -> Done
                                        |
                                        v
                              AllocatingFallback -> InstallingFallback -> Done | Aborted

Each strategy is attempted exactly once. A failed primary is kept running
unless the configured policy says otherwise.
"""

import logging
from typing import Any, Optional

from pve_provisioner.models import (
    AllocationExhaustedError,
    CreationFailedError,
    FailedPrimaryPolicy,
    InstallationAttempt,
    InstanceSpec,
    OrchestrationResult,
    OrchestrationState,
    ProvisioningTarget,
    RegistryError,
    StepFailedError,
    TargetStatus,
)
from pve_provisioner.strategies import InstallationStrategy

logger = logging.getLogger(__name__)

# OpenSearch in the workload refuses to start below this
MIN_MAX_MAP_COUNT = 262144

MAX_MAP_COUNT_SCRIPT = f"""\
cur=$(sysctl -n vm.max_map_count || echo 0)
if [ "$cur" -lt {MIN_MAX_MAP_COUNT} ]; then
  sysctl -w vm.max_map_count={MIN_MAX_MAP_COUNT}
  if grep -q '^vm.max_map_count' /etc/sysctl.conf 2>/dev/null; then
    sed -i 's/^vm.max_map_count.*/vm.max_map_count={MIN_MAX_MAP_COUNT}/' /etc/sysctl.conf
  else
    echo 'vm.max_map_count={MIN_MAX_MAP_COUNT}' >> /etc/sysctl.conf
  fi
fi
"""


class ProvisioningOrchestrator:
    """Allocates, creates and installs primary and (if needed) fallback instances."""

    def __init__(
        self,
        instances: Any,
        allocator: Any,
        primary_strategy: InstallationStrategy,
        fallback_strategy: InstallationStrategy,
        host_shell: Optional[Any] = None,
        failed_primary_policy: FailedPrimaryPolicy = FailedPrimaryPolicy.PRESERVE,
        fallback_suffix: str = "-priv",
        ensure_max_map_count: bool = False,
    ) -> None:
        """
        Args:
            instances: Instance control API (create/start/destroy/get_address), normally a ProxmoxClient
            allocator: IdAllocator sharing the process-wide reservation set
            primary_strategy: Strategy tried first on an unprivileged instance
            fallback_strategy: Strategy tried on a privileged instance after the primary fails
            host_shell: Shell on the Proxmox host, used for host preparation
            failed_primary_policy: Whether and when a failed primary is destroyed
            fallback_suffix: Appended to the primary hostname to name the fallback
            ensure_max_map_count: Raise the host's vm.max_map_count before provisioning
        """
        self.instances = instances
        self.allocator = allocator
        self.primary_strategy = primary_strategy
        self.fallback_strategy = fallback_strategy
        self.host_shell = host_shell
        self.failed_primary_policy = failed_primary_policy
        self.fallback_suffix = fallback_suffix
        self.ensure_max_map_count = ensure_max_map_count

    def _transition(self, result: OrchestrationResult, state: OrchestrationState, note: str = "") -> None:
        entry = f"{result.state.value} -> {state.value}" + (f": {note}" if note else "")
        logger.info(f"🔀 {entry}")
        result.decision_log.append(entry)
        result.state = state

    def _abort(self, result: OrchestrationResult, error: str) -> OrchestrationResult:
        result.error = error
        self._transition(result, OrchestrationState.ABORTED, error)
        logger.error(f"❌ Provisioning aborted: {error}")
        return result

    def prepare_host(self) -> None:
        """Best-effort: make sure vm.max_map_count is high enough on the host."""
        if not self.ensure_max_map_count or self.host_shell is None:
            return

        logger.info(f"🔧 Ensuring host vm.max_map_count >= {MIN_MAX_MAP_COUNT}")
        try:
            result = self.host_shell.run(MAX_MAP_COUNT_SCRIPT, timeout=60)
        except Exception as e:
            logger.warning(f"⚠️  Could not check vm.max_map_count on host: {e}")
            return

        if not result.ok:
            logger.warning(f"⚠️  Setting vm.max_map_count failed (exit {result.exit_code}): {result.stderr}")

    def _create_and_start(
        self,
        result: OrchestrationResult,
        instance_id: int,
        spec: InstanceSpec,
        strategy: InstallationStrategy,
        slot: str,
    ) -> ProvisioningTarget:
        """Create the instance, record it on ``result`` and start it.

        Raises:
            CreationFailedError: If create or start is refused by the host
        """
        self.instances.create(instance_id, spec, strategy.tier)

        target = ProvisioningTarget(
            id=instance_id,
            privilege_tier=strategy.tier,
            hostname=spec.hostname,
            workload_root=strategy.workload_root,
        )
        setattr(result, slot, target)

        self.instances.start(instance_id)
        target.status = TargetStatus.STARTED
        target.address = self.instances.get_address(instance_id)
        if target.address is None:
            logger.warning(f"⚠️  No network address seen for instance {instance_id}; installing anyway")

        return target

    def _install(self, target: ProvisioningTarget, strategy: InstallationStrategy) -> InstallationAttempt:
        attempt = strategy.run(target)
        target.status = TargetStatus.INSTALL_SUCCEEDED if attempt.succeeded else TargetStatus.INSTALL_FAILED
        return attempt

    def _failure_message(self, attempt: InstallationAttempt) -> str:
        step = attempt.failed_step
        if step is None:
            return f"Install failed on instance {attempt.target.id}"
        return str(StepFailedError(step.name, step.exit_code, attempt.target.id))

    def _destroy(self, target: ProvisioningTarget) -> None:
        try:
            self.instances.destroy(target.id)
        except Exception as e:
            logger.error(f"❌ Could not destroy failed instance {target.id}: {e}")
            return
        self.allocator.release(target.id)
        logger.info(f"🗑️  Destroyed failed instance {target.id}")

    def fallback_hostname(self, primary: ProvisioningTarget, fallback_id: int) -> str:
        """Fallback name derived from the primary's so the pair is discoverable."""
        base = primary.hostname or f"{self.fallback_strategy.workload.name}-{fallback_id}"
        return f"{base}{self.fallback_suffix}"

    def run(self, spec: InstanceSpec) -> OrchestrationResult:
        """Provision ``spec``, falling back to a privileged instance if needed."""
        result = OrchestrationResult()
        self.prepare_host()

        # Primary
        self._transition(result, OrchestrationState.ALLOCATING_PRIMARY)
        try:
            primary_id = self.allocator.allocate()
        except (AllocationExhaustedError, RegistryError) as e:
            return self._abort(result, str(e))

        try:
            primary = self._create_and_start(result, primary_id, spec, self.primary_strategy, "primary")
        except CreationFailedError as e:
            return self._abort(result, str(e))

        self._transition(result, OrchestrationState.INSTALLING_PRIMARY, f"instance {primary.id}")
        attempt = self._install(primary, self.primary_strategy)
        if attempt.succeeded:
            self._transition(result, OrchestrationState.DONE, f"authoritative instance {primary.id}")
            return result

        primary_failure = self._failure_message(attempt)
        logger.warning(f"⚠️  {primary_failure}; falling back to a privileged instance")

        if self.failed_primary_policy is FailedPrimaryPolicy.DESTROY_BEFORE_FALLBACK:
            self._destroy(primary)

        # Fallback
        self._transition(result, OrchestrationState.ALLOCATING_FALLBACK, primary_failure)
        try:
            fallback_id = self.allocator.allocate_after(primary.id)
        except (AllocationExhaustedError, RegistryError) as e:
            return self._abort(result, str(e))

        fallback_spec = spec.with_hostname(self.fallback_hostname(primary, fallback_id))
        try:
            fallback = self._create_and_start(result, fallback_id, fallback_spec, self.fallback_strategy, "fallback")
        except CreationFailedError as e:
            return self._abort(result, str(e))

        self._transition(result, OrchestrationState.INSTALLING_FALLBACK, f"instance {fallback.id}")
        attempt = self._install(fallback, self.fallback_strategy)
        if not attempt.succeeded:
            return self._abort(result, self._failure_message(attempt))

        if self.failed_primary_policy is FailedPrimaryPolicy.DESTROY_AFTER_FALLBACK:
            self._destroy(primary)

        self._transition(result, OrchestrationState.DONE, f"authoritative instance {fallback.id}")
        return result
