"""Picks the authoritative instance and updates its workload in place."""

import logging
from typing import Any, Optional

from pve_provisioner.models import (
    InstallationAttempt,
    NotProvisionedError,
    PrivilegeTier,
    ProvisioningTarget,
    TargetStatus,
)
from pve_provisioner.strategies import WorkloadSpec, strategy_for_tier

logger = logging.getLogger(__name__)


def resolve_authoritative(
    known_primary: Optional[ProvisioningTarget], known_fallback: Optional[ProvisioningTarget]
) -> ProvisioningTarget:
    """The fallback when one is known, otherwise the primary.

    Raises:
        NotProvisionedError: If neither target is known
    """
    if known_fallback is not None:
        return known_fallback
    if known_primary is not None:
        return known_primary
    raise NotProvisionedError("No container found to update")


def describe_instance(instances: Any, instance_id: int, workload: WorkloadSpec) -> ProvisioningTarget:
    """Build a target for an existing container from its Proxmox config."""
    config = instances.get_instance_config(instance_id)
    unprivileged = str(config.get("unprivileged", "0")) == "1"
    tier = PrivilegeTier.UNPRIVILEGED if unprivileged else PrivilegeTier.PRIVILEGED

    return ProvisioningTarget(
        id=instance_id,
        privilege_tier=tier,
        hostname=config.get("hostname", ""),
        workload_root=strategy_for_tier(tier, None, workload).workload_root,
        status=TargetStatus.STARTED,
    )


class UpdateResolver:
    """Pulls the latest workload revision and restarts the stack."""

    def __init__(self, executor: Any, workload: WorkloadSpec) -> None:
        self.executor = executor
        self.workload = workload

    def update(
        self,
        known_primary: Optional[ProvisioningTarget] = None,
        known_fallback: Optional[ProvisioningTarget] = None,
    ) -> InstallationAttempt:
        """Update the authoritative target with the tooling matching its tier.

        Raises:
            NotProvisionedError: If no target is known or its workload directory is missing
        """
        target = resolve_authoritative(known_primary, known_fallback)
        strategy = strategy_for_tier(target.privilege_tier, self.executor, self.workload)
        logger.info(f"🔄 Updating {self.workload.name} on instance {target.id} ({target.privilege_tier.value})")

        check = strategy.check_workload_step()
        check_result = self.executor.execute(target.id, check.script, name=check.name, criticality=check.criticality)
        if not check_result.ok:
            if check_result.exit_code is not None:
                raise NotProvisionedError(f"No workload at {strategy.workload_root} on instance {target.id}")
            return InstallationAttempt(target=target, steps=[check_result], failure_reason=check.name)

        attempt = strategy.run_steps(target, strategy.update_steps())
        attempt.steps.insert(0, check_result)

        if attempt.succeeded:
            logger.info(f"✅ Update finished on instance {target.id}")
        else:
            logger.error(f"❌ Update on instance {target.id} failed at step '{attempt.failure_reason}'")
        return attempt
