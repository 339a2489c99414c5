"""Data models for container provisioning and the two-tier install flow."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional


class PrivilegeTier(Enum):
    """Whether the instance's container runtime runs with full kernel privileges."""

    UNPRIVILEGED = "unprivileged"
    PRIVILEGED = "privileged"

    @property
    def unprivileged_flag(self) -> int:
        """Value of the Proxmox ``unprivileged`` container option."""
        return 1 if self is PrivilegeTier.UNPRIVILEGED else 0


class TargetStatus(Enum):
    """Lifecycle status of a provisioning target."""

    CREATED = "created"
    STARTED = "started"
    INSTALL_FAILED = "install_failed"
    INSTALL_SUCCEEDED = "install_succeeded"


class Criticality(Enum):
    """Whether a failing step aborts the strategy attempt."""

    CRITICAL = "critical"
    BEST_EFFORT = "best_effort"


class OrchestrationState(Enum):
    """States of the provisioning state machine."""

    INIT = "init"
    ALLOCATING_PRIMARY = "allocating_primary"
    INSTALLING_PRIMARY = "installing_primary"
    ALLOCATING_FALLBACK = "allocating_fallback"
    INSTALLING_FALLBACK = "installing_fallback"
    DONE = "done"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (OrchestrationState.DONE, OrchestrationState.ABORTED)


class FailedPrimaryPolicy(Enum):
    """What to do with a primary instance whose installation failed."""

    PRESERVE = "preserve"
    DESTROY_BEFORE_FALLBACK = "destroy_before_fallback"
    DESTROY_AFTER_FALLBACK = "destroy_after_fallback"


@dataclass(frozen=True)
class InstanceSpec:
    """Resource sizing and placement for a new container."""

    hostname: str
    cores: int = 2
    memory_mb: int = 6144
    disk_gb: int = 30
    storage: str = "local-lvm"
    bridge: str = "vmbr0"
    template: str = "local:vztmpl/ubuntu-22.04-standard_22.04-1_amd64.tar.zst"

    def with_hostname(self, hostname: str) -> "InstanceSpec":
        """Same sizing, different hostname."""
        return replace(self, hostname=hostname)


@dataclass(frozen=True)
class CommandResult:
    """Raw result of a shell command on the host."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class StepResult:
    """Outcome of one named install step."""

    name: str
    ok: bool
    criticality: Criticality = Criticality.CRITICAL
    exit_code: Optional[int] = None
    timed_out: bool = False
    stdout: str = ""
    stderr: str = ""

    @property
    def is_fatal(self) -> bool:
        """A failed critical step fails the whole attempt."""
        return not self.ok and self.criticality is Criticality.CRITICAL


@dataclass
class ProvisioningTarget:
    """An instance created by the orchestrator."""

    id: int
    privilege_tier: PrivilegeTier
    hostname: str
    workload_root: str
    status: TargetStatus = TargetStatus.CREATED
    address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "privilege_tier": self.privilege_tier.value,
            "hostname": self.hostname,
            "workload_root": self.workload_root,
            "status": self.status.value,
            "address": self.address,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvisioningTarget":
        return cls(
            id=int(data["id"]),
            privilege_tier=PrivilegeTier(data["privilege_tier"]),
            hostname=data["hostname"],
            workload_root=data["workload_root"],
            status=TargetStatus(data.get("status", TargetStatus.CREATED.value)),
            address=data.get("address"),
        )


@dataclass
class InstallationAttempt:
    """Steps executed by one strategy run against one target."""

    target: ProvisioningTarget
    steps: List[StepResult] = field(default_factory=list)
    failure_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.failure_reason is None

    @property
    def failed_step(self) -> Optional[StepResult]:
        """The critical step that failed the attempt, if any."""
        for step in self.steps:
            if step.is_fatal:
                return step
        return None


@dataclass
class OrchestrationResult:
    """Primary and optional fallback target of one orchestration run."""

    primary: Optional[ProvisioningTarget] = None
    fallback: Optional[ProvisioningTarget] = None
    state: OrchestrationState = OrchestrationState.INIT
    error: Optional[str] = None
    decision_log: List[str] = field(default_factory=list)

    @property
    def authoritative(self) -> Optional[ProvisioningTarget]:
        """Fallback when it exists, otherwise primary."""
        return self.fallback if self.fallback is not None else self.primary

    @property
    def succeeded(self) -> bool:
        return self.state is OrchestrationState.DONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "primary": self.primary.to_dict() if self.primary else None,
            "fallback": self.fallback.to_dict() if self.fallback else None,
            "authoritative": self.authoritative.id if self.authoritative else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestrationResult":
        primary = data.get("primary")
        fallback = data.get("fallback")
        return cls(
            primary=ProvisioningTarget.from_dict(primary) if primary else None,
            fallback=ProvisioningTarget.from_dict(fallback) if fallback else None,
            state=OrchestrationState(data.get("state", OrchestrationState.INIT.value)),
            error=data.get("error"),
        )


class ProvisionerError(Exception):
    """Base exception for provisioning errors."""

    pass


class AllocationExhaustedError(ProvisionerError):
    """Raised when no free instance id exists within the search window."""

    def __init__(self, seed: int, window: int):
        self.seed = seed
        self.window = window
        super().__init__(f"No free instance id in range {seed}..{seed + window}")


class RegistryError(ProvisionerError):
    """Raised when the host's config or volume registry cannot be read."""

    pass


class CreationFailedError(ProvisionerError):
    """Raised when the host refuses to create or start an instance."""

    def __init__(self, instance_id: int, message: str):
        self.instance_id = instance_id
        super().__init__(f"Instance {instance_id}: {message}")


class StepFailedError(ProvisionerError):
    """Raised when a critical install step fails."""

    def __init__(self, step_name: str, exit_code: Optional[int], instance_id: int):
        self.step_name = step_name
        self.exit_code = exit_code
        self.instance_id = instance_id
        code = "timeout" if exit_code is None else f"exit {exit_code}"
        super().__init__(f"Step '{step_name}' failed on instance {instance_id} ({code})")


class NotProvisionedError(ProvisionerError):
    """Raised when no provisioned workload can be found to update."""

    pass


class HostCommandError(ProvisionerError):
    """Raised when the host shell cannot run a command at all."""

    pass
