"""
Installation strategies for the containerized workload.

The rootless strategy installs Podman and podman-compose and runs the stack
as a dedicated unprivileged user. The privileged strategy installs Docker
with its compose plugin and runs the stack from a system-wide directory.
Each step is tagged critical or best-effort; only critical failures stop
an attempt.
"""

import logging
import shlex
from dataclasses import dataclass
from typing import Any, List

from pve_provisioner.models import (
    Criticality,
    InstallationAttempt,
    PrivilegeTier,
    ProvisioningTarget,
)

logger = logging.getLogger(__name__)

APT = "DEBIAN_FRONTEND=noninteractive apt-get"


@dataclass(frozen=True)
class WorkloadSpec:
    """Where the workload comes from and how it is started."""

    repo_url: str = "https://github.com/inveniosoftware/invenio-app-ils.git"
    branch: str = "main"
    name: str = "invenio-app-ils"
    user: str = "invenio"
    compose_file: str = "docker-compose.full.yml"
    system_install_root: str = "/opt"


@dataclass(frozen=True)
class InstallStep:
    """A named script with its failure policy."""

    name: str
    script: str
    criticality: Criticality = Criticality.CRITICAL


def clone_or_pull_script(repo_url: str, branch: str, workload_root: str) -> str:
    """Clone the repository, or try to fast-forward it if it is already there.

    An existing checkout counts as success even when the pull fails, so
    local edits (secrets in ``.env``, service overrides) survive a rerun.
    """
    root = shlex.quote(workload_root)
    return "\n".join(
        [
            f"if [ -d {root}/.git ]; then",
            "  echo 'Repository already present, pulling latest'",
            f"  git -C {root} pull --ff-only || echo 'pull failed, keeping existing checkout' >&2",
            "else",
            f"  git clone --branch {shlex.quote(branch)} {shlex.quote(repo_url)} {root}",
            "fi",
        ]
    )


class InstallationStrategy:
    """Ordered install steps run against one target."""

    tier: PrivilegeTier = PrivilegeTier.UNPRIVILEGED

    def __init__(self, executor: Any, workload: WorkloadSpec) -> None:
        self.executor = executor
        self.workload = workload

    @property
    def workload_root(self) -> str:
        raise NotImplementedError

    def as_operator(self, command: str) -> str:
        """Wrap ``command`` so it runs as whoever owns the workload."""
        return command

    def compose(self, args: str) -> str:
        """Compose invocation for the workload's stack."""
        raise NotImplementedError

    def install_steps(self) -> List[InstallStep]:
        raise NotImplementedError

    def check_workload_step(self) -> InstallStep:
        return InstallStep("check workload", f"test -d {shlex.quote(self.workload_root)}/.git")

    def update_steps(self) -> List[InstallStep]:
        """Pull latest revision, re-pull images and restart the stack."""
        root = shlex.quote(self.workload_root)
        return [
            InstallStep("pull workload", self.as_operator(f"git -C {root} pull --ff-only")),
            InstallStep(
                "pull images",
                self.as_operator(f"cd {root} && {self.compose('pull')}"),
                Criticality.BEST_EFFORT,
            ),
            InstallStep("restart workload", self.as_operator(f"cd {root} && {self.compose('up -d --build')}")),
        ]

    def start_script(self) -> str:
        """Start the compose stack after checking the compose file exists."""
        root = shlex.quote(self.workload_root)
        compose_file = shlex.quote(f"{self.workload_root}/{self.workload.compose_file}")
        return "\n".join(
            [
                f"if [ ! -f {compose_file} ]; then",
                f"  echo '{self.workload.compose_file} not found' >&2",
                "  exit 5",
                "fi",
                self.as_operator(f"cd {root} && {self.compose('up -d --build')}"),
            ]
        )

    def run_steps(self, target: ProvisioningTarget, steps: List[InstallStep]) -> InstallationAttempt:
        """Run ``steps`` in order, stopping at the first critical failure."""
        attempt = InstallationAttempt(target=target)

        for step in steps:
            result = self.executor.execute(target.id, step.script, name=step.name, criticality=step.criticality)
            attempt.steps.append(result)
            if result.is_fatal:
                attempt.failure_reason = step.name
                break

        return attempt

    def run(self, target: ProvisioningTarget) -> InstallationAttempt:
        """Install and start the workload on ``target``."""
        logger.info(f"📦 {type(self).__name__}: installing {self.workload.name} on instance {target.id}")
        attempt = self.run_steps(target, self.install_steps())
        if attempt.succeeded:
            logger.info(f"✅ {self.workload.name} started on instance {target.id}")
        else:
            logger.error(f"❌ Install on instance {target.id} failed at step '{attempt.failure_reason}'")
        return attempt


class RootlessPodmanStrategy(InstallationStrategy):
    """Rootless Podman + podman-compose under a dedicated user's home."""

    tier = PrivilegeTier.UNPRIVILEGED

    @property
    def workload_root(self) -> str:
        return f"/home/{self.workload.user}/{self.workload.name}"

    def as_operator(self, command: str) -> str:
        return f"runuser -l {shlex.quote(self.workload.user)} -c {shlex.quote(command)}"

    def compose(self, args: str) -> str:
        return f"podman-compose -f {shlex.quote(self.workload.compose_file)} {args}"

    def install_steps(self) -> List[InstallStep]:
        user = shlex.quote(self.workload.user)
        return [
            InstallStep(
                "install optional packages",
                f"{APT} update\n"
                f"{APT} install -y software-properties-common curl gnupg2 apt-transport-https ca-certificates",
                Criticality.BEST_EFFORT,
            ),
            InstallStep(
                "install runtime",
                f"{APT} update\n"
                f"{APT} install -y podman uidmap slirp4netns git sudo python3-pip\n"
                "command -v podman",
            ),
            InstallStep(
                "create operator user",
                f"id -u {user} >/dev/null 2>&1 || useradd -m -s /bin/bash {user}\n"
                f"echo '{self.workload.user} ALL=(ALL) NOPASSWD:ALL' > /etc/sudoers.d/{user}\n"
                f"chmod 0440 /etc/sudoers.d/{user}",
            ),
            InstallStep(
                "enable user lingering",
                f"loginctl enable-linger {user}\n"
                + self.as_operator("mkdir -p ~/.config/containers"),
                Criticality.BEST_EFFORT,
            ),
            InstallStep(
                "install compose tool",
                self.as_operator("pip3 install --user --no-cache-dir podman-compose")
                + "\n"
                + self.as_operator("~/.local/bin/podman-compose version || podman-compose version"),
            ),
            InstallStep(
                "clone workload",
                self.as_operator(clone_or_pull_script(self.workload.repo_url, self.workload.branch, self.workload_root)),
            ),
            InstallStep("start workload", self.start_script()),
        ]


class PrivilegedDockerStrategy(InstallationStrategy):
    """Docker Engine + compose plugin under a system-wide directory."""

    tier = PrivilegeTier.PRIVILEGED

    @property
    def workload_root(self) -> str:
        return f"{self.workload.system_install_root.rstrip('/')}/{self.workload.name}"

    def compose(self, args: str) -> str:
        return f"docker compose -f {shlex.quote(self.workload.compose_file)} {args}"

    def install_steps(self) -> List[InstallStep]:
        user = shlex.quote(self.workload.user)
        root = shlex.quote(self.workload_root)
        return [
            InstallStep(
                "install optional packages",
                f"{APT} update\n{APT} install -y lsb-release apt-transport-https sudo",
                Criticality.BEST_EFFORT,
            ),
            InstallStep(
                "install runtime",
                f"{APT} update\n"
                f"{APT} install -y ca-certificates curl gnupg git\n"
                "mkdir -p /etc/apt/keyrings\n"
                "curl -fsSL https://download.docker.com/linux/ubuntu/gpg | gpg --dearmor --yes -o /etc/apt/keyrings/docker.gpg\n"
                'echo "deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.gpg] '
                'https://download.docker.com/linux/ubuntu $(. /etc/os-release && echo $VERSION_CODENAME) stable" '
                "> /etc/apt/sources.list.d/docker.list\n"
                f"{APT} update\n"
                f"{APT} install -y docker-ce docker-ce-cli containerd.io\n"
                "command -v docker",
            ),
            InstallStep("enable docker service", "systemctl enable --now docker", Criticality.BEST_EFFORT),
            InstallStep(
                "create operator user",
                "groupadd -f docker\n"
                f"id -u {user} >/dev/null 2>&1 || useradd -m -s /bin/bash {user}\n"
                f"usermod -aG docker {user}",
            ),
            InstallStep(
                "install compose tool",
                f"{APT} install -y docker-compose-plugin\ndocker compose version",
            ),
            InstallStep(
                "clone workload",
                f"mkdir -p {shlex.quote(self.workload.system_install_root)}\n"
                + clone_or_pull_script(self.workload.repo_url, self.workload.branch, self.workload_root),
            ),
            InstallStep("pull images", f"cd {root} && {self.compose('pull')}", Criticality.BEST_EFFORT),
            InstallStep("start workload", self.start_script()),
        ]


def strategy_for_tier(tier: PrivilegeTier, executor: Any, workload: WorkloadSpec) -> InstallationStrategy:
    """Strategy whose runtime pairing matches ``tier``."""
    if tier is PrivilegeTier.PRIVILEGED:
        return PrivilegedDockerStrategy(executor, workload)
    return RootlessPodmanStrategy(executor, workload)
