"""
Configuration for container provisioning.

Values come from the environment (optionally a .env file) with defaults
matching a single-node Proxmox host running the invenio-app-ils stack.
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from pve_provisioner.models import FailedPrimaryPolicy, InstanceSpec


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ProvisionerConfig:
    """Complete provisioning configuration."""

    # Proxmox API
    api_token: Optional[str] = None
    pve_host: str = "pve"
    pve_node: str = "pve"
    verify_ssl: bool = False

    # Host shell; empty ssh_host means commands run locally on the host
    ssh_host: str = ""
    ssh_user: str = "root"
    ssh_key_path: str = "~/.ssh/id_rsa"

    # Instance sizing
    hostname: str = "invenio-ils"
    cores: int = 2
    memory_mb: int = 6144
    disk_gb: int = 30
    storage: str = "local-lvm"
    bridge: str = "vmbr0"
    template: str = "local:vztmpl/ubuntu-22.04-standard_22.04-1_amd64.tar.zst"

    # Workload
    workload_repo: str = "https://github.com/inveniosoftware/invenio-app-ils.git"
    workload_branch: str = "main"
    workload_name: str = "invenio-app-ils"
    workload_user: str = "invenio"
    compose_file: str = "docker-compose.full.yml"
    system_install_root: str = "/opt"

    # Timing
    step_timeout: int = 900
    poll_interval: float = 1.0
    poll_max_attempts: int = 30
    allocation_window: int = 500

    # Policy
    failed_primary_policy: FailedPrimaryPolicy = FailedPrimaryPolicy.PRESERVE
    fallback_suffix: str = "-priv"
    ensure_max_map_count: bool = True

    @classmethod
    def from_environment(cls) -> "ProvisionerConfig":
        """Load configuration from environment variables."""
        load_dotenv()

        pve_host = os.getenv("PVE_HOST", "pve")
        return cls(
            api_token=os.getenv("API_TOKEN"),
            pve_host=pve_host,
            pve_node=os.getenv("PVE_NODE", pve_host.split(".")[0]),
            verify_ssl=_env_bool("PVE_VERIFY_SSL", "false"),
            ssh_host=os.getenv("PVE_SSH_HOST", ""),
            ssh_user=os.getenv("SSH_USER", "root"),
            ssh_key_path=os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"),
            hostname=os.getenv("CT_HOSTNAME", "invenio-ils"),
            cores=int(os.getenv("CT_CORES", "2")),
            memory_mb=int(os.getenv("CT_MEMORY_MB", "6144")),
            disk_gb=int(os.getenv("CT_DISK_GB", "30")),
            storage=os.getenv("CT_STORAGE", "local-lvm"),
            bridge=os.getenv("CT_BRIDGE", "vmbr0"),
            template=os.getenv("CT_TEMPLATE", "local:vztmpl/ubuntu-22.04-standard_22.04-1_amd64.tar.zst"),
            workload_repo=os.getenv("WORKLOAD_REPO", "https://github.com/inveniosoftware/invenio-app-ils.git"),
            workload_branch=os.getenv("WORKLOAD_BRANCH", "main"),
            workload_name=os.getenv("WORKLOAD_NAME", "invenio-app-ils"),
            workload_user=os.getenv("WORKLOAD_USER", "invenio"),
            compose_file=os.getenv("COMPOSE_FILE", "docker-compose.full.yml"),
            system_install_root=os.getenv("SYSTEM_INSTALL_ROOT", "/opt"),
            step_timeout=int(os.getenv("STEP_TIMEOUT", "900")),
            poll_interval=float(os.getenv("POLL_INTERVAL", "1")),
            poll_max_attempts=int(os.getenv("POLL_MAX_ATTEMPTS", "30")),
            allocation_window=int(os.getenv("ALLOCATION_WINDOW", "500")),
            failed_primary_policy=FailedPrimaryPolicy(os.getenv("FAILED_PRIMARY_POLICY", "preserve").strip().lower()),
            fallback_suffix=os.getenv("FALLBACK_SUFFIX", "-priv"),
            ensure_max_map_count=_env_bool("ENSURE_MAX_MAP_COUNT", "true"),
        )

    def validate(self) -> None:
        """Validate configuration settings."""
        if not self.api_token:
            raise ValueError("API_TOKEN environment variable is not set")

        if "!" not in self.api_token or "=" not in self.api_token:
            raise ValueError("API_TOKEN must look like user@realm!tokenid=secret")

        if self.cores < 1:
            raise ValueError(f"Invalid core count {self.cores}, must be at least 1")

        if self.memory_mb < 512:
            raise ValueError(f"Invalid memory {self.memory_mb}MB, must be at least 512MB")

        if self.disk_gb < 1:
            raise ValueError(f"Invalid disk size {self.disk_gb}GB, must be at least 1GB")

        if self.step_timeout <= 0:
            raise ValueError("STEP_TIMEOUT must be positive")

        if self.poll_max_attempts < 1 or self.poll_interval < 0:
            raise ValueError("POLL_MAX_ATTEMPTS must be >= 1 and POLL_INTERVAL >= 0")

        if self.allocation_window < 0:
            raise ValueError("ALLOCATION_WINDOW must not be negative")

    def instance_spec(self) -> InstanceSpec:
        """Sizing for the primary instance."""
        return InstanceSpec(
            hostname=self.hostname,
            cores=self.cores,
            memory_mb=self.memory_mb,
            disk_gb=self.disk_gb,
            storage=self.storage,
            bridge=self.bridge,
            template=self.template,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for display. The API token is masked."""
        return {
            "pve_host": self.pve_host,
            "pve_node": self.pve_node,
            "ssh_host": self.ssh_host or "(local)",
            "api_token": "***" if self.api_token else None,
            "hostname": self.hostname,
            "cores": self.cores,
            "memory_mb": self.memory_mb,
            "disk_gb": self.disk_gb,
            "storage": self.storage,
            "bridge": self.bridge,
            "template": self.template,
            "workload_repo": self.workload_repo,
            "workload_branch": self.workload_branch,
            "compose_file": self.compose_file,
            "step_timeout": self.step_timeout,
            "allocation_window": self.allocation_window,
            "failed_primary_policy": self.failed_primary_policy.value,
        }
