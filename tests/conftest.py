"""Shared test fixtures and fakes for provisioner tests."""

from typing import Any, Dict, List, Optional, Set, Tuple
from unittest import mock

import pytest
from proxmoxer.core import ResourceException

from pve_provisioner.models import (
    CreationFailedError,
    Criticality,
    InstanceSpec,
    PrivilegeTier,
    StepResult,
)


class FakeRegistry:
    """In-memory config and volume registry."""

    def __init__(self, next_id: int = 100, config_ids: Optional[Set[int]] = None,
                 volume_names: Optional[Set[str]] = None) -> None:
        self.next_id = next_id
        self.config_ids = set(config_ids or set())
        self.volume_names = set(volume_names or set())

    def suggested_next_id(self) -> int:
        return self.next_id

    def existing_config_ids(self) -> Set[int]:
        return set(self.config_ids)

    def existing_volume_names(self) -> Set[str]:
        return set(self.volume_names)


class FakeInstances(FakeRegistry):
    """Registry that also creates, starts and destroys instances in memory."""

    def __init__(self, *args: Any, fail_create: Optional[Set[int]] = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.fail_create = set(fail_create or set())
        self.created: List[Tuple[int, InstanceSpec, PrivilegeTier]] = []
        self.started: List[int] = []
        self.destroyed: List[int] = []
        self.configs: Dict[int, Dict[str, Any]] = {}

    def create(self, instance_id: int, spec: InstanceSpec, tier: PrivilegeTier) -> None:
        if instance_id in self.fail_create:
            raise CreationFailedError(instance_id, "create failed: storage full")
        self.created.append((instance_id, spec, tier))
        self.config_ids.add(instance_id)
        self.volume_names.add(f"{spec.storage}:vm-{instance_id}-disk-0")
        self.configs[instance_id] = {"hostname": spec.hostname, "unprivileged": tier.unprivileged_flag}

    def start(self, instance_id: int) -> None:
        self.started.append(instance_id)

    def get_address(self, instance_id: int) -> Optional[str]:
        return f"192.168.1.{instance_id % 250}"

    def destroy(self, instance_id: int) -> None:
        self.destroyed.append(instance_id)
        self.config_ids.discard(instance_id)

    def get_instance_config(self, instance_id: int) -> Dict[str, Any]:
        if instance_id not in self.configs:
            raise ResourceException(
                500, "Internal Server Error", f"Configuration file 'nodes/pve/lxc/{instance_id}.conf' does not exist"
            )
        return self.configs[instance_id]


class FakeExecutor:
    """Step-level executor; ``failures`` maps (instance_id, step name) to an exit code."""

    def __init__(self, failures: Optional[Dict[Tuple[int, str], int]] = None) -> None:
        self.failures = dict(failures or {})
        self.calls: List[Tuple[int, str, Criticality]] = []

    def execute(self, instance_id: int, script: str, name: str = "command",
                criticality: Criticality = Criticality.CRITICAL, timeout: Optional[float] = None) -> StepResult:
        self.calls.append((instance_id, name, criticality))
        exit_code = self.failures.get((instance_id, name), 0)
        return StepResult(name=name, ok=exit_code == 0, criticality=criticality, exit_code=exit_code)

    def steps_for(self, instance_id: int) -> List[str]:
        return [name for iid, name, _ in self.calls if iid == instance_id]


@pytest.fixture
def fake_instances():
    return FakeInstances(next_id=110)


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def instance_spec():
    return InstanceSpec(hostname="invenio-ils")


@pytest.fixture
def mock_proxmox():
    """Mock Proxmox API client for testing."""
    with mock.patch('pve_provisioner.proxmox_api.ProxmoxAPI') as mock_api:
        proxmox = mock.MagicMock()
        mock_api.return_value = proxmox

        proxmox.cluster.nextid.get.return_value = "110"
        proxmox.cluster.resources.get.return_value = []
        proxmox.nodes.return_value.storage.get.return_value = []
        proxmox.nodes.return_value.tasks.return_value.status.get.return_value = {
            "status": "stopped",
            "exitstatus": "OK",
        }
        proxmox.nodes.return_value.lxc.return_value.status.current.get.return_value = {"status": "running"}

        yield proxmox


@pytest.fixture
def mock_env(monkeypatch):
    """Set up provisioning environment variables."""
    # Keep a developer's .env out of the tests
    monkeypatch.setattr('pve_provisioner.config.load_dotenv', lambda *a, **k: False)

    env_vars = {
        "API_TOKEN": "root@pam!provision=secretvalue",
        "PVE_HOST": "pve.example.com",
        "CT_HOSTNAME": "invenio-ils",
        "CT_CORES": "2",
        "CT_MEMORY_MB": "6144",
        "CT_DISK_GB": "30",
        "CT_STORAGE": "local-lvm",
        "CT_BRIDGE": "vmbr0",
        "POLL_INTERVAL": "0",
        "POLL_MAX_ATTEMPTS": "3",
    }
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    for key in ("PVE_NODE", "PVE_SSH_HOST", "FAILED_PRIMARY_POLICY", "CTID", "FALLBACK_CTID"):
        monkeypatch.delenv(key, raising=False)

    return env_vars
