"""Tests for orchestrator module."""

from unittest import mock

import pytest
from proxmoxer.core import ResourceException

from pve_provisioner.id_allocator import IdAllocator
from pve_provisioner.models import (
    CommandResult,
    FailedPrimaryPolicy,
    OrchestrationState,
    PrivilegeTier,
    RegistryError,
    TargetStatus,
)
from pve_provisioner.orchestrator import MAX_MAP_COUNT_SCRIPT, ProvisioningOrchestrator
from pve_provisioner.strategies import PrivilegedDockerStrategy, RootlessPodmanStrategy, WorkloadSpec

from conftest import FakeExecutor, FakeInstances


def make_orchestrator(instances, executor, **kwargs):
    workload = WorkloadSpec()
    return ProvisioningOrchestrator(
        instances=instances,
        allocator=IdAllocator(instances, window=kwargs.pop("window", 500)),
        primary_strategy=RootlessPodmanStrategy(executor, workload),
        fallback_strategy=PrivilegedDockerStrategy(executor, workload),
        **kwargs,
    )


class TestProvisioningOrchestrator:
    def test_primary_success_creates_no_fallback(self, fake_instances, fake_executor, instance_spec):
        """Should finish on the primary and never allocate a fallback."""
        orchestrator = make_orchestrator(fake_instances, fake_executor)
        with mock.patch.object(orchestrator.allocator, "allocate_after") as allocate_after:
            result = orchestrator.run(instance_spec)

        assert result.state is OrchestrationState.DONE
        assert result.fallback is None
        assert result.authoritative is result.primary
        assert result.primary.id == 110
        assert result.primary.status is TargetStatus.INSTALL_SUCCEEDED
        assert result.primary.privilege_tier is PrivilegeTier.UNPRIVILEGED
        assert result.primary.workload_root == "/home/invenio/invenio-app-ils"
        assert len(fake_instances.created) == 1
        allocate_after.assert_not_called()

    def test_primary_failure_falls_back_to_privileged(self, fake_instances, instance_spec):
        """Seed 110, clone fails, fallback takes 111 and becomes authoritative."""
        executor = FakeExecutor({(110, "clone workload"): 1})
        orchestrator = make_orchestrator(fake_instances, executor)

        result = orchestrator.run(instance_spec)

        assert result.state is OrchestrationState.DONE
        assert result.primary.id == 110
        assert result.primary.status is TargetStatus.INSTALL_FAILED
        assert result.fallback.id == 111
        assert result.fallback.status is TargetStatus.INSTALL_SUCCEEDED
        assert result.fallback.privilege_tier is PrivilegeTier.PRIVILEGED
        assert result.fallback.workload_root == "/opt/invenio-app-ils"
        assert result.authoritative is result.fallback

    def test_exactly_one_fallback_with_distinct_id(self, fake_instances, instance_spec):
        """Should create exactly two instances with different ids on primary failure."""
        executor = FakeExecutor({(110, "start workload"): 1})
        orchestrator = make_orchestrator(fake_instances, executor)

        result = orchestrator.run(instance_spec)

        ids = [iid for iid, _, _ in fake_instances.created]
        tiers = [tier for _, _, tier in fake_instances.created]
        assert ids == [110, 111]
        assert tiers == [PrivilegeTier.UNPRIVILEGED, PrivilegeTier.PRIVILEGED]
        assert result.fallback.id != result.primary.id

    def test_fallback_hostname_and_sizing(self, fake_instances, instance_spec):
        """Should name the fallback after the primary and keep its sizing."""
        executor = FakeExecutor({(110, "install runtime"): 100})
        orchestrator = make_orchestrator(fake_instances, executor)

        orchestrator.run(instance_spec)

        _, fallback_spec, _ = fake_instances.created[1]
        assert fallback_spec.hostname == "invenio-ils-priv"
        assert fallback_spec.cores == instance_spec.cores
        assert fallback_spec.memory_mb == instance_spec.memory_mb
        assert fallback_spec.disk_gb == instance_spec.disk_gb

    def test_fallback_skips_ids_claimed_by_volumes(self, instance_spec):
        """Should skip a fallback id that a leftover volume still claims."""
        instances = FakeInstances(next_id=110, volume_names={"local-lvm:vm-111-disk-0"})
        executor = FakeExecutor({(110, "clone workload"): 1})
        orchestrator = make_orchestrator(instances, executor)

        result = orchestrator.run(instance_spec)

        assert result.fallback.id == 112

    def test_primary_preserved_by_default(self, fake_instances, instance_spec):
        """Should leave the failed primary running."""
        executor = FakeExecutor({(110, "clone workload"): 1})
        orchestrator = make_orchestrator(fake_instances, executor)

        orchestrator.run(instance_spec)

        assert fake_instances.destroyed == []

    def test_destroy_before_fallback_policy(self, fake_instances, instance_spec):
        """Should destroy the failed primary before creating the fallback."""
        executor = FakeExecutor({(110, "clone workload"): 1})
        orchestrator = make_orchestrator(
            fake_instances, executor, failed_primary_policy=FailedPrimaryPolicy.DESTROY_BEFORE_FALLBACK
        )

        result = orchestrator.run(instance_spec)

        assert fake_instances.destroyed == [110]
        assert result.fallback.id == 111

    def test_destroy_after_fallback_policy(self, fake_instances, instance_spec):
        """Should destroy the failed primary only after the fallback succeeds."""
        executor = FakeExecutor({(110, "clone workload"): 1})
        orchestrator = make_orchestrator(
            fake_instances, executor, failed_primary_policy=FailedPrimaryPolicy.DESTROY_AFTER_FALLBACK
        )

        orchestrator.run(instance_spec)

        assert fake_instances.destroyed == [110]

    def test_destroy_after_fallback_keeps_primary_when_fallback_fails(self, fake_instances, instance_spec):
        """Should keep both instances if the fallback fails too."""
        executor = FakeExecutor({(110, "clone workload"): 1, (111, "start workload"): 1})
        orchestrator = make_orchestrator(
            fake_instances, executor, failed_primary_policy=FailedPrimaryPolicy.DESTROY_AFTER_FALLBACK
        )

        result = orchestrator.run(instance_spec)

        assert result.state is OrchestrationState.ABORTED
        assert fake_instances.destroyed == []

    def test_both_strategies_fail_aborts(self, fake_instances, instance_spec):
        """Should abort naming the failed step and instance when the fallback fails."""
        executor = FakeExecutor({(110, "clone workload"): 1, (111, "install runtime"): 100})
        orchestrator = make_orchestrator(fake_instances, executor)

        result = orchestrator.run(instance_spec)

        assert result.state is OrchestrationState.ABORTED
        assert "install runtime" in result.error
        assert "111" in result.error
        assert result.fallback.status is TargetStatus.INSTALL_FAILED
        assert len(fake_instances.created) == 2

    def test_each_strategy_attempted_once(self, fake_instances, instance_spec):
        """Should not retry a failed strategy."""
        executor = FakeExecutor({(110, "clone workload"): 1, (111, "clone workload"): 1})
        orchestrator = make_orchestrator(fake_instances, executor)

        orchestrator.run(instance_spec)

        assert executor.steps_for(110).count("clone workload") == 1
        assert executor.steps_for(111).count("clone workload") == 1

    def test_primary_allocation_exhausted_aborts(self, instance_spec):
        """Should abort without creating anything when no id is free."""
        instances = FakeInstances(next_id=100, config_ids=set(range(100, 106)))
        orchestrator = make_orchestrator(instances, FakeExecutor(), window=5)

        result = orchestrator.run(instance_spec)

        assert result.state is OrchestrationState.ABORTED
        assert result.primary is None
        assert instances.created == []
        assert "No free instance id" in result.error

    def test_fallback_allocation_exhausted_aborts(self, instance_spec):
        """Should abort when the fallback search window is full."""
        instances = FakeInstances(next_id=110, config_ids=set(range(111, 120)))
        executor = FakeExecutor({(110, "clone workload"): 1})
        orchestrator = make_orchestrator(instances, executor, window=5)

        result = orchestrator.run(instance_spec)

        assert result.state is OrchestrationState.ABORTED
        assert result.primary.id == 110
        assert result.fallback is None

    def test_registry_failure_aborts(self, fake_instances, fake_executor, instance_spec):
        """Should abort with an error when the host volume listing fails."""
        orchestrator = make_orchestrator(fake_instances, fake_executor)
        error = ResourceException(500, "Internal Server Error", "storage 'nfs' is not online")

        with mock.patch.object(fake_instances, "existing_volume_names", side_effect=error):
            result = orchestrator.run(instance_spec)

        assert result.state is OrchestrationState.ABORTED
        assert "Could not query" in result.error
        assert fake_instances.created == []

    def test_registry_failure_during_fallback_aborts(self, fake_instances, instance_spec):
        """Should abort, keeping the primary on the result, when the fallback lookup fails."""
        executor = FakeExecutor({(110, "clone workload"): 1})
        orchestrator = make_orchestrator(fake_instances, executor)

        with mock.patch.object(orchestrator.allocator, "allocate_after",
                               side_effect=RegistryError("Could not query existing instances and volumes")):
            result = orchestrator.run(instance_spec)

        assert result.state is OrchestrationState.ABORTED
        assert result.primary.id == 110
        assert result.fallback is None

    def test_primary_creation_failure_aborts(self, instance_spec):
        """Should abort when the host refuses to create the primary."""
        instances = FakeInstances(next_id=110, fail_create={110})
        orchestrator = make_orchestrator(instances, FakeExecutor())

        result = orchestrator.run(instance_spec)

        assert result.state is OrchestrationState.ABORTED
        assert "storage full" in result.error
        assert result.primary is None

    def test_decision_log_records_transitions(self, fake_instances, instance_spec):
        """Should log every state transition in order."""
        executor = FakeExecutor({(110, "clone workload"): 1})
        orchestrator = make_orchestrator(fake_instances, executor)

        result = orchestrator.run(instance_spec)

        states = [entry.split(":")[0] for entry in result.decision_log]
        assert states == [
            "init -> allocating_primary",
            "allocating_primary -> installing_primary",
            "installing_primary -> allocating_fallback",
            "allocating_fallback -> installing_fallback",
            "installing_fallback -> done",
        ]

    def test_targets_record_address(self, fake_instances, fake_executor, instance_spec):
        """Should record the discovered network address."""
        orchestrator = make_orchestrator(fake_instances, fake_executor)

        result = orchestrator.run(instance_spec)

        assert result.primary.address == "192.168.1.110"


class TestPrepareHost:
    def test_runs_sysctl_script_when_enabled(self, fake_instances, fake_executor):
        """Should run the vm.max_map_count script on the host."""
        host_shell = mock.MagicMock()
        host_shell.run.return_value = CommandResult(exit_code=0)
        orchestrator = make_orchestrator(fake_instances, fake_executor, host_shell=host_shell,
                                         ensure_max_map_count=True)

        orchestrator.prepare_host()

        host_shell.run.assert_called_once_with(MAX_MAP_COUNT_SCRIPT, timeout=60)

    def test_skipped_when_disabled(self, fake_instances, fake_executor):
        """Should not touch the host when disabled."""
        host_shell = mock.MagicMock()
        orchestrator = make_orchestrator(fake_instances, fake_executor, host_shell=host_shell)

        orchestrator.prepare_host()

        host_shell.run.assert_not_called()

    def test_failure_does_not_stop_provisioning(self, fake_instances, fake_executor, instance_spec):
        """Should carry on when the host preparation fails."""
        host_shell = mock.MagicMock()
        host_shell.run.side_effect = TimeoutError("slow host")
        orchestrator = make_orchestrator(fake_instances, fake_executor, host_shell=host_shell,
                                         ensure_max_map_count=True)

        result = orchestrator.run(instance_spec)

        assert result.state is OrchestrationState.DONE
