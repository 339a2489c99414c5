#!/usr/bin/env python3
"""
Command-line interface for container provisioning.

    pve-provision                      # create (default)
    pve-provision create --state-file state.json
    pve-provision update --state-file state.json
    CTID=110 FALLBACK_CTID=111 pve-provision update
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional, Tuple

import typer
from proxmoxer.core import ResourceException
from requests.exceptions import RequestException
from rich.console import Console
from rich.json import JSON
from rich.table import Table

from pve_provisioner.config import ProvisionerConfig
from pve_provisioner.executor import RemoteExecutor
from pve_provisioner.host_shell import build_host_shell
from pve_provisioner.id_allocator import IdAllocator
from pve_provisioner.models import NotProvisionedError, OrchestrationResult, ProvisioningTarget
from pve_provisioner.orchestrator import ProvisioningOrchestrator
from pve_provisioner.proxmox_api import ProxmoxClient
from pve_provisioner.state_file import load_result, save_result
from pve_provisioner.strategies import PrivilegedDockerStrategy, RootlessPodmanStrategy, WorkloadSpec
from pve_provisioner.update_resolver import UpdateResolver, describe_instance

# Initialize CLI app and console
app = typer.Typer(
    name="pve-provision",
    help="Provision a containerized application stack on Proxmox LXC",
    add_completion=False,
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


def load_config() -> ProvisionerConfig:
    """Load and validate configuration, exiting on errors."""
    try:
        config = ProvisionerConfig.from_environment()
        config.validate()
    except ValueError as e:
        console.print(f"❌ Invalid configuration: {e}")
        raise typer.Exit(1)
    return config


def workload_from_config(config: ProvisionerConfig) -> WorkloadSpec:
    return WorkloadSpec(
        repo_url=config.workload_repo,
        branch=config.workload_branch,
        name=config.workload_name,
        user=config.workload_user,
        compose_file=config.compose_file,
        system_install_root=config.system_install_root,
    )


def get_client(config: ProvisionerConfig) -> ProxmoxClient:
    """Get Proxmox client for the configured node."""
    try:
        return ProxmoxClient(
            host=config.pve_host,
            api_token=config.api_token,
            node=config.pve_node,
            verify_ssl=config.verify_ssl,
            poll_interval=config.poll_interval,
            poll_max_attempts=config.poll_max_attempts,
        )
    except Exception as e:
        console.print(f"❌ Failed to connect to Proxmox: {e}")
        raise typer.Exit(1)


def build_executor(config: ProvisionerConfig) -> RemoteExecutor:
    host_shell = build_host_shell(config.ssh_host, config.ssh_user, config.ssh_key_path)
    return RemoteExecutor(host_shell, step_timeout=config.step_timeout)


def print_targets(result: OrchestrationResult) -> None:
    table = Table(title="Provisioned Containers")
    table.add_column("Role", style="cyan")
    table.add_column("ID", style="blue")
    table.add_column("Hostname", style="blue")
    table.add_column("Tier", style="yellow")
    table.add_column("Status", style="green")
    table.add_column("Address")

    authoritative = result.authoritative
    for role, target in (("primary", result.primary), ("fallback", result.fallback)):
        if target is None:
            continue
        marker = " ⭐" if authoritative is target else ""
        table.add_row(
            f"{role}{marker}",
            str(target.id),
            target.hostname,
            target.privilege_tier.value,
            target.status.value,
            target.address or "unknown",
        )

    console.print(table)


def run_create(state_file: Optional[Path]) -> None:
    """Provision primary (and fallback if needed) and report the result."""
    config = load_config()
    client = get_client(config)
    executor = build_executor(config)
    workload = workload_from_config(config)

    orchestrator = ProvisioningOrchestrator(
        instances=client,
        allocator=IdAllocator(client, window=config.allocation_window),
        primary_strategy=RootlessPodmanStrategy(executor, workload),
        fallback_strategy=PrivilegedDockerStrategy(executor, workload),
        host_shell=executor.host_shell,
        failed_primary_policy=config.failed_primary_policy,
        fallback_suffix=config.fallback_suffix,
        ensure_max_map_count=config.ensure_max_map_count,
    )

    console.print(f"🚀 Provisioning {workload.name} on {config.pve_node}")
    result = orchestrator.run(config.instance_spec())

    if result.primary is not None:
        print_targets(result)
    if state_file:
        save_result(result, state_file)

    if not result.succeeded:
        console.print(f"❌ {result.error}")
        raise typer.Exit(1)

    target = result.authoritative
    console.print(f"✅ {workload.name} running in container {target.id} ({target.hostname})")


def known_targets(
    config: ProvisionerConfig,
    state_file: Optional[Path],
    ctid: Optional[int],
    fallback_ctid: Optional[int],
) -> Tuple[Optional[ProvisioningTarget], Optional[ProvisioningTarget]]:
    """Targets from a state file, or from ids looked up on the host."""
    if state_file is not None:
        try:
            result = load_result(state_file)
        except (FileNotFoundError, ValueError) as e:
            console.print(f"❌ Could not read state file: {e}")
            raise typer.Exit(1)
        return result.primary, result.fallback

    if ctid is None and fallback_ctid is None:
        return None, None

    client = get_client(config)
    workload = workload_from_config(config)
    return lookup_target(client, ctid, workload), lookup_target(client, fallback_ctid, workload)


def lookup_target(client: Any, instance_id: Optional[int], workload: WorkloadSpec) -> Optional[ProvisioningTarget]:
    """Describe an existing container, exiting if the host does not know it."""
    if instance_id is None:
        return None
    try:
        return describe_instance(client, instance_id, workload)
    except ResourceException as e:
        logger.debug(f"Config lookup for container {instance_id} failed: {e}")
        console.print(f"❌ Container {instance_id} not found")
        raise typer.Exit(1)
    except RequestException as e:
        console.print(f"❌ Could not reach Proxmox to look up container {instance_id}: {e}")
        raise typer.Exit(1)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Provision a containerized application stack on Proxmox LXC."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if ctx.invoked_subcommand is None:
        run_create(state_file=None)


@app.command("create")
def create(
    state_file: Optional[Path] = typer.Option(
        None, "--state-file", "-s", help="Write the result here for later update runs"
    ),
) -> None:
    """Create a container, install the stack, and fall back to a privileged container on failure."""
    run_create(state_file)


@app.command("update")
def update(
    state_file: Optional[Path] = typer.Option(
        None, "--state-file", "-s", help="Result file written by 'create'"
    ),
    ctid: Optional[int] = typer.Option(None, "--ctid", envvar="CTID", help="Primary container id"),
    fallback_ctid: Optional[int] = typer.Option(
        None, "--fallback-ctid", envvar="FALLBACK_CTID", help="Fallback container id"
    ),
) -> None:
    """Pull the latest workload and restart the stack on the authoritative container."""
    config = load_config()
    primary, fallback = known_targets(config, state_file, ctid, fallback_ctid)
    resolver = UpdateResolver(build_executor(config), workload_from_config(config))

    try:
        attempt = resolver.update(primary, fallback)
    except NotProvisionedError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)

    if not attempt.succeeded:
        step = attempt.failed_step
        code = f" (exit {step.exit_code})" if step and step.exit_code is not None else ""
        console.print(f"❌ Step '{attempt.failure_reason}' failed on container {attempt.target.id}{code}")
        raise typer.Exit(1)

    console.print(f"✅ Update requested for container {attempt.target.id}")


@app.command("show-config")
def show_config() -> None:
    """Show the effective configuration."""
    config = load_config()
    console.print(JSON(json.dumps(config.to_dict(), indent=2)))


if __name__ == "__main__":
    app()
