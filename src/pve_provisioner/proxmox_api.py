"""Proxmox API wrapper for LXC instance control and registry queries."""

import logging
import time
from typing import Any, Callable, Dict, Optional, Set

from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException
from requests.exceptions import RequestException

from pve_provisioner.models import CreationFailedError, InstanceSpec, PrivilegeTier
from pve_provisioner.retry import poll_until

logger = logging.getLogger(__name__)

# Storage content types that hold instance volumes
VOLUME_CONTENT_TYPES = ("images", "rootdir")


class ProxmoxClient:
    """Wrapper around the Proxmox API for a single node."""

    def __init__(
        self,
        host: str,
        api_token: Optional[str],
        node: Optional[str] = None,
        verify_ssl: bool = False,
        poll_interval: float = 1.0,
        poll_max_attempts: int = 30,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.host = host
        self.node = node or host.split(".")[0]
        self.poll_interval = poll_interval
        self.poll_max_attempts = poll_max_attempts
        self._sleep = sleep

        # Extract API token components
        if api_token is None:
            raise ValueError("API_TOKEN environment variable is not set")
        user_token, self.api_token = api_token.split("=", 1)
        self.user, self.token_name = user_token.split("!", 1)

        self.proxmox = ProxmoxAPI(
            host, user=self.user, token_name=self.token_name, token_value=self.api_token, verify_ssl=verify_ssl
        )

    def _lxc(self, instance_id: int) -> Any:
        return self.proxmox.nodes(self.node).lxc(instance_id)

    def _wait(self, check: Callable[[], Optional[Any]], description: str) -> Optional[Any]:
        return poll_until(
            check,
            interval=self.poll_interval,
            max_attempts=self.poll_max_attempts,
            description=description,
            sleep=self._sleep,
        )

    # === Registry queries ===

    def suggested_next_id(self) -> int:
        """Next free id as suggested by the cluster."""
        return int(self.proxmox.cluster.nextid.get())

    def existing_config_ids(self) -> Set[int]:
        """Ids of every VM and container configuration in the cluster."""
        used: Set[int] = set()

        # Use cluster resources API to get ALL VMs/CTs (including offline nodes)
        try:
            for resource in self.proxmox.cluster.resources.get(type="vm"):
                used.add(int(resource["vmid"]))
        except ResourceException:
            # Fallback to per-node query (skip offline nodes)
            for n in self.proxmox.nodes.get():
                if n.get("status", "unknown") != "online":
                    continue
                nodename = n["node"]
                for vm in self.proxmox.nodes(nodename).qemu.get():
                    used.add(int(vm["vmid"]))
                for ct in self.proxmox.nodes(nodename).lxc.get():
                    used.add(int(ct["vmid"]))

        return used

    def existing_volume_names(self) -> Set[str]:
        """Volume ids on every active storage of this node that holds instance disks."""
        names: Set[str] = set()

        for storage in self.proxmox.nodes(self.node).storage.get():
            kinds = [kind for kind in VOLUME_CONTENT_TYPES if kind in storage.get("content", "").split(",")]
            if not kinds or not storage.get("active", 1):
                continue

            # Only disk volumes; ISO, template and backup names carry unrelated numbers
            for kind in kinds:
                try:
                    items = self.proxmox.nodes(self.node).storage(storage["storage"]).content.get(content=kind)
                except ResourceException as e:
                    logger.warning(f"⚠️  Could not list {kind} volumes on storage {storage['storage']}: {e}")
                    continue

                for item in items:
                    volid = item.get("volid")
                    if volid:
                        names.add(volid)

        return names

    # === Instance control ===

    def _wait_for_task(self, upid: str, instance_id: int, action: str) -> None:
        """Wait for a Proxmox task to stop and raise if it did not end OK."""

        def check() -> Optional[Dict[str, Any]]:
            task = self.proxmox.nodes(self.node).tasks(upid).status.get()
            return task if task.get("status") == "stopped" else None

        task = self._wait(check, f"{action} task of instance {instance_id}")
        if task is None:
            raise CreationFailedError(instance_id, f"{action} task did not finish in time")
        if task.get("exitstatus") != "OK":
            raise CreationFailedError(instance_id, f"{action} task failed: {task.get('exitstatus')}")

    def create(self, instance_id: int, spec: InstanceSpec, tier: PrivilegeTier) -> None:
        """Create an LXC container and wait for the create task to finish."""
        logger.info(
            f"🆕 Creating {tier.value} container {instance_id} ({spec.hostname}): "
            f"{spec.cores} cores, {spec.memory_mb}MB RAM, {spec.disk_gb}G on {spec.storage}"
        )
        try:
            upid = self.proxmox.nodes(self.node).lxc.create(
                vmid=instance_id,
                ostemplate=spec.template,
                hostname=spec.hostname,
                cores=spec.cores,
                memory=spec.memory_mb,
                rootfs=f"{spec.storage}:{spec.disk_gb}",
                net0=f"name=eth0,bridge={spec.bridge},ip=dhcp",
                features="nesting=1,keyctl=1",
                unprivileged=tier.unprivileged_flag,
            )
        except (ResourceException, RequestException) as e:
            raise CreationFailedError(instance_id, f"create failed: {e}") from e

        self._wait_for_task(upid, instance_id, "create")

    def start(self, instance_id: int) -> None:
        """Start a container and wait until it reports running."""
        logger.info(f"▶️  Starting container {instance_id}")
        try:
            upid = self._lxc(instance_id).status.start.post()
        except (ResourceException, RequestException) as e:
            raise CreationFailedError(instance_id, f"start failed: {e}") from e

        self._wait_for_task(upid, instance_id, "start")

        running = self._wait(
            lambda: True if self.status(instance_id) == "running" else None,
            f"container {instance_id} to run",
        )
        if not running:
            raise CreationFailedError(instance_id, "container did not reach running state")

    def status(self, instance_id: int) -> str:
        """Current status string (running, stopped, ...)."""
        return str(self._lxc(instance_id).status.current.get().get("status", "unknown"))

    def destroy(self, instance_id: int) -> None:
        """Stop the container if it is running, then delete it."""
        if self.status(instance_id) == "running":
            logger.info(f"⏹️  Stopping container {instance_id}")
            self._lxc(instance_id).status.stop.post()
            self._wait(
                lambda: True if self.status(instance_id) == "stopped" else None,
                f"container {instance_id} to stop",
            )

        logger.info(f"🗑️  Deleting container {instance_id}")
        upid = self._lxc(instance_id).delete()
        self._wait_for_task(upid, instance_id, "destroy")

    def get_instance_config(self, instance_id: int) -> Dict[str, Any]:
        """Container configuration (hostname, unprivileged, ...)."""
        return self._lxc(instance_id).config.get()  # type: ignore[no-any-return]

    def get_address(self, instance_id: int) -> Optional[str]:
        """Wait for a non-loopback IPv4 address; None if none appears in time."""

        def check() -> Optional[str]:
            for iface in self._lxc(instance_id).interfaces.get():
                if iface.get("name") == "lo":
                    continue
                inet = iface.get("inet")
                if inet and not inet.startswith("127."):
                    return str(inet.split("/")[0])
            return None

        return self._wait(check, f"network address of container {instance_id}")
