"""
Instance id allocation across config records and storage volume names.

An id can look free in the cluster config while a leftover volume such as
``vm-110-disk-0`` still claims it, so both registries are consulted.
"""

import logging
from typing import Any, Iterable, Optional, Set

from proxmoxer.core import ResourceException
from requests.exceptions import RequestException

from pve_provisioner.models import AllocationExhaustedError, RegistryError

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 500


def volume_id_tokens(volume_names: Iterable[str]) -> Set[int]:
    """Numeric tokens of volume names.

    ``local-lvm:vm-110-disk-0`` and ``local:110/vm-110-disk-0.raw`` both
    yield ``{110, 0}``. Only whole tokens between ``-``/``_`` separators
    count, so id 10 is not claimed by ``vm-110-disk-0``.
    """
    tokens: Set[int] = set()
    for name in volume_names:
        base = name.rsplit(":", 1)[-1].rsplit("/", 1)[-1]
        stem = base.split(".", 1)[0]
        for token in stem.replace("_", "-").split("-"):
            if token.isdigit():
                tokens.add(int(token))
    return tokens


class IdAllocator:
    """Finds ids that are free in both the config and the volume registry.

    Ids handed out by one allocator are remembered until released, so two
    allocations in the same process never return the same id even before
    the host has a config record for the first one.
    """

    def __init__(self, registry: Any, window: int = DEFAULT_WINDOW) -> None:
        """
        Args:
            registry: Object providing suggested_next_id(), existing_config_ids()
                and existing_volume_names(), normally a ProxmoxClient
            window: Number of ids past the seed to search before giving up
        """
        self.registry = registry
        self.window = window
        self._reserved: Set[int] = set()

    def allocate(self, seed: Optional[int] = None) -> int:
        """Return the first free id at or above ``seed``.

        Args:
            seed: Where the search starts; the host-suggested next id when None

        Raises:
            AllocationExhaustedError: If every id in [seed, seed + window] is taken
            RegistryError: If the host registry could not be queried
        """
        try:
            if seed is None:
                seed = self.registry.suggested_next_id()
            config_ids = set(self.registry.existing_config_ids())
            volume_ids = volume_id_tokens(self.registry.existing_volume_names())
        except (ResourceException, RequestException) as e:
            raise RegistryError(f"Could not query existing instances and volumes: {e}") from e

        logger.debug(
            f"Allocating from {seed}: {len(config_ids)} config ids, "
            f"{len(volume_ids)} volume tokens, {len(self._reserved)} reserved"
        )

        for candidate in range(seed, seed + self.window + 1):
            if candidate in config_ids:
                continue
            if candidate in volume_ids:
                logger.debug(f"Id {candidate} is free in config but claimed by a volume")
                continue
            if candidate in self._reserved:
                continue

            self._reserved.add(candidate)
            logger.info(f"🔢 Allocated instance id {candidate}")
            return candidate

        raise AllocationExhaustedError(seed, self.window)

    def allocate_after(self, instance_id: int) -> int:
        """Allocate an id strictly greater than ``instance_id``."""
        return self.allocate(instance_id + 1)

    def release(self, instance_id: int) -> None:
        """Forget a reservation once its instance is destroyed."""
        self._reserved.discard(instance_id)
