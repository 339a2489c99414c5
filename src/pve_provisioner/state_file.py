"""Saves and loads orchestration results so a later update run can find its target."""

import json
import logging
from pathlib import Path
from typing import Union

from pve_provisioner.models import OrchestrationResult

logger = logging.getLogger(__name__)


def save_result(result: OrchestrationResult, path: Union[str, Path]) -> None:
    """Write ``result`` as JSON to ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(result.to_dict(), f, indent=2)
    logger.info(f"💾 Saved provisioning result to {path}")


def load_result(path: Union[str, Path]) -> OrchestrationResult:
    """Read a result written by save_result.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not a valid result
    """
    with open(path) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid state file {path}: {e}") from e

    try:
        return OrchestrationResult.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Invalid state file {path}: {e}") from e
