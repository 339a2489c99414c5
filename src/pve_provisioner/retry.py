"""Bounded polling for readiness checks."""

import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def poll_until(
    check: Callable[[], Optional[T]],
    interval: float,
    max_attempts: int,
    description: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[T]:
    """Call ``check`` until it returns a non-None value.

    Sleeps ``interval`` seconds between calls and gives up after
    ``max_attempts`` calls, returning None ("not ready") instead of blocking.
    Exceptions raised by the check count as "not ready yet".

    Args:
        check: Zero-argument callable returning a value or None
        interval: Seconds between attempts
        max_attempts: Maximum number of check calls
        description: Used in log messages
        sleep: Sleep function, replaceable in tests

    Returns:
        First non-None check value, or None if the bound was exhausted
    """
    for attempt in range(1, max_attempts + 1):
        try:
            value = check()
        except Exception as e:
            logger.debug(f"Waiting for {description}: attempt {attempt} raised {e}")
            value = None

        if value is not None:
            return value

        if attempt < max_attempts:
            sleep(interval)

    logger.warning(f"⏱️  Gave up waiting for {description} after {max_attempts} attempts")
    return None
