"""
Polling helper shared by every wait in the importer.

EC2 gives no notification when an image, volume or attachment changes
state, so each wait is a fixed-interval poll with an attempt budget.
"""

import logging
import time
from typing import Callable, Tuple, Type

from .errors import TransientQueryError, WaitTimeoutError

logger = logging.getLogger(__name__)


def wait_until(
    check: Callable[[], bool],
    interval: float,
    max_attempts: int,
    description: str,
    retry_on: Tuple[Type[BaseException], ...] = (TransientQueryError,),
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    Call check until it returns True or the attempt budget is spent.

    Wall-clock time is roughly max_attempts * (interval + latency of check),
    so slow control planes need a generous budget.

    Args:
        check: Predicate returning True once the condition holds
        interval: Seconds to sleep between attempts
        max_attempts: Maximum number of calls to check
        description: Human readable condition, used in logs and errors
        retry_on: Exception types raised by check that mean "not yet"
        sleep: Sleep function, replaceable in tests

    Returns:
        Number of attempts it took to satisfy the condition

    Raises:
        WaitTimeoutError: If check never returned True
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    logger.debug(f"Waiting for {description} (up to {max_attempts} attempts)")

    for attempt in range(1, max_attempts + 1):
        try:
            if check():
                logger.debug(f"{description} satisfied after {attempt} attempt(s)")
                return attempt
        except retry_on as e:
            logger.debug(f"Attempt {attempt}/{max_attempts} for {description} failed: {e}")

        if attempt < max_attempts:
            sleep(interval)

    logger.error(f"Gave up waiting for {description} after {max_attempts} attempts")
    raise WaitTimeoutError(description, max_attempts)
