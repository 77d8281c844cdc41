"""
Bounded polling with a fixed delay between attempts.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def poll(
    predicate: Callable[[], object],
    attempts: int = 10,
    delay: float = 1.0,
    sleep: Optional[Callable[[float], None]] = None,
) -> bool:
    """
    Call ``predicate`` until it returns something truthy.

    Args:
        predicate: Zero-argument callable checked once per attempt.
        attempts: Maximum number of checks.
        delay: Seconds slept between two checks (not after the last one).
        sleep: Sleep function, defaults to time.sleep.
    Returns:
        True as soon as the predicate succeeds, False once attempts run out.
    """
    sleep = sleep or time.sleep
    for attempt in range(1, attempts + 1):
        if predicate():
            return True
        logger.debug("Attempt %d/%d not ready", attempt, attempts)
        if attempt < attempts:
            sleep(delay)
    return False
