"""Bounded "poll until predicate or deadline" primitive.

Shared by display readiness, window discovery and window activation. Every
wait in the harness goes through :func:`poll_until`, so every wait carries an
explicit deadline and ends in :class:`PollTimeout` rather than hanging.
"""

from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

from .errors import PollTimeout

T = TypeVar("T")


def poll_until(
    condition: Callable[[], T],
    timeout: float,
    interval: float = 0.2,
    description: str = "condition",
    backoff: float = 1.0,
    max_interval: Optional[float] = None,
    max_attempts: Optional[int] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``condition`` until it returns a truthy value and return that value.

    The condition is always checked at least once. Between attempts the
    interval is multiplied by ``backoff`` (capped at ``max_interval``).
    Exceptions raised by the condition propagate unchanged.

    Raises:
        PollTimeout: the deadline elapsed or ``max_attempts`` was exhausted.
    """
    if timeout < 0:
        raise ValueError("timeout must be >= 0")

    deadline = clock() + timeout
    delay = interval
    attempts = 0
    while True:
        attempts += 1
        result = condition()
        if result:
            return result

        remaining = deadline - clock()
        if remaining <= 0 or (max_attempts is not None and attempts >= max_attempts):
            raise PollTimeout(description, timeout, attempts)

        sleep(min(delay, remaining))
        delay = delay * backoff
        if max_interval is not None:
            delay = min(delay, max_interval)
