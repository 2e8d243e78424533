#!/usr/bin/env python3
"""Bounded readiness polling.

One retry abstraction shared by every wait in a run: a fixed number of
attempts spaced by an interval, or a wall-clock deadline.
"""

import logging
import time
from typing import TYPE_CHECKING, Callable


if TYPE_CHECKING:
    from yardcheck.remote.base import RemoteClient


logger = logging.getLogger(__name__)

# Constants
NESTED_ENGINE_ATTEMPTS = 60
NESTED_ENGINE_INTERVAL = 2


class ReadinessTimeout(TimeoutError):
    """A bounded poll exhausted its attempts or deadline."""


def poll_until(
    check: Callable[[], bool],
    max_attempts: int,
    interval: float,
    description: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Call ``check`` until it returns True or the attempts run out.

    There is no sleep after the final attempt, so a poll that never succeeds
    returns after roughly ``(max_attempts - 1) * interval`` plus the time spent
    in ``check``.

    Args:
        check: Predicate to evaluate
        max_attempts: Maximum number of calls to ``check``
        interval: Seconds to sleep between attempts
        description: Text used in log and error messages
        sleep: Sleep function

    Returns:
        Number of attempts used

    Raises:
        ReadinessTimeout: If ``check`` never returned True
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        if check():
            logger.debug(f"{description} ready after {attempt} attempt(s)")
            return attempt
        if attempt < max_attempts:
            sleep(interval)

    raise ReadinessTimeout(
        f"{description} not ready after {max_attempts} attempts "
        f"({max_attempts * interval:.0f}s)"
    )


def poll_until_deadline(
    check: Callable[[], bool],
    timeout: float,
    interval: float,
    description: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> float:
    """Call ``check`` until it returns True or the deadline passes.

    Args:
        check: Predicate to evaluate
        timeout: Seconds until the deadline
        interval: Seconds to sleep between attempts
        description: Text used in log and error messages
        sleep: Sleep function
        clock: Monotonic clock

    Returns:
        Seconds waited

    Raises:
        ReadinessTimeout: If the deadline passed without success
    """
    start = clock()
    deadline = start + timeout

    while clock() < deadline:
        if check():
            waited = clock() - start
            logger.debug(f"{description} ready after {waited:.1f}s")
            return waited
        sleep(interval)

    raise ReadinessTimeout(f"{description} did not come back within {timeout:.0f}s")


class ReadinessPoller:
    """Polls a remote command until it exits 0.

    Attributes:
        client: Remote client used to run the predicate command
    """

    def __init__(
        self, client: "RemoteClient", sleep: Callable[[float], None] = time.sleep
    ) -> None:
        self.client = client
        self._sleep = sleep

    def wait_for_command(
        self,
        command: str,
        max_attempts: int = NESTED_ENGINE_ATTEMPTS,
        interval: float = NESTED_ENGINE_INTERVAL,
        description: str = "",
    ) -> int:
        """Run ``command`` until it succeeds.

        Returns:
            Number of attempts used

        Raises:
            ReadinessTimeout: If the command never exited 0
        """
        return poll_until(
            lambda: self.client.run_command(command).ok,
            max_attempts=max_attempts,
            interval=interval,
            description=description or command,
            sleep=self._sleep,
        )
