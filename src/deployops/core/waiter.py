"""Bounded polling for remote operations that converge asynchronously.

Every convergence check in deployops (CodeDeploy deployments, Elastic Beanstalk
environment updates, load balancer instance states, SSM command invocations)
runs through a single Waiter instead of hand-rolled retry loops. The waiter
knows nothing about the remote system; predicates decide when they are done
and are responsible for their own progress reporting.

Attempt counting convention:
    - The first predicate call happens immediately, before any sleep.
    - ``max_attempts`` is the total number of predicate calls (inclusive).
    - The waiter sleeps ``interval`` seconds between calls only, never after
      the final call.
    - ``max_attempts <= 0`` times out immediately without calling the predicate.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable


class WaitTimeout(RuntimeError):
    """Raised when a predicate never signals completion."""

    def __init__(self, attempts: int, interval: float):
        super().__init__(
            f"Condition not met after {attempts} attempt(s) at {interval}s interval"
        )
        self.attempts = attempts
        self.interval = interval


@dataclass
class PollState:
    """
    Iteration bookkeeping handed to a predicate.

    Attributes:
        log_every: Emit progress on every Nth iteration.
        iteration: Number of completed predicate calls.
    """

    log_every: int = 9
    iteration: int = 0

    def tick(self) -> bool:
        """Advance one iteration and return True when progress should be reported."""
        self.iteration += 1
        if self.log_every < 1:
            return False
        return self.iteration % self.log_every == 0


class Waiter:
    """Fixed-interval, bounded polling primitive."""

    def __init__(
        self,
        interval: float,
        max_attempts: int,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.interval = interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    def wait(self, predicate: Callable[[], object]) -> None:
        """
        Call ``predicate`` until it returns a truthy value.

        Exceptions raised by the predicate propagate unchanged.

        Raises:
            WaitTimeout: If the predicate is not done after ``max_attempts`` calls.
        """
        for attempt in range(1, self.max_attempts + 1):
            if predicate():
                return
            if attempt < self.max_attempts:
                self._sleep(self.interval)

        raise WaitTimeout(max(self.max_attempts, 0), self.interval)
