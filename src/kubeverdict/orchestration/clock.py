#!/usr/bin/env python3
"""
KUBEVERDICT PROPAGATION CLOCK
-----------------------------
CNI plugins enforce NetworkPolicy asynchronously; the lag is plugin
dependent. PropagationClock.await_enforcement() is the one place that waits
for it, so no scenario ever sleeps on its own.

Deadline bounds a whole scenario: every wait in the runner goes through it,
so a scenario timeout or a batch-wide cancel interrupts waits promptly.

Author: KubeVerdict Team
Date: 2026-10-17
"""

import logging
import threading
import time
from typing import Callable, Optional

from kubeverdict.core.errors import ScenarioCancelled

logger = logging.getLogger("kubeverdict.clock")


class Deadline:

    def __init__(self, seconds: Optional[float] = None, cancel_event: Optional[threading.Event] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], None]] = None):
        self.seconds = seconds
        self.cancel_event = cancel_event
        self._clock = clock
        self._sleep = sleep
        self._expires = clock() + seconds if seconds is not None else None

    def remaining(self) -> Optional[float]:
        if self._expires is None:
            return None
        return max(0.0, self._expires - self._clock())

    def check(self, stage: str = "") -> None:
        where = f" during {stage}" if stage else ""
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ScenarioCancelled(f"batch cancelled{where}")
        if self._expires is not None and self._clock() >= self._expires:
            raise ScenarioCancelled(f"scenario timeout of {self.seconds:g}s exceeded{where}")

    def sleep(self, seconds: float, stage: str = "") -> None:
        """Sleeps at most until the deadline, then re-checks it."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            if self._sleep is not None:
                self._sleep(seconds)
            elif self.cancel_event is not None:
                self.cancel_event.wait(seconds)
            else:
                time.sleep(seconds)
        self.check(stage)


class PropagationClock:
    """
    Fixed delay by default. When `confirm` is given, polls it every
    `interval` seconds and returns as soon as it reports enforcement, using
    `delay` as the upper bound.
    """

    def __init__(self, delay: float = 5.0, interval: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.delay = delay
        self.interval = interval
        self._sleep = sleep
        self._clock = clock

    def _wait(self, seconds: float, deadline: Optional[Deadline]) -> None:
        if deadline is not None:
            deadline.sleep(seconds, "propagation wait")
        elif seconds > 0:
            self._sleep(seconds)

    def await_enforcement(self, confirm: Optional[Callable[[], bool]] = None,
                          deadline: Optional[Deadline] = None) -> float:
        """Returns the number of seconds spent waiting."""
        start = self._clock()
        if confirm is None:
            logger.debug(f"waiting {self.delay:g}s for policy propagation")
            self._wait(self.delay, deadline)
            return self._clock() - start

        while True:
            if confirm():
                break
            elapsed = self._clock() - start
            if elapsed >= self.delay:
                logger.warning(f"enforcement not confirmed after {self.delay:g}s, probing anyway")
                break
            self._wait(min(self.interval, self.delay - elapsed), deadline)
        return self._clock() - start
