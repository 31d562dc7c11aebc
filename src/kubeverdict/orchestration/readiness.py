#!/usr/bin/env python3
"""
KUBEVERDICT READINESS WAITER
----------------------------
Polls pod status until every pod is Ready or the timeout elapses. Polling
rather than watching: the gateway is not assumed to stream events. This is
a wait for convergence, not a retry of failures.

Author: KubeVerdict Team
Date: 2026-10-17
"""

import logging
import time
from typing import Callable, Iterable, Optional, Set

from kubeverdict.cluster.gateway import ClusterGateway
from kubeverdict.core.errors import ClusterError, ErrorKind, ImagePullFailure, ReadinessTimeout
from kubeverdict.core.models import PodRef
from kubeverdict.orchestration.clock import Deadline

logger = logging.getLogger("kubeverdict.readiness")

IMAGE_PULL_REASONS = {"ErrImagePull", "ImagePullBackOff", "InvalidImageName", "ErrImageNeverPull"}


class ReadinessWaiter:

    def __init__(self, gateway: ClusterGateway, interval: float = 2.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 request_timeout: Optional[float] = None):
        self.gateway = gateway
        self.interval = interval
        self.request_timeout = request_timeout
        self._clock = clock
        self._sleep = sleep

    def wait_ready(self, refs: Iterable[PodRef], timeout: float,
                   deadline: Optional[Deadline] = None) -> None:
        """
        Returns once all refs are ready. Raises ReadinessTimeout with the
        refs still pending, or ImagePullFailure as soon as an image cannot be
        pulled. NotFound counts as "not ready yet"; other gateway errors
        propagate.
        """
        pending: Set[PodRef] = set(refs)
        expires = self._clock() + timeout
        polls = 0

        while True:
            polls += 1
            pull_failures = {}
            for ref in sorted(pending, key=str):
                try:
                    status = self.gateway.get_pod_status(ref, timeout=self.request_timeout)
                except ClusterError as e:
                    if e.kind != ErrorKind.NOT_FOUND:
                        raise
                    continue
                if status.ready:
                    pending.discard(ref)
                elif status.reason in IMAGE_PULL_REASONS:
                    pull_failures[ref] = status.reason

            if pull_failures:
                raise ImagePullFailure(pull_failures, reason=sorted(pull_failures.values())[0])
            if not pending:
                logger.debug(f"all pods ready after {polls} polls")
                return

            remaining = expires - self._clock()
            if remaining <= 0:
                raise ReadinessTimeout(pending, timeout)

            logger.debug(f"poll {polls}: waiting on {', '.join(str(r) for r in sorted(pending, key=str))}")
            if deadline is not None:
                deadline.sleep(min(self.interval, remaining), "readiness wait")
            else:
                self._sleep(min(self.interval, remaining))
