#!/usr/bin/env python3
"""
KUBEVERDICT POLICY ENFORCEMENT PROBER
-------------------------------------
Runs one connectivity check from a source pod (through the gateway's exec)
and classifies what it saw:

    exit code 0               -> allow
    non-zero exit code        -> deny
    gateway-level failure     -> error   (always fails the scenario)

Known limitation: a probe that simply times out is classified as deny.
At this protocol level a dropped packet and a silent destination look the
same, so a timeout is not a verified deny. Such results carry
timed_out=True so reports can tell them apart from refused connections.

Author: KubeVerdict Team
Date: 2026-10-17
"""

import logging
import time
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlsplit

from kubeverdict.cluster.gateway import ClusterGateway
from kubeverdict.core.errors import ClusterError, ErrorKind
from kubeverdict.core.models import Observation, Protocol, ProbeResult, ProbeSpec
from kubeverdict.orchestration.topology import TopologyHandle

logger = logging.getLogger("kubeverdict.prober")

TIMEOUT_EXIT_CODES = {124, 143}    # coreutils `timeout`, SIGTERM


def _host_for_url(host: str) -> str:
    return f"[{host}]" if ":" in host else host


def build_probe_command(protocol: Protocol, host: str, port: int, timeout: int,
                        url: Optional[str] = None) -> List[str]:
    if protocol == Protocol.HTTP:
        target = url or f"http://{_host_for_url(host)}:{port}"
        return ["wget", "-q", "-T", str(timeout), "-O", "-", target]
    return ["nc", "-z", "-w", str(timeout), host, str(port)]


def looks_timed_out(exit_code: int, stderr: str) -> bool:
    return exit_code in TIMEOUT_EXIT_CODES or "timed out" in (stderr or "").lower()


class PolicyEnforcementProber:

    def __init__(self, gateway: ClusterGateway, grace: float = 3.0,
                 clock: Callable[[], float] = time.monotonic,
                 request_timeout: Optional[float] = None):
        self.gateway = gateway
        self.grace = grace
        self.request_timeout = request_timeout
        self._clock = clock

    def _resolve_target(self, spec: ProbeSpec, handle: TopologyHandle) -> Tuple[str, int, Optional[str]]:
        """Returns (host, port, url). Raises ClusterError if a pod has no IP."""
        if spec.destination_ref is not None:
            runtime = handle.runtime_pod(spec.destination_ref)
            status = self.gateway.get_pod_status(runtime, timeout=self.request_timeout)
            if not status.pod_ip:
                raise ClusterError(ErrorKind.NOT_FOUND, f"pod {spec.destination_ref} has no IP", "resolve")
            return status.pod_ip, spec.port, None

        if "://" in spec.destination:
            parts = urlsplit(spec.destination)
            port = parts.port or spec.port
            url = spec.destination if spec.protocol == Protocol.HTTP else None
            return parts.hostname or "", port, url
        return spec.destination, spec.port, None

    def probe(self, spec: ProbeSpec, handle: TopologyHandle) -> ProbeResult:
        """Never raises for probe outcomes; failures are returned as data."""
        start = self._clock()

        def elapsed_ms() -> int:
            return int((self._clock() - start) * 1000)

        try:
            host, port, url = self._resolve_target(spec, handle)
        except (ClusterError, KeyError) as e:
            return ProbeResult(spec, Observation.ERROR, -1, elapsed_ms(),
                               detail=f"cannot resolve destination: {e}")

        target = f"{host}:{port}"
        command = build_probe_command(spec.protocol, host, port, spec.timeout_seconds, url)
        source = handle.runtime_pod(spec.source)

        try:
            result = self.gateway.exec_in_pod(source, command, timeout=spec.timeout_seconds + self.grace)
        except ClusterError as e:
            if e.kind == ErrorKind.TIMEOUT:
                logger.debug(f"{spec.describe()}: exec timed out, treating as deny")
                return ProbeResult(spec, Observation.DENY, -1, elapsed_ms(), timed_out=True,
                                   detail=str(e), target=target)
            logger.warning(f"{spec.describe()}: exec failed: {e}")
            return ProbeResult(spec, Observation.ERROR, -1, elapsed_ms(), detail=str(e), target=target)

        if result.exit_code == 0:
            observed, timed_out = Observation.ALLOW, False
        else:
            observed, timed_out = Observation.DENY, looks_timed_out(result.exit_code, result.stderr)

        logger.debug(f"{spec.describe()}: exit {result.exit_code} -> {observed.value}")
        return ProbeResult(spec, observed, result.exit_code, elapsed_ms(), timed_out=timed_out,
                           detail=result.stderr.strip(), target=target)
