#!/usr/bin/env python3
"""
KUBEVERDICT CORE MODELS
-----------------------
Defines the fundamental data structures used across the KubeVerdict engine.
Specs (Scenario, NamespaceSpec, PodSpec, PolicySpec, ProbeSpec) are frozen:
a scenario is immutable once execution starts. Results (ProbeResult,
ScenarioResult) are produced by the orchestration layer.

Author: KubeVerdict Team
Date: 2026-10-17
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Protocol(str, Enum):
    HTTP = "http"
    TCP = "tcp"


class Expectation(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class Observation(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ERROR = "error"


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"


class ProbePhase(str, Enum):
    BASELINE = "baseline"    # after readiness, before any policy exists
    ENFORCED = "enforced"    # after policies and the propagation wait


class RunnerState(str, Enum):
    PENDING = "Pending"
    BUILDING = "Building"
    WAITING_READY = "WaitingReady"
    POLICY_APPLIED = "PolicyApplied"
    PROBING = "Probing"
    COMPLETED = "Completed"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunnerState.COMPLETED, RunnerState.ABORTED)


@dataclass(frozen=True)
class PodRef:
    """Logical reference to a pod inside a scenario: '<namespace>/<pod>'."""
    namespace: str
    name: str

    @classmethod
    def parse(cls, text: str) -> "PodRef":
        namespace, sep, name = text.partition("/")
        if not sep or not namespace or not name:
            raise ValueError(f"Pod reference '{text}' must look like 'namespace/pod'")
        return cls(namespace=namespace, name=name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class NamespaceSpec:
    name: str                                      # logical id, unique within the scenario
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PodSpec:
    name: str
    namespace: str                                 # NamespaceSpec.name
    labels: Dict[str, str] = field(default_factory=dict)
    image: str = ""                                # empty: the runner's default_image
    port: Optional[int] = 80
    port_name: Optional[str] = None                # named containerPort for named-port rules

    @property
    def ref(self) -> PodRef:
        return PodRef(self.namespace, self.name)


@dataclass(frozen=True)
class PolicySpec:
    """
    A NetworkPolicy document. The body is treated as data: the orchestrator
    never interprets it, it only serializes it through the manifest encoder.

    ingress/egress are None when the field is absent and an empty list when
    the policy explicitly allows nothing in that direction.
    """
    name: str
    namespace: str
    pod_selector: Dict[str, Any] = field(default_factory=dict)
    policy_types: Tuple[str, ...] = ()
    ingress: Optional[List[Dict[str, Any]]] = None
    egress: Optional[List[Dict[str, Any]]] = None


@dataclass(frozen=True)
class ProbeSpec:
    source: PodRef
    destination: str                               # "ns/pod" ref or an external host / URL
    protocol: Protocol = Protocol.HTTP
    port: int = 80
    expected: Expectation = Expectation.ALLOW
    timeout_seconds: int = 2
    phase: ProbePhase = ProbePhase.ENFORCED
    destination_ref: Optional[PodRef] = None       # set when destination names a declared pod

    @property
    def is_external(self) -> bool:
        return self.destination_ref is None

    def describe(self) -> str:
        return f"{self.source} -> {self.destination}:{self.port}/{self.protocol.value}"


@dataclass(frozen=True)
class Scenario:
    id: str
    namespaces: Tuple[NamespaceSpec, ...] = ()
    pods: Tuple[PodSpec, ...] = ()
    policies: Tuple[PolicySpec, ...] = ()
    probes: Tuple[ProbeSpec, ...] = ()
    description: str = ""
    tags: Tuple[str, ...] = ()
    readiness_timeout: float = 60.0
    timeout: Optional[float] = None

    def pod(self, ref: PodRef) -> Optional[PodSpec]:
        for pod in self.pods:
            if pod.ref == ref:
                return pod
        return None

    def probes_in(self, phase: ProbePhase) -> List[ProbeSpec]:
        return [p for p in self.probes if p.phase == phase]


@dataclass(frozen=True)
class PodStatus:
    """What the gateway reports about a pod (status.podIP, Ready condition)."""
    name: str
    namespace: str
    phase: str = "Pending"
    ready: bool = False
    pod_ip: Optional[str] = None
    reason: Optional[str] = None                   # container waiting reason, e.g. ErrImagePull


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int


@dataclass(frozen=True)
class ProbeResult:
    probe: ProbeSpec
    observed: Observation
    exit_code: int
    duration_ms: int
    timed_out: bool = False                        # deny inferred from absence of a response
    detail: str = ""
    target: str = ""

    @property
    def matches(self) -> bool:
        return self.observed.value == self.probe.expected.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": str(self.probe.source),
            "destination": self.probe.destination,
            "target": self.target,
            "protocol": self.probe.protocol.value,
            "port": self.probe.port,
            "phase": self.probe.phase.value,
            "expected": self.probe.expected.value,
            "observed": self.observed.value,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
            "detail": self.detail,
        }


@dataclass
class ScenarioResult:
    scenario: Scenario
    verdict: Verdict
    state: RunnerState
    probe_results: List[ProbeResult] = field(default_factory=list)
    failure_reasons: List[str] = field(default_factory=list)
    started_at: float = 0.0
    ended_at: float = 0.0
    namespaces: Dict[str, str] = field(default_factory=dict)
    cleanup_errors: List[str] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        return max(0.0, self.ended_at - self.started_at)

    def diverging_probes(self) -> List[ProbeResult]:
        return [r for r in self.probe_results
                if r.observed == Observation.ERROR or not r.matches]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenario_id": self.scenario.id,
            "description": self.scenario.description,
            "verdict": self.verdict.value,
            "state": self.state.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_seconds": round(self.duration_seconds, 3),
            "namespaces": dict(self.namespaces),
            "failure_reasons": list(self.failure_reasons),
            "probes": [r.to_dict() for r in self.probe_results],
            "cleanup_errors": list(self.cleanup_errors),
            "diagnostics": self.diagnostics,
        }
