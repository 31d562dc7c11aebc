"""
Shared fixtures: an in-memory cluster and a fake clock, so that no test
touches a real cluster or really sleeps.
"""

import threading

import pytest

from kubeverdict.cluster.simulated import SimulatedCluster
from kubeverdict.core.config import RunnerConfig
from kubeverdict.core.engine import ScenarioRunner
from kubeverdict.scenarios.loader import ScenarioLoader


class FakeClock:
    """monotonic() only moves when sleep() is called."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []
        self._lock = threading.Lock()

    def monotonic(self) -> float:
        return self.now

    def time(self) -> float:
        return 1_700_000_000.0 + self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


def make_scenario(data, readiness_timeout: float = 60.0):
    return ScenarioLoader(readiness_timeout).parse(data, source="test")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cluster():
    return SimulatedCluster()


@pytest.fixture
def config():
    return RunnerConfig(backend="simulated", propagation_delay=5.0, poll_interval=2.0)


@pytest.fixture
def runner(cluster, config, clock):
    return ScenarioRunner(cluster, config, time_source=clock.time,
                          monotonic=clock.monotonic, sleep=clock.sleep)


def two_pod_scenario(scenario_id="two-pods", policies=None, probes=None, **extra):
    data = {
        "id": scenario_id,
        "namespaces": [{"name": "ns1"}],
        "pods": [
            {"name": "client", "namespace": "ns1", "labels": {"app": "client"}},
            {"name": "web", "namespace": "ns1", "labels": {"app": "web"}, "port": 80},
        ],
        "policies": policies or [],
        "probes": probes if probes is not None else [
            {"source": "ns1/client", "destination": "ns1/web", "protocol": "http",
             "port": 80, "expected": "allow"},
        ],
    }
    data.update(extra)
    return data


DENY_WEB = {
    "name": "deny-web",
    "namespace": "ns1",
    "podSelector": {"matchLabels": {"app": "web"}},
    "policyTypes": ["Ingress"],
    "ingress": [],
}
