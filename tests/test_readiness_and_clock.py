import threading

import pytest

from kubeverdict.core.errors import ClusterError, ErrorKind, ImagePullFailure, ReadinessTimeout, ScenarioCancelled
from kubeverdict.core.models import PodRef, PodSpec, NamespaceSpec
from kubeverdict.orchestration.clock import Deadline, PropagationClock
from kubeverdict.orchestration.readiness import ReadinessWaiter

from conftest import FakeClock


def seed(cluster, *pods, image="nginx:alpine"):
    cluster.create_namespace(NamespaceSpec("ns"))
    for name in pods:
        cluster.create_pod(PodSpec(name, "ns", image=image))
    return [PodRef("ns", name) for name in pods]


def waiter(cluster, clock):
    return ReadinessWaiter(cluster, interval=2.0, clock=clock.monotonic, sleep=clock.sleep)


def test_returns_once_every_pod_is_ready(cluster):
    cluster.ready_after_polls = 2
    clock = FakeClock()
    refs = seed(cluster, "a", "b")
    waiter(cluster, clock).wait_ready(refs, timeout=60)
    assert clock.sleeps == [2.0, 2.0]


def test_timeout_names_exactly_the_pods_still_pending(cluster):
    clock = FakeClock()
    refs = seed(cluster, "web", "client")
    cluster.never_ready.add("web")

    with pytest.raises(ReadinessTimeout) as excinfo:
        waiter(cluster, clock).wait_ready(refs, timeout=5)

    assert excinfo.value.not_ready == [PodRef("ns", "web")]
    assert isinstance(excinfo.value, TimeoutError)
    assert sum(clock.sleeps) == pytest.approx(5.0)
    assert "readiness timeout: ns/web" in str(excinfo.value)


def test_image_pull_failure_stops_waiting(cluster):
    clock = FakeClock()
    cluster.bad_images.add("nginx:doesnotexist")
    refs = seed(cluster, "web", image="nginx:doesnotexist")
    with pytest.raises(ImagePullFailure) as excinfo:
        waiter(cluster, clock).wait_ready(refs, timeout=60)
    assert excinfo.value.refs == [PodRef("ns", "web")]
    assert clock.sleeps == []


def test_not_found_is_pending_but_other_errors_propagate(cluster):
    clock = FakeClock()
    with pytest.raises(ReadinessTimeout):
        waiter(cluster, clock).wait_ready([PodRef("missing", "pod")], timeout=3)

    refs = seed(cluster, "web")
    cluster.fail("get_pod_status", ErrorKind.PERMISSION_DENIED)
    with pytest.raises(ClusterError):
        waiter(cluster, clock).wait_ready(refs, timeout=3)


def test_propagation_clock_fixed_delay():
    clock = FakeClock()
    waited = PropagationClock(delay=5.0, sleep=clock.sleep, clock=clock.monotonic).await_enforcement()
    assert waited == 5.0
    assert clock.sleeps == [5.0]


def test_propagation_clock_returns_early_when_confirmed():
    clock = FakeClock()
    answers = iter([False, False, True])
    prop = PropagationClock(delay=10.0, interval=1.0, sleep=clock.sleep, clock=clock.monotonic)
    assert prop.await_enforcement(confirm=lambda: next(answers)) == 2.0


def test_deadline_interrupts_waits():
    clock = FakeClock()
    deadline = Deadline(3.0, clock=clock.monotonic, sleep=clock.sleep)
    with pytest.raises(ScenarioCancelled) as excinfo:
        PropagationClock(delay=5.0, sleep=clock.sleep, clock=clock.monotonic).await_enforcement(deadline=deadline)
    assert clock.sleeps == [3.0]
    assert "scenario timeout of 3s exceeded during propagation wait" in str(excinfo.value)

    cancel = threading.Event()
    cancel.set()
    with pytest.raises(ScenarioCancelled, match="batch cancelled"):
        Deadline(None, cancel, clock=clock.monotonic, sleep=clock.sleep).check("start")
