#!/usr/bin/env python3
"""
KUBEVERDICT ENGINE TESTS - Scenario lifecycle
---------------------------------------------
Runs whole scenarios against the simulated cluster with a fake clock:
verdicts, state machine, teardown on every exit path and the batch pool.
"""

import threading

import pytest

from kubeverdict.cluster.simulated import SimulatedCluster
from kubeverdict.core.config import RunnerConfig
from kubeverdict.core.engine import BatchRunner, ScenarioRunner
from kubeverdict.core.errors import ErrorKind
from kubeverdict.core.models import Observation, ProbePhase, RunnerState, Verdict
from kubeverdict.orchestration.aggregator import ResultAggregator

from conftest import DENY_WEB, FakeClock, make_scenario, two_pod_scenario


def deletion_names(cluster):
    return {name for name, _ in cluster.deletion_requests}


def test_default_allow_passes(runner, cluster):
    result = runner.run(make_scenario(two_pod_scenario("default-allow")))

    assert result.verdict == Verdict.PASS
    assert result.state == RunnerState.COMPLETED
    assert [r.observed for r in result.probe_results] == [Observation.ALLOW]
    assert result.failure_reasons == []
    assert deletion_names(cluster) == set(result.namespaces.values())


def test_empty_ingress_denies(runner):
    scenario = make_scenario(two_pod_scenario("deny-all", policies=[DENY_WEB], probes=[
        {"source": "ns1/client", "destination": "ns1/web", "protocol": "http", "port": 80,
         "expected": "deny"},
    ]))
    result = runner.run(scenario)
    assert result.verdict == Verdict.PASS
    assert result.probe_results[0].observed == Observation.DENY
    assert result.probe_results[0].timed_out


def test_namespace_selector_allows_only_labelled_namespace(runner):
    scenario = make_scenario({
        "id": "from-ops",
        "namespaces": [{"name": "ops", "labels": {"team": "ops"}},
                       {"name": "dev", "labels": {"team": "dev"}},
                       {"name": "api"}],
        "pods": [
            {"name": "client", "namespace": "ops"},
            {"name": "client", "namespace": "dev"},
            {"name": "server", "namespace": "api", "labels": {"app": "api"}, "port": 8080},
        ],
        "policies": [{
            "name": "api-from-ops", "namespace": "api",
            "podSelector": {"matchLabels": {"app": "api"}}, "policyTypes": ["Ingress"],
            "ingress": [{"from": [{"namespaceSelector": {"matchLabels": {"team": "ops"}}}]}],
        }],
        "probes": [
            {"source": "ops/client", "destination": "api/server", "protocol": "tcp", "port": 8080,
             "expected": "allow"},
            {"source": "dev/client", "destination": "api/server", "protocol": "tcp", "port": 8080,
             "expected": "deny"},
        ],
    })
    result = runner.run(scenario)
    assert result.verdict == Verdict.PASS
    assert [r.observed for r in result.probe_results] == [Observation.ALLOW, Observation.DENY]


def test_literal_namespace_selector_example(runner):
    """ns1 is team=ops and holds web; only pods from ns1 may reach it."""
    scenario = make_scenario({
        "id": "ops-only",
        "namespaces": [{"name": "ns1", "labels": {"team": "ops"}}, {"name": "ns2"}],
        "pods": [
            {"name": "web", "namespace": "ns1", "labels": {"app": "web"}, "port": 80},
            {"name": "client", "namespace": "ns1", "labels": {"app": "client"}},
            {"name": "client", "namespace": "ns2", "labels": {"app": "client"}},
        ],
        "policies": [{
            "name": "web-from-ops", "namespace": "ns1",
            "podSelector": {"matchLabels": {"app": "web"}}, "policyTypes": ["Ingress"],
            "ingress": [{"from": [{"namespaceSelector": {"matchLabels": {"team": "ops"}}}]}],
        }],
        "probes": [
            {"source": "ns1/client", "destination": "ns1/web", "port": 80, "expected": "allow"},
            {"source": "ns2/client", "destination": "ns1/web", "port": 80, "expected": "deny"},
        ],
    })
    result = runner.run(scenario)
    assert result.verdict == Verdict.PASS
    assert [r.observed for r in result.probe_results] == [Observation.ALLOW, Observation.DENY]


def test_readiness_timeout_fails_with_logical_refs(runner, cluster, clock):
    cluster.never_ready.add("web")
    scenario = make_scenario(two_pod_scenario("never-ready"), readiness_timeout=5)

    result = runner.run(scenario)

    assert result.verdict == Verdict.FAIL
    assert result.state == RunnerState.ABORTED
    assert result.failure_reasons == ["readiness timeout: ns1/web"]
    assert result.probe_results == []
    assert deletion_names(cluster) == set(result.namespaces.values())
    # Evidence of the stuck pod is kept
    assert "ns1" in result.diagnostics
    assert any(p["name"] == "web" and not p["ready"] for p in result.diagnostics["ns1"]["pods"])


def test_image_pull_failure_is_skip(runner, cluster):
    cluster.bad_images.add("nginx:typo")
    data = two_pod_scenario("bad-image")
    data["pods"][1]["image"] = "nginx:typo"
    result = runner.run(make_scenario(data))
    assert result.verdict == Verdict.SKIP
    assert "image pull" in result.failure_reasons[0]
    assert "ns1/web" in result.failure_reasons[0]


def test_mismatch_reason_names_the_diverging_probe(runner):
    scenario = make_scenario(two_pod_scenario("wrong-expectation", policies=[DENY_WEB]))
    result = runner.run(scenario)

    assert result.verdict == Verdict.FAIL
    assert result.state == RunnerState.COMPLETED
    reason = result.failure_reasons[0]
    assert "ns1/client -> ns1/web" in reason
    assert "expected allow, observed deny" in reason


def test_probe_error_always_fails(runner, cluster):
    cluster.fail("exec_in_pod", ErrorKind.PERMISSION_DENIED)
    result = runner.run(make_scenario(two_pod_scenario("exec-forbidden")))
    assert result.verdict == Verdict.FAIL
    assert result.probe_results[0].observed == Observation.ERROR


def test_ordering_law_baseline_allow_flips_to_deny(runner, cluster, clock):
    scenario = make_scenario(two_pod_scenario("ordering", policies=[DENY_WEB], probes=[
        {"source": "ns1/client", "destination": "ns1/web", "phase": "baseline", "expected": "allow"},
        {"source": "ns1/client", "destination": "ns1/web", "expected": "deny"},
    ]))
    result = runner.run(scenario)

    assert result.verdict == Verdict.PASS
    baseline, enforced = result.probe_results
    assert baseline.probe.phase == ProbePhase.BASELINE and baseline.observed == Observation.ALLOW
    assert enforced.probe.phase == ProbePhase.ENFORCED and enforced.observed == Observation.DENY
    # The propagation delay separates policy application from the enforced probe
    assert 5.0 in clock.sleeps


@pytest.mark.parametrize("operation,match", [
    ("create_namespace", "-ns1-"),
    ("create_pod", "/web"),
    ("apply_policy", "deny-web"),
])
def test_teardown_requests_every_declared_namespace_on_abort(cluster, config, clock, operation, match):
    cluster.fail(operation, ErrorKind.UNKNOWN, match=match)
    data = two_pod_scenario("abort-" + operation.replace("_", "-"), policies=[DENY_WEB])
    data["namespaces"].append({"name": "ns2"})
    runner = ScenarioRunner(cluster, config, time_source=clock.time, monotonic=clock.monotonic, sleep=clock.sleep)

    result = runner.run(make_scenario(data))

    assert result.verdict == Verdict.FAIL
    assert result.state == RunnerState.ABORTED
    assert "topology build failed" in result.failure_reasons[0]
    assert deletion_names(cluster) == set(result.namespaces.values())
    assert len(result.namespaces) == 2
    assert all(wait is False for _, wait in cluster.deletion_requests)


class BrokenPodCluster(SimulatedCluster):
    """create_pod blows up with something other than a ClusterError."""

    def create_pod(self, spec, timeout=None):
        raise RuntimeError("gateway bug")


def test_unexpected_build_exception_still_tears_down(config, clock):
    cluster = BrokenPodCluster()
    data = two_pod_scenario("boom")
    data["namespaces"].append({"name": "ns2"})
    runner = ScenarioRunner(cluster, config, time_source=clock.time, monotonic=clock.monotonic, sleep=clock.sleep)

    result = runner.run(make_scenario(data))

    assert result.verdict == Verdict.FAIL
    assert result.state == RunnerState.ABORTED
    assert result.failure_reasons[0].startswith("internal error: RuntimeError")
    assert len(result.namespaces) == 2
    assert deletion_names(cluster) == set(result.namespaces.values())
    assert cluster.list_namespaces() == []


def test_build_then_teardown_leaves_no_namespace(runner, cluster):
    result = runner.run(make_scenario(two_pod_scenario("round-trip")))
    for name in result.namespaces.values():
        assert not cluster.namespace_exists(name)


def test_cleanup_errors_do_not_change_verdict(runner, cluster):
    cluster.fail("delete_namespace", ErrorKind.TIMEOUT)
    result = runner.run(make_scenario(two_pod_scenario("sticky-namespace")))
    assert result.verdict == Verdict.PASS
    assert len(result.cleanup_errors) == 1


def test_scenario_timeout_aborts_and_still_tears_down(cluster, clock):
    config = RunnerConfig(backend="simulated", propagation_delay=30.0, scenario_timeout=10.0)
    runner = ScenarioRunner(cluster, config, time_source=clock.time, monotonic=clock.monotonic, sleep=clock.sleep)
    result = runner.run(make_scenario(two_pod_scenario("slow", policies=[DENY_WEB])))

    assert result.verdict == Verdict.FAIL
    assert result.failure_reasons[0].startswith("cancelled: scenario timeout of 10s exceeded")
    assert deletion_names(cluster) == set(result.namespaces.values())


def test_confirm_hook_shortens_propagation_wait(cluster, config, clock):
    seen = []

    def confirm(handle):
        seen.append(handle.scenario_id)
        return True

    runner = ScenarioRunner(cluster, config, time_source=clock.time, monotonic=clock.monotonic,
                            sleep=clock.sleep, confirm_enforcement=confirm)
    result = runner.run(make_scenario(two_pod_scenario("confirmed")))
    assert result.verdict == Verdict.PASS
    assert seen == ["confirmed"]
    assert 5.0 not in clock.sleeps


def test_batch_runs_in_parallel_and_records_in_order(cluster, config):
    clock = FakeClock()
    runner = ScenarioRunner(cluster, config, time_source=clock.time, monotonic=clock.monotonic, sleep=clock.sleep)
    scenarios = [make_scenario(two_pod_scenario(f"s{i}")) for i in range(6)]
    scenarios.append(make_scenario(two_pod_scenario("s-fail", policies=[DENY_WEB])))
    progress = []

    aggregator = BatchRunner(runner, workers=3).run(scenarios, progress_callback=progress.append)

    assert [r.scenario.id for r in aggregator.results] == [s.id for s in scenarios]
    assert len(progress) == len(scenarios)
    summary = aggregator.summary()
    assert summary["total"] == 7 and summary["passed"] == 6 and summary["failed"] == 1
    assert aggregator.exit_code() == 1
    namespaces = [ns for r in aggregator.results for ns in r.namespaces.values()]
    assert len(namespaces) == len(set(namespaces))


def test_global_timeout_cancels_without_touching_the_cluster(cluster, config, clock):
    runner = ScenarioRunner(cluster, config, time_source=clock.time, monotonic=clock.monotonic, sleep=clock.sleep)
    scenarios = [make_scenario(two_pod_scenario(f"c{i}")) for i in range(3)]

    aggregator = BatchRunner(runner, workers=2, aggregator=ResultAggregator()).run(scenarios, global_timeout=0)

    assert all(r.verdict == Verdict.FAIL for r in aggregator.results)
    assert all(r.failure_reasons[0].startswith("cancelled: batch cancelled") for r in aggregator.results)
    assert cluster.list_namespaces() == []


def test_cancel_event_is_honoured_mid_scenario(cluster, config, clock):
    cancel = threading.Event()

    def sleep_then_cancel(seconds):
        clock.sleep(seconds)
        cancel.set()

    runner = ScenarioRunner(cluster, config, time_source=clock.time, monotonic=clock.monotonic,
                            sleep=sleep_then_cancel)
    result = runner.run(make_scenario(two_pod_scenario("interrupted")), cancel_event=cancel)
    assert result.verdict == Verdict.FAIL
    assert "batch cancelled during propagation wait" in result.failure_reasons[0]
    assert deletion_names(cluster) == set(result.namespaces.values())
