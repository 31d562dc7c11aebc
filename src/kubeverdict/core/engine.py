#!/usr/bin/env python3
"""
KUBEVERDICT ENGINE - The Scenario Orchestrator
----------------------------------------------
ScenarioRunner drives one Scenario through its lifecycle:

    Pending -> Building -> WaitingReady -> PolicyApplied -> Probing -> Completed
                  \\____________\\_______________\\______________\\-> Aborted

Teardown of the scenario's namespaces runs on every exit path (finally
scope), with non-blocking deletes. BatchRunner fans scenarios out over a
worker pool; scenarios share nothing but the gateway.

Author: KubeVerdict Team
Date: 2026-10-17
"""

import functools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Sequence

from kubeverdict.cluster.gateway import ClusterGateway
from kubeverdict.core.config import RunnerConfig
from kubeverdict.core.errors import (BuildError, ClusterError, ImagePullFailure,
                                     ReadinessTimeout, ScenarioCancelled)
from kubeverdict.core.models import (Observation, ProbePhase, ProbeResult, RunnerState,
                                     Scenario, ScenarioResult, Verdict)
from kubeverdict.orchestration.aggregator import ResultAggregator
from kubeverdict.orchestration.clock import Deadline, PropagationClock
from kubeverdict.orchestration.prober import PolicyEnforcementProber
from kubeverdict.orchestration.readiness import ReadinessWaiter
from kubeverdict.orchestration.topology import TopologyBuilder, TopologyHandle

logger = logging.getLogger("kubeverdict.engine")

ProgressCallback = Callable[[ScenarioResult], None]


def describe_divergence(result: ProbeResult) -> str:
    probe = result.probe
    text = (f"{probe.phase.value} probe {probe.source} -> {probe.destination}:{probe.port}"
            f"/{probe.protocol.value}: expected {probe.expected.value}, observed {result.observed.value}")
    if result.observed == Observation.ERROR and result.detail:
        text += f" ({result.detail})"
    elif result.timed_out:
        text += " (timed out)"
    return text


class ScenarioRunner:
    """
    Executes scenarios against a gateway. Collaborators default to ones
    built from the RunnerConfig; tests inject fakes with a controlled clock.
    """

    def __init__(self, gateway: ClusterGateway, config: Optional[RunnerConfig] = None,
                 builder: Optional[TopologyBuilder] = None,
                 waiter: Optional[ReadinessWaiter] = None,
                 clock: Optional[PropagationClock] = None,
                 prober: Optional[PolicyEnforcementProber] = None,
                 time_source: Callable[[], float] = time.time,
                 monotonic: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], None]] = None,
                 confirm_enforcement: Optional[Callable[[TopologyHandle], bool]] = None):
        self.gateway = gateway
        self.config = config or RunnerConfig()
        cfg = self.config
        self.builder = builder or TopologyBuilder(gateway, cfg.namespace_prefix,
                                                  cfg.request_timeout, cfg.default_image)
        self.waiter = waiter or ReadinessWaiter(gateway, cfg.poll_interval, clock=monotonic,
                                                sleep=sleep or time.sleep,
                                                request_timeout=cfg.request_timeout)
        self.clock = clock or PropagationClock(cfg.propagation_delay, sleep=sleep or time.sleep,
                                               clock=monotonic)
        self.prober = prober or PolicyEnforcementProber(gateway, cfg.probe_grace, clock=monotonic,
                                                        request_timeout=cfg.request_timeout)
        self.confirm_enforcement = confirm_enforcement
        self._time = time_source
        self._monotonic = monotonic
        self._sleep = sleep

    def _transition(self, result: ScenarioResult, state: RunnerState) -> None:
        logger.info(f"[{result.scenario.id}] {result.state.value} -> {state.value}")
        result.state = state

    def _abort(self, result: ScenarioResult, verdict: Verdict, reason: str) -> None:
        result.verdict = verdict
        result.failure_reasons.append(reason)
        self._transition(result, RunnerState.ABORTED)

    def _run_probes(self, result: ScenarioResult, handle: TopologyHandle,
                    phase: ProbePhase, deadline: Deadline) -> None:
        for probe in result.scenario.probes_in(phase):
            deadline.check(f"{phase.value} probes")
            outcome = self.prober.probe(probe, handle)
            result.probe_results.append(outcome)

    def _collect_diagnostics(self, handle: TopologyHandle) -> Dict[str, Any]:
        """Pods, policies and events per created namespace. Best effort."""
        timeout = self.config.request_timeout
        diagnostics: Dict[str, Any] = {}
        for logical, runtime in handle.namespaces.items():
            if runtime not in handle.created_namespaces:
                continue
            entry: Dict[str, Any] = {"namespace": runtime}
            try:
                entry["pods"] = [asdict(p) for p in self.gateway.list_pods(runtime, timeout=timeout)]
                entry["policies"] = self.gateway.get_policies(runtime, timeout=timeout)
                entry["events"] = self.gateway.list_events(runtime, timeout=timeout)
            except ClusterError as e:
                entry["error"] = str(e)
            diagnostics[logical] = entry
        return diagnostics

    def run(self, scenario: Scenario, cancel_event: Optional[threading.Event] = None) -> ScenarioResult:
        """
        Runs one scenario to a terminal state and returns its result. Setup
        failures become fail/skip verdicts; only non-Exception interrupts
        (KeyboardInterrupt) propagate, after teardown.
        """
        result = ScenarioResult(scenario=scenario, verdict=Verdict.FAIL,
                                state=RunnerState.PENDING, started_at=self._time())
        timeout = scenario.timeout if scenario.timeout is not None else self.config.scenario_timeout
        deadline = Deadline(timeout, cancel_event, clock=self._monotonic, sleep=self._sleep)
        handle: Optional[TopologyHandle] = None

        try:
            deadline.check("start")
            self._transition(result, RunnerState.BUILDING)
            # Planned up front: teardown covers every exit from build
            handle = self.builder.plan(scenario)
            result.namespaces = dict(handle.namespaces)
            self.builder.build(scenario, handle=handle)

            deadline.check("build")
            self._transition(result, RunnerState.WAITING_READY)
            self.waiter.wait_ready(handle.pods.values(), scenario.readiness_timeout, deadline)
            self._run_probes(result, handle, ProbePhase.BASELINE, deadline)

            self.builder.apply_policies(handle, scenario)
            self._transition(result, RunnerState.POLICY_APPLIED)
            confirm = None
            if self.confirm_enforcement is not None:
                confirm = functools.partial(self.confirm_enforcement, handle)
            waited = self.clock.await_enforcement(confirm, deadline)
            logger.debug(f"[{scenario.id}] enforcement wait took {waited:.1f}s")

            self._transition(result, RunnerState.PROBING)
            self._run_probes(result, handle, ProbePhase.ENFORCED, deadline)

            diverging = result.diverging_probes()
            result.verdict = Verdict.FAIL if diverging else Verdict.PASS
            result.failure_reasons.extend(describe_divergence(r) for r in diverging)
            self._transition(result, RunnerState.COMPLETED)

        except BuildError as e:
            handle = e.handle
            result.namespaces = dict(handle.namespaces)
            self._abort(result, Verdict.FAIL, str(e))
        except ReadinessTimeout as e:
            refs = ", ".join(str(handle.logical_pod(r)) if handle else str(r) for r in e.not_ready)
            self._abort(result, Verdict.FAIL, f"readiness timeout: {refs}")
        except ImagePullFailure as e:
            refs = ", ".join(str(handle.logical_pod(r)) if handle else str(r) for r in e.refs)
            self._abort(result, Verdict.SKIP, f"precondition failed: image pull ({e.reason}) for {refs}")
        except ScenarioCancelled as e:
            self._abort(result, Verdict.FAIL, str(e))
        except ClusterError as e:
            self._abort(result, Verdict.FAIL, f"cluster error: {e}")
        except Exception as e:
            logger.exception(f"[{scenario.id}] unexpected failure")
            self._abort(result, Verdict.FAIL, f"internal error: {type(e).__name__}: {e}")
        finally:
            if not result.state.is_terminal:
                # Reached only on KeyboardInterrupt / SystemExit
                self._abort(result, Verdict.FAIL, "cancelled: interrupted")
            if handle is not None:
                if result.verdict != Verdict.PASS:
                    result.diagnostics = self._collect_diagnostics(handle)
                result.cleanup_errors = self.builder.teardown(handle)
            result.ended_at = self._time()
            logger.info(f"[{scenario.id}] verdict {result.verdict.value.upper()} "
                        f"in {result.duration_seconds:.1f}s")
        return result


class BatchRunner:
    """
    Runs many scenarios on a thread pool. Results are recorded in the
    order the scenarios were given, whatever order they finish in.
    """

    def __init__(self, runner: ScenarioRunner, workers: int = 4,
                 aggregator: Optional[ResultAggregator] = None):
        self.runner = runner
        self.workers = max(1, workers)
        self.aggregator = aggregator or ResultAggregator()
        self.cancel_event = threading.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(self, scenarios: Sequence[Scenario], global_timeout: Optional[float] = None,
            progress_callback: Optional[ProgressCallback] = None) -> ResultAggregator:
        results: List[Optional[ScenarioResult]] = [None] * len(scenarios)
        timer: Optional[threading.Timer] = None
        if global_timeout is not None:
            if global_timeout <= 0:
                self.cancel_event.set()
            else:
                timer = threading.Timer(global_timeout, self.cancel_event.set)
                timer.daemon = True
                timer.start()

        logger.info(f"running {len(scenarios)} scenarios with {self.workers} workers")
        pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="kubeverdict")
        try:
            futures = {pool.submit(self.runner.run, s, self.cancel_event): i
                       for i, s in enumerate(scenarios)}
            for future in as_completed(futures):
                index = futures[future]
                results[index] = future.result()
                if progress_callback:
                    progress_callback(results[index])
        except KeyboardInterrupt:
            logger.warning("interrupted, cancelling outstanding scenarios")
            self.cancel_event.set()
            raise
        finally:
            if timer is not None:
                timer.cancel()
            # Running scenarios observe the cancel event and tear down before we return
            pool.shutdown(wait=True, cancel_futures=False)

        for result in results:
            if result is not None:
                self.aggregator.record(result)
        return self.aggregator
