#!/usr/bin/env python3
"""
KUBEVERDICT TOPOLOGY BUILDER
----------------------------
Turns a Scenario into live objects through the ClusterGateway, in strict
order: namespaces, then pods. Policies are applied separately, after the
Readiness Waiter has confirmed the pods (see ScenarioRunner).

Runtime namespace names are allocated for every declared namespace before
anything is created: `<prefix>-<scenario>-<namespace>-<run token>`. They are
globally unique by construction, which is the only concurrency control
between scenarios. The TopologyHandle records the logical -> runtime mapping
and is what teardown works from, even after a partial build.

Author: KubeVerdict Team
Date: 2026-10-17
"""

import hashlib
import logging
import os
import re
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set

from kubeverdict.cluster.gateway import ClusterGateway
from kubeverdict.core.errors import BuildError, ClusterError, ErrorKind
from kubeverdict.core.models import NamespaceSpec, PodRef, Scenario

logger = logging.getLogger("kubeverdict.topology")

RUNNER_LABEL = "test-runner"
RUNNER_NAME = "kubeverdict"
SCENARIO_LABEL = "kubeverdict/scenario"
RUN_LABEL = "kubeverdict/run"
STALE_SELECTOR = f"{RUNNER_LABEL}={RUNNER_NAME}"

_DNS_LABEL_MAX = 63
_INVALID = re.compile(r"[^a-z0-9-]+")


def make_run_token() -> str:
    """Time, pid and random component; unique across concurrent runners."""
    return f"{int(time.time()) % 100000:05d}{os.getpid() % 1000:03d}{uuid.uuid4().hex[:4]}"


def sanitize(text: str) -> str:
    return _INVALID.sub("-", text.lower()).strip("-") or "x"


def runtime_namespace_name(prefix: str, scenario_id: str, namespace: str, token: str) -> str:
    """Builds a DNS-1123 label; long middles are truncated and disambiguated by a digest."""
    middle = sanitize(f"{scenario_id}-{namespace}")
    budget = _DNS_LABEL_MAX - len(prefix) - len(token) - 2
    if len(middle) > budget:
        digest = hashlib.sha1(middle.encode("utf-8")).hexdigest()[:6]
        middle = f"{middle[:budget - 7].rstrip('-')}-{digest}"
    return f"{sanitize(prefix)}-{middle}-{token}"


@dataclass
class TopologyHandle:
    scenario_id: str
    run_token: str
    namespaces: Dict[str, str] = field(default_factory=dict)     # logical -> runtime (planned)
    created_namespaces: List[str] = field(default_factory=list)  # runtime names actually created
    pods: Dict[PodRef, PodRef] = field(default_factory=dict)      # logical -> runtime ref
    policies: List[str] = field(default_factory=list)            # "<runtime ns>/<name>"
    torn_down: bool = False

    def runtime_namespace(self, logical: str) -> str:
        return self.namespaces[logical]

    def runtime_pod(self, ref: PodRef) -> PodRef:
        if ref in self.pods:
            return self.pods[ref]
        return PodRef(self.runtime_namespace(ref.namespace), ref.name)

    def logical_pod(self, runtime: PodRef) -> PodRef:
        for logical, created in self.pods.items():
            if created == runtime:
                return logical
        return runtime


class TopologyBuilder:

    def __init__(self, gateway: ClusterGateway, namespace_prefix: str = "np-test",
                 request_timeout: Optional[float] = None, default_image: str = "nginx:alpine"):
        self.gateway = gateway
        self.namespace_prefix = namespace_prefix
        self.request_timeout = request_timeout
        self.default_image = default_image
        self._built: Set[str] = set()
        self._lock = threading.Lock()

    def plan(self, scenario: Scenario, run_token: Optional[str] = None) -> TopologyHandle:
        token = run_token or make_run_token()
        handle = TopologyHandle(scenario_id=scenario.id, run_token=token)
        for ns in scenario.namespaces:
            handle.namespaces[ns.name] = runtime_namespace_name(self.namespace_prefix, scenario.id,
                                                                ns.name, token)
        return handle

    def build(self, scenario: Scenario, run_token: Optional[str] = None,
              handle: Optional[TopologyHandle] = None) -> TopologyHandle:
        """
        Creates namespaces then pods. On the first failure the remaining
        creations are skipped and BuildError carries the partial handle.

        A handle from plan() may be passed in; it is filled in place, so the
        caller can tear down whatever exists even if build raises something
        other than ClusterError.
        """
        with self._lock:
            if scenario.id in self._built:
                raise ClusterError(ErrorKind.CONFLICT,
                                   f"scenario '{scenario.id}' was already built by this builder", "build")
            self._built.add(scenario.id)

        if handle is None:
            handle = self.plan(scenario, run_token)
        try:
            for ns in scenario.namespaces:
                runtime = handle.namespaces[ns.name]
                labels = dict(ns.labels)
                labels.update({
                    RUNNER_LABEL: RUNNER_NAME,
                    SCENARIO_LABEL: sanitize(scenario.id)[:_DNS_LABEL_MAX].rstrip("-"),
                    RUN_LABEL: handle.run_token,
                })
                self.gateway.create_namespace(NamespaceSpec(name=runtime, labels=labels),
                                              timeout=self.request_timeout)
                handle.created_namespaces.append(runtime)
                logger.debug(f"[{scenario.id}] namespace {ns.name} -> {runtime}")

            for pod in scenario.pods:
                runtime_spec = replace(pod, namespace=handle.namespaces[pod.namespace],
                                       image=pod.image or self.default_image)
                handle.pods[pod.ref] = self.gateway.create_pod(runtime_spec, timeout=self.request_timeout)
        except ClusterError as e:
            logger.error(f"[{scenario.id}] build aborted: {e}")
            raise BuildError(e, handle)

        logger.info(f"[{scenario.id}] topology ready for polling: "
                    f"{len(handle.created_namespaces)} namespaces, {len(handle.pods)} pods")
        return handle

    def apply_policies(self, handle: TopologyHandle, scenario: Scenario) -> None:
        """Applies every PolicySpec in declaration order into its runtime namespace."""
        for policy in scenario.policies:
            runtime_spec = replace(policy, namespace=handle.runtime_namespace(policy.namespace))
            try:
                self.gateway.apply_policy(runtime_spec, timeout=self.request_timeout)
            except ClusterError as e:
                raise BuildError(e, handle)
            handle.policies.append(f"{runtime_spec.namespace}/{runtime_spec.name}")
        logger.info(f"[{scenario.id}] applied {len(handle.policies)} network policies")

    def teardown(self, handle: TopologyHandle) -> List[str]:
        """
        Requests deletion of every planned namespace without waiting, even
        ones that were never created (NotFound is expected there). Never
        raises: problems are returned so they can be recorded.
        """
        errors: List[str] = []
        created = set(handle.created_namespaces)
        for runtime in handle.namespaces.values():
            try:
                self.gateway.delete_namespace(runtime, wait=False, timeout=self.request_timeout)
            except ClusterError as e:
                if e.kind == ErrorKind.NOT_FOUND and runtime not in created:
                    continue
                logger.warning(f"[{handle.scenario_id}] cleanup of {runtime} failed: {e}")
                errors.append(f"{runtime}: {e}")
        handle.torn_down = True
        return errors
