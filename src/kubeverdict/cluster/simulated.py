#!/usr/bin/env python3
"""
KUBEVERDICT SIMULATED CLUSTER
-----------------------------
An in-memory ClusterGateway. It keeps namespaces, pods and policies,
hands out pod IPs, answers exec'd wget / nc probes by evaluating the stored
NetworkPolicies, and records every deletion request so teardown is
observable.

Fault injection hooks let callers reproduce the failure modes a live
cluster has: failing operations, pods that never become ready, image pull
errors and unreachable external hosts.

Author: KubeVerdict Team
Date: 2026-10-17
"""

import ipaddress
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple
from urllib.parse import urlsplit

from kubeverdict.cluster.gateway import ClusterGateway, parse_selector
from kubeverdict.cluster.selectors import Endpoint, connection_allowed, selector_matches
from kubeverdict.core.errors import ClusterError, ErrorKind
from kubeverdict.core.models import (ExecResult, NamespaceSpec, PodRef, PodSpec,
                                     PodStatus, PolicySpec)

logger = logging.getLogger("kubeverdict.simulated")

IMAGE_PULL_REASON = "ErrImagePull"


@dataclass
class _Pod:
    spec: PodSpec
    ip: str
    polls: int = 0


@dataclass
class _Namespace:
    spec: NamespaceSpec
    pods: Dict[str, _Pod] = field(default_factory=dict)
    policies: Dict[str, PolicySpec] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class _Fault:
    operation: str
    kind: ErrorKind
    match: Optional[str] = None
    remaining: Optional[int] = None


class SimulatedCluster(ClusterGateway):
    """
    Thread-safe: scenarios of one batch share a SimulatedCluster the same way
    they would share a real cluster.
    """

    def __init__(self, ready_after_polls: int = 0, pod_cidr: str = "10.244.0.0/16"):
        # Status polls answered "not ready" before a pod turns Ready
        self.ready_after_polls = ready_after_polls
        self.never_ready: Set[str] = set()
        self.bad_images: Set[str] = set()
        self.unreachable_hosts: Set[str] = set()
        self.external_hosts: Dict[str, str] = {}
        self.system_pods: List[Tuple[PodStatus, Dict[str, str]]] = []
        self.reject_network_policies = False
        self.deletion_requests: List[Tuple[str, bool]] = []
        self.exec_log: List[Tuple[PodRef, Tuple[str, ...]]] = []

        self._namespaces: Dict[str, _Namespace] = {}
        self._faults: List[_Fault] = []
        self._hosts = ipaddress.ip_network(pod_cidr).hosts()
        self._lock = threading.RLock()

    # --- fault injection ------------------------------------------------

    def fail(self, operation: str, kind: ErrorKind = ErrorKind.UNKNOWN,
             match: Optional[str] = None, times: Optional[int] = None) -> None:
        """Makes `operation` raise ClusterError(kind) when its target contains `match`."""
        with self._lock:
            self._faults.append(_Fault(operation, kind, match, times))

    def _check_fault(self, operation: str, target: str) -> None:
        with self._lock:
            for fault in self._faults:
                if fault.operation != operation:
                    continue
                if fault.match is not None and fault.match not in target:
                    continue
                if fault.remaining is not None:
                    if fault.remaining <= 0:
                        continue
                    fault.remaining -= 1
                raise ClusterError(fault.kind, f"injected failure for {target}", operation)

    def _namespace(self, name: str, operation: str) -> _Namespace:
        ns = self._namespaces.get(name)
        if ns is None:
            raise ClusterError(ErrorKind.NOT_FOUND, f'namespaces "{name}" not found', operation)
        return ns

    def _pod(self, ref: PodRef, operation: str) -> _Pod:
        pod = self._namespace(ref.namespace, operation).pods.get(ref.name)
        if pod is None:
            raise ClusterError(ErrorKind.NOT_FOUND, f'pods "{ref.name}" not found', operation)
        return pod

    def _event(self, ns: _Namespace, kind: str, name: str, reason: str, message: str,
               type_: str = "Normal") -> None:
        ns.events.append({"type": type_, "reason": reason, "object": f"{kind}/{name}", "message": message})

    # --- gateway contract -----------------------------------------------

    def create_namespace(self, spec: NamespaceSpec, timeout: Optional[float] = None) -> str:
        with self._lock:
            self._check_fault("create_namespace", spec.name)
            if spec.name in self._namespaces:
                raise ClusterError(ErrorKind.CONFLICT, f'namespaces "{spec.name}" already exists',
                                   "create_namespace")
            labels = dict(spec.labels)
            labels.setdefault("kubernetes.io/metadata.name", spec.name)
            self._namespaces[spec.name] = _Namespace(spec=NamespaceSpec(spec.name, labels))
            logger.debug(f"namespace {spec.name} created")
            return spec.name

    def create_pod(self, spec: PodSpec, timeout: Optional[float] = None) -> PodRef:
        with self._lock:
            self._check_fault("create_pod", f"{spec.namespace}/{spec.name}")
            ns = self._namespace(spec.namespace, "create_pod")
            if spec.name in ns.pods:
                raise ClusterError(ErrorKind.CONFLICT, f'pods "{spec.name}" already exists', "create_pod")
            ns.pods[spec.name] = _Pod(spec=spec, ip=str(next(self._hosts)))
            self._event(ns, "Pod", spec.name, "Scheduled", f"Successfully assigned {spec.namespace}/{spec.name}")
            if spec.image in self.bad_images:
                self._event(ns, "Pod", spec.name, "Failed", f'Failed to pull image "{spec.image}"', "Warning")
            return spec.ref

    def apply_policy(self, spec: PolicySpec, timeout: Optional[float] = None) -> str:
        with self._lock:
            self._check_fault("apply_policy", f"{spec.namespace}/{spec.name}")
            ns = self._namespace(spec.namespace, "apply_policy")
            if self.reject_network_policies:
                raise ClusterError(ErrorKind.UNKNOWN,
                                   'no matches for kind "NetworkPolicy" in version "networking.k8s.io/v1"',
                                   "apply_policy")
            verb = "configured" if spec.name in ns.policies else "created"
            ns.policies[spec.name] = spec
            logger.debug(f"networkpolicy {spec.namespace}/{spec.name} {verb}")
            return spec.name

    def get_pod_status(self, ref: PodRef, timeout: Optional[float] = None) -> PodStatus:
        with self._lock:
            self._check_fault("get_pod_status", str(ref))
            pod = self._pod(ref, "get_pod_status")
            status = self._status(pod)
            pod.polls += 1
            return status

    def _status(self, pod: _Pod) -> PodStatus:
        spec = pod.spec
        if spec.image in self.bad_images:
            return PodStatus(spec.name, spec.namespace, "Pending", False, None, IMAGE_PULL_REASON)
        if spec.name in self.never_ready or pod.polls < self.ready_after_polls:
            return PodStatus(spec.name, spec.namespace, "Pending", False, None, "ContainerCreating")
        return PodStatus(spec.name, spec.namespace, "Running", True, pod.ip, None)

    def exec_in_pod(self, ref: PodRef, command: Sequence[str], timeout: float) -> ExecResult:
        with self._lock:
            self._check_fault("exec_in_pod", str(ref))
            pod = self._pod(ref, "exec_in_pod")
            if not self._status(pod).ready:
                raise ClusterError(ErrorKind.UNKNOWN, f"container not running in pod {ref}", "exec_in_pod")
            self.exec_log.append((ref, tuple(command)))
            return self._simulate_probe(pod, list(command))

    def delete_namespace(self, name: str, wait: bool = False,
                         timeout: Optional[float] = None) -> None:
        with self._lock:
            self.deletion_requests.append((name, wait))
            self._check_fault("delete_namespace", name)
            self._namespace(name, "delete_namespace")
            del self._namespaces[name]

    def list_namespaces(self, label_selector: Optional[str] = None,
                        timeout: Optional[float] = None) -> List[str]:
        wanted = parse_selector(label_selector)
        with self._lock:
            self._check_fault("list_namespaces", label_selector or "")
            return sorted(name for name, ns in self._namespaces.items()
                          if selector_matches({"matchLabels": wanted}, ns.spec.labels))

    def list_pods(self, namespace: str, label_selector: Optional[str] = None,
                  timeout: Optional[float] = None) -> List[PodStatus]:
        wanted = parse_selector(label_selector)
        with self._lock:
            self._check_fault("list_pods", namespace)
            found = [status for status, labels in self.system_pods if status.namespace == namespace
                     and selector_matches({"matchLabels": wanted}, labels)]
            ns = self._namespaces.get(namespace)
            if ns is not None:
                found += [self._status(p) for p in ns.pods.values()
                          if selector_matches({"matchLabels": wanted}, p.spec.labels)]
            return found

    def get_policies(self, namespace: str, timeout: Optional[float] = None) -> List[str]:
        with self._lock:
            return sorted(self._namespace(namespace, "get_policies").policies)

    def list_events(self, namespace: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._namespace(namespace, "list_events").events)

    def cluster_info(self, timeout: Optional[float] = None) -> str:
        self._check_fault("cluster_info", "")
        return "Kubernetes control plane is running at simulated://kubeverdict"

    # --- connectivity -----------------------------------------------------

    def add_system_pod(self, namespace: str, name: str, labels: Dict[str, str]) -> None:
        """Registers an infrastructure pod (e.g. a CNI agent) visible to list_pods."""
        with self._lock:
            self.system_pods.append((PodStatus(name, namespace, "Running", True, None, None), dict(labels)))

    def _endpoint_for_pod(self, pod: _Pod) -> Endpoint:
        ns = self._namespaces[pod.spec.namespace]
        named = {pod.spec.port_name: pod.spec.port} if pod.spec.port_name and pod.spec.port else {}
        return Endpoint(ip=pod.ip, namespace=pod.spec.namespace,
                        namespace_labels=dict(ns.spec.labels), labels=dict(pod.spec.labels),
                        named_ports=named)

    def _find_pod_by_ip(self, ip: str) -> Optional[_Pod]:
        for ns in self._namespaces.values():
            for pod in ns.pods.values():
                if pod.ip == ip and self._status(pod).ready:
                    return pod
        return None

    def _resolve_external(self, host: str) -> str:
        try:
            return str(ipaddress.ip_address(host))
        except ValueError:
            if host not in self.external_hosts:
                # TEST-NET-3 addresses, stable per host for the life of the cluster
                self.external_hosts[host] = f"203.0.113.{len(self.external_hosts) % 254 + 1}"
            return self.external_hosts[host]

    def _simulate_probe(self, source: _Pod, command: List[str]) -> ExecResult:
        parsed = parse_probe_command(command)
        if parsed is None:
            return ExecResult("", f"sh: {command[0] if command else ''}: not found", 127)
        tool, host, port = parsed

        ip = self._resolve_external(host)
        target_pod = self._find_pod_by_ip(ip)
        src = self._endpoint_for_pod(source)
        dst = self._endpoint_for_pod(target_pod) if target_pod else Endpoint(ip=ip)

        policies = {name: list(ns.policies.values()) for name, ns in self._namespaces.items()}
        allowed, why = connection_allowed(policies, src, dst, port)
        logger.debug(f"probe {source.spec.namespace}/{source.spec.name} -> {host}:{port}: {why}")

        if not allowed or (target_pod is None and host in self.unreachable_hosts):
            # Dropped packets: the client gives up after its own timeout
            if tool == "wget":
                return ExecResult("", "wget: download timed out\ncommand terminated with exit code 1", 1)
            return ExecResult("", "nc: timed out\ncommand terminated with exit code 1", 1)

        if target_pod is not None and target_pod.spec.port != port:
            return ExecResult("", f"{tool}: can't connect to remote host ({ip}): Connection refused", 1)

        body = "<html><title>Welcome to nginx!</title></html>" if tool == "wget" else ""
        return ExecResult(body, "", 0)


def parse_probe_command(command: List[str]) -> Optional[Tuple[str, str, int]]:
    """
    Understands the two probe shapes the prober emits:
      wget -q -T <t> -O - http://host:port[/path]
      nc -z -w <t> host port
    and returns (tool, host, port), or None for anything else.
    """
    if not command:
        return None
    tool = command[0]
    try:
        if tool == "wget":
            url = urlsplit(command[-1])
            return tool, url.hostname or "", url.port or (443 if url.scheme == "https" else 80)
        if tool == "nc":
            return tool, command[-2], int(command[-1])
    except (IndexError, ValueError):
        return None
    return None
