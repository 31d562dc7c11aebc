#!/usr/bin/env python3
"""
KUBEVERDICT CLUSTER GATEWAY
---------------------------
The only boundary between the orchestrator and a cluster. Every operation
is a blocking call bounded by a caller-supplied timeout and fails with a
ClusterError (NotFound, Timeout, PermissionDenied, Conflict, Unknown).
Gateways never retry: retry policy belongs to callers.

Specs handed to a gateway already carry runtime namespace names; the
Topology Builder owns the logical -> runtime mapping.

Author: KubeVerdict Team
Date: 2026-10-17
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from kubeverdict.core.models import (ExecResult, NamespaceSpec, PodRef, PodSpec,
                                     PodStatus, PolicySpec)


class ClusterGateway(ABC):

    @abstractmethod
    def create_namespace(self, spec: NamespaceSpec, timeout: Optional[float] = None) -> str:
        """Creates the namespace and returns its name. Conflict if it exists."""

    @abstractmethod
    def create_pod(self, spec: PodSpec, timeout: Optional[float] = None) -> PodRef:
        """Creates the pod. NotFound if the namespace does not exist."""

    @abstractmethod
    def apply_policy(self, spec: PolicySpec, timeout: Optional[float] = None) -> str:
        """Creates or replaces the NetworkPolicy and returns its name."""

    @abstractmethod
    def get_pod_status(self, ref: PodRef, timeout: Optional[float] = None) -> PodStatus:
        ...

    @abstractmethod
    def exec_in_pod(self, ref: PodRef, command: Sequence[str], timeout: float) -> ExecResult:
        """
        Runs a command in the pod. A non-zero exit code of the command is a
        normal ExecResult; ClusterError means the exec itself failed.
        """

    @abstractmethod
    def delete_namespace(self, name: str, wait: bool = False,
                         timeout: Optional[float] = None) -> None:
        """Requests deletion. With wait=False the call returns once accepted."""

    @abstractmethod
    def list_namespaces(self, label_selector: Optional[str] = None,
                        timeout: Optional[float] = None) -> List[str]:
        ...

    @abstractmethod
    def list_pods(self, namespace: str, label_selector: Optional[str] = None,
                  timeout: Optional[float] = None) -> List[PodStatus]:
        ...

    @abstractmethod
    def get_policies(self, namespace: str, timeout: Optional[float] = None) -> List[str]:
        """Names of the NetworkPolicies in a namespace."""

    @abstractmethod
    def list_events(self, namespace: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """Events of a namespace as {type, reason, object, message} dicts, oldest first."""

    @abstractmethod
    def cluster_info(self, timeout: Optional[float] = None) -> str:
        """Raises ClusterError when the cluster API is unreachable."""

    def namespace_exists(self, name: str, timeout: Optional[float] = None) -> bool:
        return name in self.list_namespaces(timeout=timeout)


def format_selector(labels: Dict[str, str]) -> str:
    """{'a': 'b', 'c': 'd'} -> 'a=b,c=d' (kubectl -l syntax)."""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def parse_selector(selector: Optional[str]) -> Dict[str, str]:
    """Equality-based selector text -> dict. Only 'k=v' and 'k==v' terms are supported."""
    if not selector:
        return {}
    labels = {}
    for term in selector.split(","):
        term = term.strip()
        if not term:
            continue
        key, sep, value = term.replace("==", "=").partition("=")
        if not sep:
            raise ValueError(f"Unsupported label selector term '{term}'")
        labels[key.strip()] = value.strip()
    return labels
