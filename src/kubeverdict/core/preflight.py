#!/usr/bin/env python3
"""
KUBEVERDICT PREFLIGHT
---------------------
Checks that run before a batch: the cluster answers, the NetworkPolicy API
accepts objects, which CNI is installed (it decides whether policies are
enforced at all), and leftovers of earlier runs are swept.

Author: KubeVerdict Team
Date: 2026-10-17
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from kubeverdict.cluster.gateway import ClusterGateway, format_selector
from kubeverdict.core.errors import ClusterError, ErrorKind
from kubeverdict.core.models import NamespaceSpec, PolicySpec
from kubeverdict.orchestration.topology import (RUNNER_LABEL, RUNNER_NAME, STALE_SELECTOR,
                                                make_run_token)

logger = logging.getLogger("kubeverdict.preflight")

# (cni name, kube-system label selector), checked in order
CNI_SIGNATURES: Tuple[Tuple[str, Dict[str, str]], ...] = (
    ("cilium", {"k8s-app": "cilium"}),
    ("calico", {"k8s-app": "calico-node"}),
    ("weave", {"name": "weave-net"}),
    ("flannel", {"app": "flannel"}),
    ("kindnet", {"app": "kindnet"}),
)
KUBE_PROXY = ("kubenet", {"k8s-app": "kube-proxy"})
# Plugins that ship without NetworkPolicy enforcement
NON_ENFORCING = {"flannel", "kubenet", "unknown"}


@dataclass
class PreflightReport:
    cluster_reachable: bool = False
    cluster_info: str = ""
    network_policy_api: bool = False
    cni: str = "unknown"
    swept_namespaces: List[str] = field(default_factory=list)
    problems: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems

    def environment(self) -> Dict[str, Any]:
        return {"cni": self.cni, "network_policy_api": self.network_policy_api,
                "cluster_info": self.cluster_info}


def detect_cni(gateway: ClusterGateway, timeout: Optional[float] = None) -> str:
    for name, labels in CNI_SIGNATURES + (KUBE_PROXY,):
        try:
            pods = gateway.list_pods("kube-system", format_selector(labels), timeout=timeout)
        except ClusterError as e:
            logger.debug(f"cni probe for {name} failed: {e}")
            continue
        if pods:
            logger.info(f"detected CNI plugin: {name}")
            return name
    return "unknown"


def verify_network_policy_support(gateway: ClusterGateway, prefix: str = "np-test",
                                  timeout: Optional[float] = None) -> bool:
    """Creates a throwaway namespace with a default-deny policy, then drops it without waiting."""
    namespace = f"{prefix}-preflight-{make_run_token()}"
    gateway.create_namespace(NamespaceSpec(namespace, {RUNNER_LABEL: RUNNER_NAME}), timeout=timeout)
    try:
        gateway.apply_policy(PolicySpec(name="preflight-default-deny", namespace=namespace,
                                        pod_selector={}, policy_types=("Ingress",), ingress=[]),
                             timeout=timeout)
        return True
    except ClusterError as e:
        logger.error(f"NetworkPolicy API rejected the preflight policy: {e}")
        return False
    finally:
        try:
            gateway.delete_namespace(namespace, wait=False, timeout=timeout)
        except ClusterError as e:
            logger.warning(f"could not delete preflight namespace {namespace}: {e}")


def sweep_stale_namespaces(gateway: ClusterGateway, timeout: Optional[float] = None) -> List[str]:
    """Requests deletion of every namespace carrying the runner label. Returns the names."""
    swept = []
    for name in gateway.list_namespaces(STALE_SELECTOR, timeout=timeout):
        try:
            gateway.delete_namespace(name, wait=False, timeout=timeout)
            swept.append(name)
        except ClusterError as e:
            if e.kind != ErrorKind.NOT_FOUND:
                logger.warning(f"stale namespace {name} not deleted: {e}")
    if swept:
        logger.info(f"swept {len(swept)} stale test namespaces")
    return swept


def run_preflight(gateway: ClusterGateway, prefix: str = "np-test", timeout: Optional[float] = None,
                  sweep: bool = True, check_policy_api: bool = True) -> PreflightReport:
    report = PreflightReport()
    try:
        report.cluster_info = gateway.cluster_info(timeout=timeout).strip()
        report.cluster_reachable = True
    except ClusterError as e:
        report.problems.append(f"cluster not reachable: {e}")
        return report

    if sweep:
        try:
            report.swept_namespaces = sweep_stale_namespaces(gateway, timeout)
        except ClusterError as e:
            report.warnings.append(f"stale namespace sweep failed: {e}")

    if check_policy_api:
        try:
            report.network_policy_api = verify_network_policy_support(gateway, prefix, timeout)
        except ClusterError as e:
            report.problems.append(f"preflight namespace could not be created: {e}")
        else:
            if not report.network_policy_api:
                report.problems.append("NetworkPolicy API not available")

    report.cni = detect_cni(gateway, timeout)
    if report.cni in NON_ENFORCING:
        report.warnings.append(f"CNI '{report.cni}' may not enforce NetworkPolicies")
    return report
