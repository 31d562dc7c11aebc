#!/usr/bin/env python3
"""
KUBEVERDICT SELECTOR LOGIC
--------------------------
NetworkPolicy evaluation for the simulated cluster: label selectors
(matchLabels + matchExpressions), peers (podSelector, namespaceSelector,
ipBlock), ports (numeric, named, endPort ranges) and the policyTypes
defaulting rules of networking.k8s.io/v1.

A connection is allowed when the source's egress AND the destination's
ingress both allow it. A direction is unrestricted until at least one
policy of that type selects the pod; from then on traffic needs a rule
that matches it.

Author: KubeVerdict Team
Date: 2026-10-17
"""

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from kubeverdict.core.models import PolicySpec


@dataclass
class Endpoint:
    """One side of a connection: a pod (namespace set) or an external address."""
    ip: str
    namespace: Optional[str] = None
    namespace_labels: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    named_ports: Dict[str, int] = field(default_factory=dict)

    @property
    def is_pod(self) -> bool:
        return self.namespace is not None


def selector_matches(selector: Optional[Dict[str, Any]], labels: Dict[str, str]) -> bool:
    """An empty selector matches everything; a missing one (None) matches nothing."""
    if selector is None:
        return False

    for key, value in (selector.get("matchLabels") or {}).items():
        if labels.get(key) != str(value):
            return False

    for expr in selector.get("matchExpressions") or []:
        key = expr.get("key")
        operator = expr.get("operator")
        values = [str(v) for v in expr.get("values") or []]
        if operator == "In":
            if labels.get(key) not in values:
                return False
        elif operator == "NotIn":
            if key in labels and labels[key] in values:
                return False
        elif operator == "Exists":
            if key not in labels:
                return False
        elif operator == "DoesNotExist":
            if key in labels:
                return False
        else:
            raise ValueError(f"Unknown selector operator '{operator}'")
    return True


def effective_policy_types(policy: PolicySpec) -> Tuple[str, ...]:
    if policy.policy_types:
        return tuple(policy.policy_types)
    types = ["Ingress"]
    if policy.egress:
        types.append("Egress")
    return tuple(types)


def _ip_block_matches(block: Dict[str, Any], ip: str) -> bool:
    try:
        address = ipaddress.ip_address(ip)
        if address not in ipaddress.ip_network(block["cidr"], strict=False):
            return False
        return not any(address in ipaddress.ip_network(e, strict=False)
                       for e in block.get("except") or [])
    except (KeyError, ValueError):
        return False


def peer_matches(peer: Dict[str, Any], policy_namespace: str, other: Endpoint) -> bool:
    """Does `other` match one entry of a rule's from/to list?"""
    if "ipBlock" in peer:
        return _ip_block_matches(peer["ipBlock"], other.ip)

    if not other.is_pod:
        return False

    pod_selector = peer.get("podSelector")
    ns_selector = peer.get("namespaceSelector")

    if ns_selector is None:
        # podSelector alone is scoped to the policy's own namespace
        return other.namespace == policy_namespace and selector_matches(pod_selector or {}, other.labels)

    if not selector_matches(ns_selector, other.namespace_labels):
        return False
    return pod_selector is None or selector_matches(pod_selector, other.labels)


def port_matches(ports: Optional[List[Dict[str, Any]]], port: int, protocol: str,
                 target: Endpoint) -> bool:
    if not ports:
        return True
    for entry in ports:
        if str(entry.get("protocol", "TCP")).upper() != protocol.upper():
            continue
        if "port" not in entry or entry["port"] is None:
            return True
        wanted = entry["port"]
        if isinstance(wanted, str) and not wanted.isdigit():
            resolved = target.named_ports.get(wanted)
            if resolved is not None and resolved == port:
                return True
            continue
        low = int(wanted)
        high = int(entry.get("endPort") or low)
        if low <= port <= high:
            return True
    return False


def _direction_allows(policies: Iterable[PolicySpec], direction: str, subject: Endpoint,
                      other: Endpoint, port: int, protocol: str,
                      port_owner: Endpoint) -> Tuple[bool, str]:
    selecting = [p for p in policies
                 if direction in effective_policy_types(p)
                 and selector_matches(p.pod_selector or {}, subject.labels)]
    if not selecting:
        return True, f"no {direction} policy selects the pod"

    peer_key = "from" if direction == "Ingress" else "to"
    for policy in selecting:
        rules = (policy.ingress if direction == "Ingress" else policy.egress) or []
        for rule in rules:
            peers = rule.get(peer_key)
            if peers and not any(peer_matches(peer, policy.namespace, other) for peer in peers):
                continue
            if port_matches(rule.get("ports"), port, protocol, port_owner):
                return True, f"allowed by {direction} policy {policy.name}"

    names = ", ".join(p.name for p in selecting)
    return False, f"denied by {direction} policies: {names}"


def connection_allowed(policies_by_namespace: Dict[str, List[PolicySpec]], source: Endpoint,
                       destination: Endpoint, port: int, protocol: str = "TCP") -> Tuple[bool, str]:
    """Evaluates egress on the source pod, then ingress on the destination pod."""
    if source.is_pod:
        allowed, why = _direction_allows(policies_by_namespace.get(source.namespace, []), "Egress",
                                         source, destination, port, protocol, destination)
        if not allowed:
            return False, why
    if destination.is_pod:
        allowed, why = _direction_allows(policies_by_namespace.get(destination.namespace, []),
                                         "Ingress", destination, source, port, protocol, destination)
        if not allowed:
            return False, why
    return True, "allowed"
