#!/usr/bin/env python3
"""
KUBEVERDICT SCENARIO LOADER
---------------------------
Reads scenario descriptions (YAML, one scenario per document) into frozen
Scenario objects, checking every cross reference up front so that nothing
malformed ever reaches a cluster.

A policy entry is one of:
    - an inline spec:   {name, namespace, podSelector, policyTypes, ingress, egress}
    - a manifest:       {namespace, manifest: <NetworkPolicy>}
    - a recipe:         {namespace, recipe: path/to/recipe.md, policy: <name>}
Recipes are markdown files whose ```yaml fences hold NetworkPolicy manifests.

Author: KubeVerdict Team
Date: 2026-10-17
"""

import fnmatch
import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Union

from ruamel.yaml import YAML, YAMLError

from kubeverdict.cluster.manifests import policy_from_manifest
from kubeverdict.core.errors import ScenarioError
from kubeverdict.core.models import (Expectation, NamespaceSpec, PodRef, PodSpec, PolicySpec,
                                     ProbePhase, ProbeSpec, Protocol, Scenario)

logger = logging.getLogger("kubeverdict.loader")

SCENARIO_SUFFIXES = (".yaml", ".yml")
_FENCE = re.compile(r"^```ya?ml[ \t]*\n(.*?)^```", re.MULTILINE | re.DOTALL)


def _yaml() -> YAML:
    return YAML(typ="safe", pure=True)


def _get(entry: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in entry:
            return entry[key]
    return default


def _labels(value: Any, where: str, source: Optional[str]) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ScenarioError(f"{where}: labels must be a mapping", source)
    return {str(k): str(v) for k, v in value.items()}


def _enum(enum_cls, value: Any, where: str, source: Optional[str]):
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ScenarioError(f"{where}: '{value}' is not one of {allowed}", source)


def _number(value: Any, where: str, source: Optional[str], kind=float):
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ScenarioError(f"{where}: expected a number, got {value!r}", source)


def extract_recipe_manifests(text: str) -> List[Dict[str, Any]]:
    """Every YAML document found in the ```yaml fences of a markdown recipe."""
    docs: List[Dict[str, Any]] = []
    yaml = _yaml()
    for block in _FENCE.findall(text):
        for doc in yaml.load_all(block):
            if isinstance(doc, dict):
                docs.append(doc)
    return docs


class ScenarioLoader:

    def __init__(self, readiness_timeout: float = 60.0):
        self.readiness_timeout = readiness_timeout

    # --- files ------------------------------------------------------------

    def load_paths(self, paths: Iterable[Union[str, Path]]) -> List[Scenario]:
        scenarios: List[Scenario] = []
        seen: Dict[str, str] = {}
        for path in paths:
            for file_path in self._expand(Path(path)):
                for scenario in self.load_file(file_path):
                    if scenario.id in seen:
                        raise ScenarioError(f"duplicate scenario id '{scenario.id}' "
                                            f"(first defined in {seen[scenario.id]})", str(file_path))
                    seen[scenario.id] = str(file_path)
                    scenarios.append(scenario)
        logger.info(f"loaded {len(scenarios)} scenarios")
        return scenarios

    def _expand(self, path: Path) -> List[Path]:
        if path.is_dir():
            return sorted(p for p in path.rglob("*")
                          if p.suffix in SCENARIO_SUFFIXES and p.is_file() and not p.is_symlink())
        if not path.exists():
            raise ScenarioError("no such file or directory", str(path))
        return [path]

    def load_file(self, path: Union[str, Path]) -> List[Scenario]:
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
            documents = [d for d in _yaml().load_all(text) if d is not None]
        except (OSError, UnicodeDecodeError) as e:
            raise ScenarioError(f"cannot read file: {e}", str(path))
        except YAMLError as e:
            raise ScenarioError(f"invalid YAML: {e}", str(path))

        scenarios = []
        for doc in documents:
            if isinstance(doc, dict) and "scenarios" in doc and "id" not in doc:
                entries = doc.get("scenarios") or []
            else:
                entries = [doc]
            for entry in entries:
                scenarios.append(self.parse(entry, source=str(path), base_dir=path.parent))
        return scenarios

    # --- documents ----------------------------------------------------------

    def parse(self, data: Any, source: Optional[str] = None,
              base_dir: Optional[Path] = None) -> Scenario:
        if not isinstance(data, dict):
            raise ScenarioError("a scenario must be a mapping", source)
        scenario_id = data.get("id")
        if not scenario_id or not isinstance(scenario_id, str):
            raise ScenarioError("scenario has no 'id'", source)
        where = f"scenario '{scenario_id}'"

        namespaces = self._namespaces(data.get("namespaces") or [], where, source)
        declared_ns = {ns.name for ns in namespaces}
        pods = self._pods(data.get("pods") or [], declared_ns, where, source)
        declared_pods = {pod.ref for pod in pods}
        policies = self._policies(data.get("policies") or [], declared_ns, where, source,
                                  base_dir or Path("."))
        probes = [self._probe(p, i, declared_ns, declared_pods, where, source)
                  for i, p in enumerate(data.get("probes") or [])]

        tags = data.get("tags") or []
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(",") if t.strip()]
        timeout = _get(data, "timeout", "timeoutSeconds")
        return Scenario(
            id=scenario_id,
            namespaces=tuple(namespaces),
            pods=tuple(pods),
            policies=tuple(policies),
            probes=tuple(probes),
            description=str(data.get("description") or ""),
            tags=tuple(str(t) for t in tags),
            readiness_timeout=_number(_get(data, "readinessTimeout", "readiness_timeout",
                                           default=self.readiness_timeout), where, source),
            timeout=_number(timeout, where, source) if timeout is not None else None,
        )

    def _namespaces(self, entries: Sequence[Any], where: str, source: Optional[str]) -> List[NamespaceSpec]:
        result: List[NamespaceSpec] = []
        for entry in entries:
            if isinstance(entry, str):
                entry = {"name": entry}
            if not isinstance(entry, dict) or not entry.get("name"):
                raise ScenarioError(f"{where}: namespace entries need a name", source)
            name = str(entry["name"])
            if any(ns.name == name for ns in result):
                raise ScenarioError(f"{where}: namespace '{name}' declared twice", source)
            result.append(NamespaceSpec(name, _labels(entry.get("labels"), f"{where} namespace {name}", source)))
        return result

    def _pods(self, entries: Sequence[Any], declared_ns: Set[str], where: str,
              source: Optional[str]) -> List[PodSpec]:
        result: List[PodSpec] = []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("name") or not entry.get("namespace"):
                raise ScenarioError(f"{where}: pod entries need a name and a namespace", source)
            name, namespace = str(entry["name"]), str(entry["namespace"])
            if namespace not in declared_ns:
                raise ScenarioError(f"{where}: pod '{name}' references undeclared namespace '{namespace}'",
                                    source)
            if any(p.ref == PodRef(namespace, name) for p in result):
                raise ScenarioError(f"{where}: pod '{namespace}/{name}' declared twice", source)
            port = entry.get("port", 80)
            result.append(PodSpec(
                name=name,
                namespace=namespace,
                labels=_labels(entry.get("labels"), f"{where} pod {name}", source),
                image=str(entry.get("image") or ""),
                port=_number(port, f"{where} pod {name} port", source, int) if port is not None else None,
                port_name=_get(entry, "portName", "port_name"),
            ))
        return result

    def _policies(self, entries: Sequence[Any], declared_ns: Set[str], where: str,
                  source: Optional[str], base_dir: Path) -> List[PolicySpec]:
        result: List[PolicySpec] = []
        for entry in entries:
            if not isinstance(entry, dict):
                raise ScenarioError(f"{where}: policy entries must be mappings", source)
            namespace = entry.get("namespace")
            if "manifest" in entry and not namespace:
                namespace = ((entry["manifest"] or {}).get("metadata") or {}).get("namespace")
            if not namespace or str(namespace) not in declared_ns:
                raise ScenarioError(f"{where}: policy references undeclared namespace '{namespace}'", source)
            namespace = str(namespace)

            try:
                if "manifest" in entry:
                    specs = [policy_from_manifest(entry["manifest"] or {}, namespace)]
                elif "recipe" in entry:
                    specs = self._recipe_policies(base_dir / str(entry["recipe"]), entry.get("policy"),
                                                  namespace)
                else:
                    specs = [self._inline_policy(entry, namespace)]
            except ValueError as e:
                raise ScenarioError(f"{where}: {e}", source)

            for spec in specs:
                if any(p.namespace == spec.namespace and p.name == spec.name for p in result):
                    raise ScenarioError(f"{where}: policy '{spec.namespace}/{spec.name}' declared twice", source)
                result.append(spec)
        return result

    def _inline_policy(self, entry: Dict[str, Any], namespace: str) -> PolicySpec:
        if not entry.get("name"):
            raise ValueError("policy has no name")
        types = _get(entry, "policyTypes", "policy_types", default=[]) or []
        for t in types:
            if t not in ("Ingress", "Egress"):
                raise ValueError(f"policy '{entry['name']}': unknown policyType '{t}'")
        return PolicySpec(
            name=str(entry["name"]),
            namespace=namespace,
            pod_selector=_get(entry, "podSelector", "pod_selector", default={}) or {},
            policy_types=tuple(types),
            ingress=entry.get("ingress") if "ingress" in entry else None,
            egress=entry.get("egress") if "egress" in entry else None,
        )

    def _recipe_policies(self, path: Path, wanted: Optional[str], namespace: str) -> List[PolicySpec]:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ValueError(f"cannot read recipe {path}: {e}")
        try:
            manifests = [m for m in extract_recipe_manifests(text) if m.get("kind") == "NetworkPolicy"]
        except YAMLError as e:
            raise ValueError(f"recipe {path} holds invalid YAML: {e}")
        if wanted:
            manifests = [m for m in manifests if (m.get("metadata") or {}).get("name") == wanted]
        if not manifests:
            target = f"policy '{wanted}'" if wanted else "NetworkPolicy"
            raise ValueError(f"recipe {path} contains no {target}")
        return [policy_from_manifest(m, namespace) for m in manifests]

    def _probe(self, entry: Any, index: int, declared_ns: Set[str], declared_pods: Set[PodRef],
               where: str, source: Optional[str]) -> ProbeSpec:
        here = f"{where} probe #{index + 1}"
        if not isinstance(entry, dict) or not entry.get("source") or not entry.get("destination"):
            raise ScenarioError(f"{here}: needs a source and a destination", source)
        try:
            src = PodRef.parse(str(entry["source"]))
        except ValueError as e:
            raise ScenarioError(f"{here}: {e}", source)
        if src not in declared_pods:
            raise ScenarioError(f"{here}: source '{src}' is not a declared pod", source)

        destination = str(entry["destination"])
        destination_ref = None
        if "://" not in destination and destination.split("/", 1)[0] in declared_ns:
            try:
                destination_ref = PodRef.parse(destination)
            except ValueError as e:
                raise ScenarioError(f"{here}: {e}", source)
            if destination_ref not in declared_pods:
                raise ScenarioError(f"{here}: destination '{destination}' is not a declared pod", source)

        return ProbeSpec(
            source=src,
            destination=destination,
            protocol=_enum(Protocol, entry.get("protocol", "http"), here, source),
            port=_number(entry.get("port", 80), here, source, int),
            expected=_enum(Expectation, entry.get("expected", "allow"), here, source),
            timeout_seconds=_number(_get(entry, "timeoutSeconds", "timeout_seconds", "timeout", default=2),
                                    here, source, int),
            phase=_enum(ProbePhase, entry.get("phase", "enforced"), here, source),
            destination_ref=destination_ref,
        )


def load_scenarios(paths: Iterable[Union[str, Path]], readiness_timeout: float = 60.0) -> List[Scenario]:
    return ScenarioLoader(readiness_timeout).load_paths(paths)


def filter_scenarios(scenarios: Sequence[Scenario], patterns: Optional[Iterable[str]]) -> List[Scenario]:
    """Keeps scenarios whose id or any tag matches one of the (comma separated) glob patterns."""
    wanted = [p.strip() for pattern in (patterns or []) for p in pattern.split(",") if p.strip()]
    if not wanted:
        return list(scenarios)
    return [s for s in scenarios
            if any(fnmatch.fnmatchcase(s.id, p) or any(fnmatch.fnmatchcase(t, p) for t in s.tags)
                   for p in wanted)]
