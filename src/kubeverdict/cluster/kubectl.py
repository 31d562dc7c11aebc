#!/usr/bin/env python3
"""
KUBEVERDICT KUBECTL GATEWAY
---------------------------
ClusterGateway backed by the kubectl binary. Commands are argv lists (no
shell), manifests are fed on stdin from the ManifestEncoder, and output is
read as JSON. Context and kubeconfig come from RunnerConfig so no ambient
current-namespace is ever used: every namespaced call passes -n explicitly.

Author: KubeVerdict Team
Date: 2026-10-17
"""

import json
import logging
import re
import subprocess
from typing import Any, Callable, Dict, List, Optional, Sequence

from kubeverdict.cluster.gateway import ClusterGateway
from kubeverdict.cluster.manifests import ManifestEncoder
from kubeverdict.core.config import RunnerConfig
from kubeverdict.core.errors import ClusterError, ErrorKind
from kubeverdict.core.models import (ExecResult, NamespaceSpec, PodRef, PodSpec,
                                     PodStatus, PolicySpec)

logger = logging.getLogger("kubeverdict.gateway")

# kubectl's own failures, as opposed to the exit status of an exec'd command
_KUBECTL_ERROR = re.compile(r"^(Error from server|error:|Unable to connect|The connection to the server)",
                            re.MULTILINE)

_ERROR_PATTERNS = [
    (ErrorKind.NOT_FOUND, re.compile(r"NotFound|not found", re.IGNORECASE)),
    (ErrorKind.CONFLICT, re.compile(r"AlreadyExists|already exists|Conflict", re.IGNORECASE)),
    (ErrorKind.PERMISSION_DENIED, re.compile(r"Forbidden|Unauthorized|permission denied", re.IGNORECASE)),
    (ErrorKind.TIMEOUT, re.compile(r"timed out|Timeout|deadline exceeded", re.IGNORECASE)),
]


def classify_stderr(stderr: str) -> ErrorKind:
    for kind, pattern in _ERROR_PATTERNS:
        if pattern.search(stderr or ""):
            return kind
    return ErrorKind.UNKNOWN


class KubectlGateway(ClusterGateway):

    def __init__(self, config: RunnerConfig,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.config = config
        self.encoder = ManifestEncoder()
        self._run_process = runner

    def _base(self) -> List[str]:
        argv = [self.config.kubectl]
        if self.config.kubeconfig:
            argv += ["--kubeconfig", self.config.kubeconfig]
        if self.config.context:
            argv += ["--context", self.config.context]
        return argv

    def _run(self, args: Sequence[str], operation: str, timeout: Optional[float] = None,
             stdin: Optional[str] = None, check: bool = True) -> subprocess.CompletedProcess:
        argv = self._base() + list(args)
        timeout = timeout or self.config.request_timeout
        logger.debug(f"{operation}: {' '.join(argv)}")
        try:
            result = self._run_process(argv, input=stdin, capture_output=True,
                                       text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise ClusterError(ErrorKind.TIMEOUT, f"kubectl did not return within {timeout:g}s", operation)
        except FileNotFoundError:
            raise ClusterError(ErrorKind.UNKNOWN, f"'{self.config.kubectl}' executable not found", operation)
        except OSError as e:
            raise ClusterError(ErrorKind.UNKNOWN, str(e), operation)

        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise ClusterError(classify_stderr(stderr), stderr or f"exit code {result.returncode}", operation)
        return result

    def _get_json(self, args: Sequence[str], operation: str, timeout: Optional[float]) -> Dict[str, Any]:
        result = self._run(list(args) + ["-o", "json"], operation, timeout)
        try:
            return json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise ClusterError(ErrorKind.UNKNOWN, f"unparseable kubectl output: {e}", operation)

    # --- creation -------------------------------------------------------

    def create_namespace(self, spec: NamespaceSpec, timeout: Optional[float] = None) -> str:
        manifest = self.encoder.dump(self.encoder.namespace(spec))
        self._run(["create", "-f", "-"], "create_namespace", timeout, stdin=manifest)
        return spec.name

    def create_pod(self, spec: PodSpec, timeout: Optional[float] = None) -> PodRef:
        manifest = self.encoder.dump(self.encoder.pod(spec))
        self._run(["create", "-n", spec.namespace, "-f", "-"], "create_pod", timeout, stdin=manifest)
        return spec.ref

    def apply_policy(self, spec: PolicySpec, timeout: Optional[float] = None) -> str:
        manifest = self.encoder.dump(self.encoder.policy(spec))
        self._run(["apply", "-n", spec.namespace, "-f", "-"], "apply_policy", timeout, stdin=manifest)
        return spec.name

    # --- reads ----------------------------------------------------------

    def get_pod_status(self, ref: PodRef, timeout: Optional[float] = None) -> PodStatus:
        data = self._get_json(["get", "pod", ref.name, "-n", ref.namespace], "get_pod_status", timeout)
        return pod_status_from_json(data)

    def list_namespaces(self, label_selector: Optional[str] = None,
                        timeout: Optional[float] = None) -> List[str]:
        args = ["get", "namespaces"]
        if label_selector:
            args += ["-l", label_selector]
        data = self._get_json(args, "list_namespaces", timeout)
        return [item["metadata"]["name"] for item in data.get("items", [])]

    def list_pods(self, namespace: str, label_selector: Optional[str] = None,
                  timeout: Optional[float] = None) -> List[PodStatus]:
        args = ["get", "pods", "-n", namespace]
        if label_selector:
            args += ["-l", label_selector]
        data = self._get_json(args, "list_pods", timeout)
        return [pod_status_from_json(item) for item in data.get("items", [])]

    def get_policies(self, namespace: str, timeout: Optional[float] = None) -> List[str]:
        data = self._get_json(["get", "networkpolicies", "-n", namespace], "get_policies", timeout)
        return [item["metadata"]["name"] for item in data.get("items", [])]

    def list_events(self, namespace: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        data = self._get_json(["get", "events", "-n", namespace, "--sort-by=.lastTimestamp"],
                              "list_events", timeout)
        events = []
        for item in data.get("items", []):
            involved = item.get("involvedObject", {})
            events.append({
                "type": item.get("type", ""),
                "reason": item.get("reason", ""),
                "object": f"{involved.get('kind', '')}/{involved.get('name', '')}",
                "message": item.get("message", ""),
            })
        return events

    def cluster_info(self, timeout: Optional[float] = None) -> str:
        return self._run(["cluster-info"], "cluster_info", timeout).stdout

    # --- exec / delete --------------------------------------------------

    def exec_in_pod(self, ref: PodRef, command: Sequence[str], timeout: float) -> ExecResult:
        argv = ["exec", ref.name, "-n", ref.namespace, "--"] + list(command)
        result = self._run(argv, "exec_in_pod", timeout, check=False)
        stderr = result.stderr or ""
        if result.returncode != 0 and _KUBECTL_ERROR.search(stderr):
            raise ClusterError(classify_stderr(stderr), stderr.strip(), "exec_in_pod")
        return ExecResult(stdout=result.stdout or "", stderr=stderr, exit_code=result.returncode)

    def delete_namespace(self, name: str, wait: bool = False,
                         timeout: Optional[float] = None) -> None:
        args = ["delete", "namespace", name, f"--wait={'true' if wait else 'false'}"]
        if wait:
            timeout = timeout or self.config.request_timeout
            args.append(f"--timeout={int(timeout)}s")
            # Leave kubectl room to report its own timeout before we kill it
            timeout += 5
        self._run(args, "delete_namespace", timeout)


def pod_status_from_json(data: Dict[str, Any]) -> PodStatus:
    metadata = data.get("metadata", {})
    status = data.get("status", {})
    ready = any(c.get("type") == "Ready" and c.get("status") == "True"
                for c in status.get("conditions", []) or [])
    reason = None
    for container in status.get("containerStatuses", []) or []:
        waiting = (container.get("state") or {}).get("waiting")
        if waiting and waiting.get("reason"):
            reason = waiting["reason"]
            break
    return PodStatus(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", ""),
        phase=status.get("phase", "Unknown"),
        ready=ready,
        pod_ip=status.get("podIP") or None,
        reason=reason,
    )
