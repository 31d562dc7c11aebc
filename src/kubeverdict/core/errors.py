#!/usr/bin/env python3
"""
KUBEVERDICT ERRORS
------------------
Exception taxonomy. Probe outcomes are never exceptions: a failed probe is
data (ProbeResult.observed == error), not an exceptional condition.

Author: KubeVerdict Team
Date: 2026-10-17
"""

from enum import Enum
from typing import Any, Iterable, List, Optional


class KubeVerdictError(Exception):
    """Base class for every error raised by kubeverdict."""


class ErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    TIMEOUT = "Timeout"
    PERMISSION_DENIED = "PermissionDenied"
    CONFLICT = "Conflict"
    UNKNOWN = "Unknown"


class ClusterError(KubeVerdictError):
    """Raised by a ClusterGateway. Gateways never retry."""

    def __init__(self, kind: ErrorKind, message: str, operation: str = ""):
        self.kind = kind
        self.message = message
        self.operation = operation
        prefix = f"{operation}: " if operation else ""
        super().__init__(f"{prefix}{kind.value}: {message}")


class BuildError(KubeVerdictError):
    """
    Topology creation failed part way. `handle` holds everything that was
    created before the failure so the caller can still tear it down.
    """

    def __init__(self, cause: ClusterError, handle: Any):
        self.cause = cause
        self.handle = handle
        super().__init__(f"topology build failed: {cause}")


class ReadinessTimeout(KubeVerdictError, TimeoutError):
    """Pods did not become ready in time. Carries the refs still not ready."""

    def __init__(self, not_ready: Iterable[Any], timeout: float):
        self.not_ready: List[Any] = sorted(not_ready, key=str)
        self.timeout = timeout
        refs = ", ".join(str(r) for r in self.not_ready)
        super().__init__(f"readiness timeout: {refs} (after {timeout:g}s)")


class ImagePullFailure(KubeVerdictError):
    """A pod image could not be pulled; a precondition failure, not a policy one."""

    def __init__(self, refs: Iterable[Any], reason: str = "ErrImagePull"):
        self.refs: List[Any] = sorted(refs, key=str)
        self.reason = reason
        super().__init__(f"image pull failure ({reason}): {', '.join(str(r) for r in self.refs)}")


class ScenarioCancelled(KubeVerdictError):
    """The scenario deadline passed or the batch was cancelled."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"cancelled: {reason}")


class ScenarioError(KubeVerdictError):
    """A scenario description is malformed or references undeclared objects."""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        where = f"{source}: " if source else ""
        super().__init__(f"{where}{message}")


class ConfigError(KubeVerdictError):
    """Invalid runner configuration."""
