#!/usr/bin/env python3
"""
KUBEVERDICT CONFIGURATION
-------------------------
Runner settings, layered as: defaults <- YAML config file <- environment
variables (KUBEVERDICT_*) <- explicit overrides (CLI flags).

The resulting RunnerConfig is passed explicitly to the gateway and the
runner. Nothing reads ambient kubectl state (current context / namespace)
unless the user leaves `context` unset.

Author: KubeVerdict Team
Date: 2026-10-17
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from ruamel.yaml import YAML, YAMLError

from kubeverdict.core.errors import ConfigError

logger = logging.getLogger("kubeverdict.config")

ENV_PREFIX = "KUBEVERDICT_"
BACKENDS = ("kubectl", "simulated")


@dataclass(frozen=True)
class RunnerConfig:
    backend: str = "kubectl"
    kubectl: str = "kubectl"
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    namespace_prefix: str = "np-test"
    default_image: str = "nginx:alpine"
    workers: int = 4
    scenario_timeout: float = 60.0
    readiness_timeout: float = 60.0
    poll_interval: float = 2.0
    propagation_delay: float = 5.0
    probe_grace: float = 3.0
    request_timeout: float = 30.0
    results_dir: str = "results"

    def validate(self) -> "RunnerConfig":
        if self.backend not in BACKENDS:
            raise ConfigError(f"backend must be one of {', '.join(BACKENDS)}, got '{self.backend}'")
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got {self.workers}")
        for name in ("scenario_timeout", "readiness_timeout", "request_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        for name in ("poll_interval", "propagation_delay", "probe_grace"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")
        if not self.namespace_prefix or len(self.namespace_prefix) > 20:
            raise ConfigError("namespace_prefix must be 1-20 characters")
        return self

    def with_overrides(self, overrides: Mapping[str, Any]) -> "RunnerConfig":
        """Returns a copy with every non-None override applied and coerced."""
        return replace(self, **_coerce(overrides, source="overrides")).validate()


_FIELD_TYPES = {f.name: f.type for f in fields(RunnerConfig)}


def _coerce(values: Mapping[str, Any], source: str) -> Dict[str, Any]:
    coerced: Dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue
        if key not in _FIELD_TYPES:
            raise ConfigError(f"{source}: unknown setting '{key}'")
        target = _FIELD_TYPES[key]
        try:
            if target in (int, "int"):
                coerced[key] = int(value)
            elif target in (float, "float"):
                coerced[key] = float(value)
            else:
                coerced[key] = str(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{source}: '{key}' has invalid value {value!r}")
    return coerced


def _from_file(path: Path) -> Dict[str, Any]:
    yaml = YAML(typ="safe")
    try:
        data = yaml.load(path.read_text(encoding="utf-8"))
    except (OSError, YAMLError) as e:
        raise ConfigError(f"Unable to read config file {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    # Accept both snake_case and the dashed CLI spelling
    return {str(k).replace("-", "_"): v for k, v in data.items()}


def _from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    found = {}
    for name in _FIELD_TYPES:
        value = environ.get(ENV_PREFIX + name.upper())
        if value is not None and value != "":
            found[name] = value
    return found


def load_config(path: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None,
                overrides: Optional[Mapping[str, Any]] = None) -> RunnerConfig:
    """Builds the effective RunnerConfig from every layer."""
    environ = os.environ if environ is None else environ
    merged: Dict[str, Any] = {}

    if path:
        file_path = Path(path)
        if not file_path.exists():
            raise ConfigError(f"Config file not found: {file_path}")
        merged.update(_coerce(_from_file(file_path), source=str(file_path)))
        logger.debug(f"Loaded config file {file_path}")

    merged.update(_coerce(_from_env(environ), source="environment"))
    if overrides:
        merged.update(_coerce(overrides, source="overrides"))

    return RunnerConfig(**merged).validate()
