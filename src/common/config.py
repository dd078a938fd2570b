"""Immutable operator configuration.

The configuration is built once at start-up (from a YAML file, the
environment, or directly in tests) and handed to every reconciler. Nothing
reads process-wide state after that point.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml


DEFAULT_OPERATOR_NAMESPACE = "istio-operator"

DEFAULT_CNI_NETWORK_NAMES: Mapping[str, str] = MappingProxyType(
    {
        "": "istio-cni",
        "v1.0": "istio-cni",
        "v1.1": "v1-1-istio-cni",
        "v2.0": "v2-0-istio-cni",
    }
)

DEFAULT_EXCLUDED_NAMESPACES: Tuple[str, ...] = (
    r"^kube$",
    r"^kube-.*",
    r"^openshift$",
    r"^openshift-.*",
)


@dataclass(frozen=True)
class BackoffConfig:
    """Bounded exponential backoff: ``steps`` waits of ``duration * factor**i``."""

    steps: int = 15
    duration: float = 0.5
    factor: float = 1.1

    def delays(self) -> Tuple[float, ...]:
        return tuple(self.duration * (self.factor ** i) for i in range(self.steps))


@dataclass(frozen=True)
class CNIConfig:
    enabled: bool = False


@dataclass(frozen=True)
class OperatorConfig:
    operator_namespace: str = DEFAULT_OPERATOR_NAMESPACE
    cni: CNIConfig = field(default_factory=CNIConfig)
    cni_network_names: Mapping[str, str] = field(default_factory=lambda: DEFAULT_CNI_NETWORK_NAMES)
    multitenant_backoff: BackoffConfig = field(default_factory=BackoffConfig)
    conflict_requeue_after: float = 5.0
    excluded_namespaces: Tuple[str, ...] = DEFAULT_EXCLUDED_NAMESPACES

    def cni_network_name(self, version: Optional[str]) -> Optional[str]:
        return self.cni_network_names.get(_normalise_version(version))

    def excluded_namespace_patterns(self) -> Tuple[str, ...]:
        """Namespaces that may never join a mesh, the operator's own included."""
        own = r"^%s$" % self.operator_namespace.replace(".", r"\.")
        return (own,) + tuple(self.excluded_namespaces)

    def with_cni(self, enabled: bool) -> "OperatorConfig":
        return replace(self, cni=replace(self.cni, enabled=enabled))

    @classmethod
    def from_env(cls, base: Optional["OperatorConfig"] = None) -> "OperatorConfig":
        config = base or cls()
        namespace = os.getenv("POD_NAMESPACE") or config.operator_namespace
        cni = config.cni
        enabled = os.getenv("MESH_CNI_ENABLED")
        if enabled is not None:
            cni = replace(cni, enabled=_parse_bool(enabled, "MESH_CNI_ENABLED"))
        return replace(config, operator_namespace=namespace, cni=cni)


def _normalise_version(version: Optional[str]) -> str:
    if not version:
        return ""
    version = version.strip()
    if not version.startswith("v"):
        version = "v" + version
    parts = version.split(".")
    return ".".join(parts[:2])


def _parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in {"1", "true", "yes", "on"}:
        return True
    if isinstance(value, str) and value.lower() in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def _parse_backoff(data: Any) -> BackoffConfig:
    if data is None:
        return BackoffConfig()
    if not isinstance(data, dict):
        raise ValueError("multitenantBackoff must be a mapping")
    backoff = BackoffConfig(
        steps=int(data.get("steps", BackoffConfig.steps)),
        duration=float(data.get("duration", BackoffConfig.duration)),
        factor=float(data.get("factor", BackoffConfig.factor)),
    )
    if backoff.steps < 1:
        raise ValueError("multitenantBackoff.steps must be at least 1")
    if backoff.duration < 0 or backoff.factor < 1:
        raise ValueError("multitenantBackoff requires duration >= 0 and factor >= 1")
    return backoff


def _parse_cni(data: Any) -> CNIConfig:
    if data is None:
        return CNIConfig()
    if not isinstance(data, dict):
        raise ValueError("cni must be a mapping")
    return CNIConfig(enabled=_parse_bool(data.get("enabled", False), "cni.enabled"))


def _parse_string_map(data: Any, name: str) -> Dict[str, str]:
    if not isinstance(data, dict):
        raise ValueError(f"{name} must be a mapping")
    return {_normalise_version(str(k)) if k else "": str(v) for k, v in data.items()}


def config_from_dict(data: Dict[str, Any]) -> OperatorConfig:
    if not isinstance(data, dict):
        raise ValueError("operator configuration must be a mapping")
    names = dict(DEFAULT_CNI_NETWORK_NAMES)
    if "cniNetworkNames" in data:
        names.update(_parse_string_map(data["cniNetworkNames"], "cniNetworkNames"))
    excluded = data.get("excludedNamespaces", list(DEFAULT_EXCLUDED_NAMESPACES))
    if not isinstance(excluded, list):
        raise ValueError("excludedNamespaces must be a list")
    return OperatorConfig(
        operator_namespace=str(data.get("operatorNamespace", DEFAULT_OPERATOR_NAMESPACE)),
        cni=_parse_cni(data.get("cni")),
        cni_network_names=MappingProxyType(names),
        multitenant_backoff=_parse_backoff(data.get("multitenantBackoff")),
        conflict_requeue_after=float(data.get("conflictRequeueAfter", 5.0)),
        excluded_namespaces=tuple(str(item) for item in excluded),
    )


def load_config(path: Path) -> OperatorConfig:
    with Path(path).open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return config_from_dict(data)


__all__ = [
    "BackoffConfig",
    "CNIConfig",
    "DEFAULT_CNI_NETWORK_NAMES",
    "DEFAULT_EXCLUDED_NAMESPACES",
    "DEFAULT_OPERATOR_NAMESPACE",
    "OperatorConfig",
    "config_from_dict",
    "load_config",
]
