"""Object-store interface consumed by the reconcilers.

Objects are plain ``dict`` trees as returned by the API server. Failures are
reported with the exceptions in :mod:`src.common.errors` so callers never see
client-library specific error types.
"""

from __future__ import annotations

import abc
from typing import Any, Dict, List, Mapping, Optional

PATCH_TYPE_MERGE = "application/merge-patch+json"
PATCH_TYPE_JSON = "application/json-patch+json"

PROPAGATION_BACKGROUND = "Background"
PROPAGATION_FOREGROUND = "Foreground"
PROPAGATION_ORPHAN = "Orphan"


class ObjectStore(abc.ABC):
    @abc.abstractmethod
    def get(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> Dict[str, Any]:
        """Return the object or raise ``NotFoundError``."""

    @abc.abstractmethod
    def list(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[Mapping[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """List objects, optionally limited to a namespace and matching labels."""

    @abc.abstractmethod
    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the object; a stale ``resourceVersion`` raises ``ConflictError``."""

    @abc.abstractmethod
    def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Write only the status subresource of ``obj``."""

    @abc.abstractmethod
    def patch(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str],
        name: str,
        patch: Any,
        patch_type: str = PATCH_TYPE_MERGE,
    ) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    def delete(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str],
        name: str,
        propagation: str = PROPAGATION_BACKGROUND,
    ) -> None:
        ...

    @abc.abstractmethod
    def served_version(self, group: str, kind: str) -> Optional[str]:
        """Return the first served version of ``group``/``kind`` or ``None``."""

    @abc.abstractmethod
    def is_namespaced(self, api_version: str, kind: str) -> bool:
        ...


def selector_matches(labels: Optional[Mapping[str, str]], selector: Optional[Mapping[str, str]]) -> bool:
    if not selector:
        return True
    labels = labels or {}
    return all(labels.get(key) == value for key, value in selector.items())


def format_selector(selector: Optional[Mapping[str, str]]) -> Optional[str]:
    if not selector:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))


__all__ = [
    "ObjectStore",
    "PATCH_TYPE_JSON",
    "PATCH_TYPE_MERGE",
    "PROPAGATION_BACKGROUND",
    "PROPAGATION_FOREGROUND",
    "PROPAGATION_ORPHAN",
    "format_selector",
    "selector_matches",
]
