from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping


@dataclass(frozen=True)
class ResourceKey:
    """Identity of a cluster object, rendered as ``ns/name=apiVersion,Kind=kind``."""

    namespace: str
    name: str
    api_version: str
    kind: str

    def __str__(self) -> str:
        return "%s/%s=%s,Kind=%s" % (self.namespace, self.name, self.api_version, self.kind)

    @classmethod
    def parse(cls, value: str) -> "ResourceKey":
        # apiVersion may contain "/" and names may not contain "=", so split on
        # "=" first and on the first "/" of the left-hand side.
        ref, _, type_part = value.partition("=")
        namespace, _, name = ref.partition("/")
        api_version, sep, kind = type_part.partition(",Kind=")
        if not sep:
            raise ValueError(f"malformed resource key: {value!r}")
        return cls(namespace=namespace, name=name, api_version=api_version, kind=kind)

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> "ResourceKey":
        metadata = obj.get("metadata") or {}
        return cls(
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name") or "",
            api_version=obj.get("apiVersion") or "",
            kind=obj.get("kind") or "",
        )

    @property
    def group(self) -> str:
        if "/" not in self.api_version:
            return ""
        return self.api_version.split("/", 1)[0]

    def to_reference(self) -> Dict[str, Any]:
        """Return a minimal object carrying only identity fields."""
        metadata: Dict[str, Any] = {"name": self.name}
        if self.namespace:
            metadata["namespace"] = self.namespace
        return {"apiVersion": self.api_version, "kind": self.kind, "metadata": metadata}


__all__ = ["ResourceKey"]
