"""Dynamic document wrapper for arbitrary cluster objects.

Objects of any kind are handled as plain ``dict`` trees. :class:`Document`
wraps such a tree and offers typed accessors addressed by dotted paths
(``"status.readyReplicas"``) or by tuples when a key itself contains dots
(``("metadata", "labels", "maistra.io/owner")``). Typed getters return
``None`` when the value is absent or of the wrong type instead of raising.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from src.common.resource_key import ResourceKey

Path = Union[str, Sequence[str]]

_MISSING = object()


def _split(path: Path) -> Tuple[str, ...]:
    if isinstance(path, str):
        return tuple(part for part in path.split(".") if part)
    return tuple(path)


class Document:
    __slots__ = ("obj",)

    def __init__(self, obj: Optional[Dict[str, Any]] = None) -> None:
        self.obj: Dict[str, Any] = obj if obj is not None else {}

    @classmethod
    def new(
        cls,
        api_version: str,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
    ) -> "Document":
        metadata: Dict[str, Any] = {"name": name}
        if namespace:
            metadata["namespace"] = namespace
        return cls({"apiVersion": api_version, "kind": kind, "metadata": metadata})

    def copy(self) -> "Document":
        return Document(copy.deepcopy(self.obj))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Document):
            return self.obj == other.obj
        return NotImplemented

    def __repr__(self) -> str:
        return f"Document({self.key})"

    # generic access

    def get(self, path: Path, default: Any = None) -> Any:
        node: Any = self.obj
        for part in _split(path):
            if not isinstance(node, Mapping):
                return default
            node = node.get(part, _MISSING)
            if node is _MISSING:
                return default
        return node

    def has(self, path: Path) -> bool:
        return self.get(path, _MISSING) is not _MISSING

    def set(self, path: Path, value: Any) -> None:
        parts = _split(path)
        if not parts:
            raise ValueError("cannot set an empty path")
        node = self.obj
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def remove(self, path: Path) -> bool:
        parts = _split(path)
        node: Any = self.obj
        for part in parts[:-1]:
            node = node.get(part) if isinstance(node, dict) else None
            if node is None:
                return False
        if isinstance(node, dict) and parts[-1] in node:
            del node[parts[-1]]
            return True
        return False

    def _typed(self, path: Path, kind: Union[type, Tuple[type, ...]]) -> Any:
        value = self.get(path)
        if isinstance(value, bool) and kind is int:
            return None
        if isinstance(value, kind):
            return value
        return None

    def get_str(self, path: Path) -> Optional[str]:
        return self._typed(path, str)

    def get_int(self, path: Path) -> Optional[int]:
        return self._typed(path, int)

    def get_map(self, path: Path) -> Optional[Dict[str, Any]]:
        return self._typed(path, dict)

    def get_list(self, path: Path) -> Optional[List[Any]]:
        return self._typed(path, list)

    # identity and metadata

    @property
    def api_version(self) -> str:
        return self.get_str("apiVersion") or ""

    @property
    def kind(self) -> str:
        return self.get_str("kind") or ""

    @property
    def name(self) -> str:
        return self.get_str("metadata.name") or ""

    @property
    def namespace(self) -> str:
        return self.get_str("metadata.namespace") or ""

    @property
    def key(self) -> ResourceKey:
        return ResourceKey.from_object(self.obj)

    @property
    def generation(self) -> int:
        return self.get_int("metadata.generation") or 0

    @property
    def resource_version(self) -> str:
        return self.get_str("metadata.resourceVersion") or ""

    @resource_version.setter
    def resource_version(self, value: str) -> None:
        if value:
            self.set("metadata.resourceVersion", value)
        else:
            self.remove("metadata.resourceVersion")

    @property
    def deletion_timestamp(self) -> Optional[str]:
        return self.get_str("metadata.deletionTimestamp")

    @property
    def labels(self) -> Dict[str, str]:
        return dict(self.get_map("metadata.labels") or {})

    @property
    def annotations(self) -> Dict[str, str]:
        return dict(self.get_map("metadata.annotations") or {})

    @property
    def finalizers(self) -> List[str]:
        return list(self.get_list("metadata.finalizers") or [])

    @finalizers.setter
    def finalizers(self, values: Sequence[str]) -> None:
        if values:
            self.set("metadata.finalizers", list(values))
        else:
            self.remove("metadata.finalizers")

    @property
    def owner_references(self) -> List[Dict[str, Any]]:
        return list(self.get_list("metadata.ownerReferences") or [])

    def label(self, key: str) -> Optional[str]:
        return self.get_str(("metadata", "labels", key))

    def annotation(self, key: str) -> Optional[str]:
        return self.get_str(("metadata", "annotations", key))

    def set_label(self, key: str, value: str) -> None:
        self.set(("metadata", "labels", key), value)

    def set_annotation(self, key: str, value: str) -> None:
        self.set(("metadata", "annotations", key), value)

    def remove_label(self, key: str) -> bool:
        return self.remove(("metadata", "labels", key))

    def remove_annotation(self, key: str) -> bool:
        return self.remove(("metadata", "annotations", key))

    def is_controlled_by(self, owner: "Document") -> bool:
        uid = owner.get_str("metadata.uid")
        for ref in self.owner_references:
            if ref.get("controller") and uid and ref.get("uid") == uid:
                return True
        return False


__all__ = ["Document", "Path"]
