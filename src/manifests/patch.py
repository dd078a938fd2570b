"""Three-way patch computation between live and desired objects.

The original configuration is read from the last-applied annotation written
when the object was created or last patched. Fields present in the original
but absent from the desired object are removed from the live object, while
fields the server or other controllers added (never in the original) are
left alone.

Built-in kinds are merged strategically: lists such as ``containers`` or
``env`` are merged element-wise by their merge key. Any other kind is merged
as a JSON merge patch, where lists are replaced atomically and the object's
identity must not change.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import jsonpatch

from src.common.document import Document
from src.common.errors import PreconditionError
from src.common.metadata import LAST_APPLIED_CONFIG_ANNOTATION
from src.kube.client import ObjectStore

LOG = logging.getLogger(__name__)

STRATEGIC_MERGE_GROUPS = frozenset(
    {
        "",
        "apps",
        "autoscaling",
        "batch",
        "extensions",
        "policy",
        "networking.k8s.io",
        "rbac.authorization.k8s.io",
        "admissionregistration.k8s.io",
        "apiextensions.k8s.io",
    }
)

_MERGE_KEYS = {
    "containers": "name",
    "initContainers": "name",
    "ephemeralContainers": "name",
    "env": "name",
    "volumes": "name",
    "imagePullSecrets": "name",
    "volumeMounts": "mountPath",
    "volumeDevices": "devicePath",
    "conditions": "type",
    "hostAliases": "ip",
}

_CONTAINER_FIELDS = ("containers", "initContainers", "ephemeralContainers")


def merge_key_for(path: Sequence[str]) -> Optional[str]:
    """Return the strategic merge key for the list found at ``path``."""
    if not path:
        return None
    name = path[-1]
    if name == "ports":
        if any(part in _CONTAINER_FIELDS for part in path[:-1]):
            return "containerPort"
        return "port"
    return _MERGE_KEYS.get(name)


def is_strategic(api_version: str) -> bool:
    group = api_version.split("/", 1)[0] if "/" in api_version else ""
    return group in STRATEGIC_MERGE_GROUPS


def three_way_merge(
    original: Any,
    current: Any,
    desired: Any,
    strategic: bool = True,
    path: Tuple[str, ...] = (),
) -> Any:
    """Merge ``desired`` into ``current``, deleting what ``original`` dropped."""
    if not isinstance(desired, dict) or not isinstance(current, dict):
        return copy.deepcopy(desired)
    original = original if isinstance(original, dict) else {}
    result = copy.deepcopy(current)

    for key in original:
        if key not in desired:
            result.pop(key, None)

    for key, wanted in desired.items():
        if wanted is None:
            result.pop(key, None)
            continue
        live = current.get(key)
        child_path = path + (key,)
        if isinstance(wanted, dict) and isinstance(live, dict):
            result[key] = three_way_merge(original.get(key), live, wanted, strategic, child_path)
        elif strategic and isinstance(wanted, list) and isinstance(live, list):
            result[key] = _merge_list(original.get(key), live, wanted, child_path)
        else:
            result[key] = copy.deepcopy(wanted)
    return result


def _keyed(items: Any, key: str) -> Optional[Dict[Any, Any]]:
    if not isinstance(items, list):
        return {}
    keyed: Dict[Any, Any] = {}
    for item in items:
        if not isinstance(item, dict) or key not in item:
            return None
        keyed[item[key]] = item
    return keyed


def _merge_list(original: Any, current: List[Any], desired: List[Any], path: Tuple[str, ...]) -> List[Any]:
    key = merge_key_for(path)
    if key is None:
        return copy.deepcopy(desired)
    wanted = _keyed(desired, key)
    live = _keyed(current, key)
    before = _keyed(original, key)
    if wanted is None or live is None or before is None:
        # elements without a merge key cannot be matched up
        return copy.deepcopy(desired)

    merged: List[Any] = []
    for name, item in wanted.items():
        if name in live:
            merged.append(three_way_merge(before.get(name), live[name], item, True, path))
        else:
            merged.append(copy.deepcopy(item))
    for name, item in live.items():
        if name not in wanted and name not in before:
            merged.append(copy.deepcopy(item))
    return merged


def _check_preconditions(current: Document, desired: Document, namespaced: bool) -> None:
    checks = [
        ("apiVersion", current.api_version, desired.api_version),
        ("kind", current.kind, desired.kind),
        ("metadata.name", current.name, desired.name),
    ]
    if namespaced:
        checks.append(("metadata.namespace", current.namespace, desired.namespace))
    for field_name, live, wanted in checks:
        if live != wanted:
            raise PreconditionError(
                "precondition failed for %s: %s may not be changed from %r to %r"
                % (current.key, field_name, live, wanted)
            )


def original_configuration(current: Document) -> Dict[str, Any]:
    raw = current.annotation(LAST_APPLIED_CONFIG_ANNOTATION)
    if not raw:
        return {}
    try:
        original = json.loads(raw)
    except ValueError:
        LOG.warning("ignoring unparsable last-applied configuration on %s", current.key)
        return {}
    return original if isinstance(original, dict) else {}


@dataclass
class Patch:
    """A pending conditional update of a live object."""

    store: ObjectStore
    current: Dict[str, Any]
    merged: Dict[str, Any]
    operations: List[Dict[str, Any]] = field(default_factory=list)

    def apply(self) -> Dict[str, Any]:
        return self.store.update(copy.deepcopy(self.merged))


class PatchFactory:
    def __init__(self, store: ObjectStore) -> None:
        self.store = store

    def create_patch(self, current: Dict[str, Any], desired: Dict[str, Any]) -> Optional[Patch]:
        """Return the patch moving ``current`` toward ``desired`` or ``None``."""
        live = Document(current)
        wanted = Document(copy.deepcopy(desired))
        wanted.resource_version = live.resource_version
        original = original_configuration(live)

        if is_strategic(wanted.api_version):
            merged = three_way_merge(original, live.obj, wanted.obj, strategic=True)
        else:
            _check_preconditions(live, wanted, self.store.is_namespaced(live.api_version, live.kind))
            merged = three_way_merge(original, live.obj, wanted.obj, strategic=False)

        operations = jsonpatch.make_patch(live.obj, merged).patch
        if not operations:
            LOG.debug("%s is unchanged", live.key)
            return None
        return Patch(store=self.store, current=live.obj, merged=merged, operations=operations)


__all__ = [
    "Patch",
    "PatchFactory",
    "STRATEGIC_MERGE_GROUPS",
    "is_strategic",
    "merge_key_for",
    "original_configuration",
    "three_way_merge",
]
