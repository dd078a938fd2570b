"""In-memory object store with API-server-like semantics for tests.

The store bumps ``resourceVersion`` on every write, rejects stale updates
with :class:`ConflictError`, keeps objects with finalizers around (stamped
with a deletion timestamp) until the last finalizer is removed and lets
tests inject failures per verb and kind.
"""

from __future__ import annotations

import copy
import itertools
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

import jsonpatch

from src.common.errors import (
    AlreadyExistsError,
    ConflictError,
    InvalidError,
    NoKindMatchError,
    NotFoundError,
)
from src.common.status import now_timestamp
from src.kube.client import (
    PATCH_TYPE_JSON,
    PROPAGATION_BACKGROUND,
    ObjectStore,
    selector_matches,
)

# (apiVersion, kind, namespaced)
DEFAULT_KINDS: Tuple[Tuple[str, str, bool], ...] = (
    ("v1", "Namespace", False),
    ("v1", "ConfigMap", True),
    ("v1", "Endpoints", True),
    ("v1", "Event", True),
    ("v1", "PersistentVolumeClaim", True),
    ("v1", "Pod", True),
    ("v1", "Secret", True),
    ("v1", "Service", True),
    ("v1", "ServiceAccount", True),
    ("apps/v1", "Deployment", True),
    ("apps/v1", "DaemonSet", True),
    ("apps/v1", "StatefulSet", True),
    ("autoscaling/v2beta1", "HorizontalPodAutoscaler", True),
    ("policy/v1beta1", "PodDisruptionBudget", True),
    ("networking.k8s.io/v1", "Ingress", True),
    ("networking.k8s.io/v1", "NetworkPolicy", True),
    ("rbac.authorization.k8s.io/v1", "Role", True),
    ("rbac.authorization.k8s.io/v1", "RoleBinding", True),
    ("rbac.authorization.k8s.io/v1", "ClusterRole", False),
    ("rbac.authorization.k8s.io/v1", "ClusterRoleBinding", False),
    ("admissionregistration.k8s.io/v1", "MutatingWebhookConfiguration", False),
    ("admissionregistration.k8s.io/v1", "ValidatingWebhookConfiguration", False),
    ("maistra.io/v2", "ServiceMeshControlPlane", True),
    ("maistra.io/v1", "ServiceMeshMemberRoll", True),
    ("k8s.cni.cncf.io/v1", "NetworkAttachmentDefinition", True),
)


def _group(api_version: str) -> str:
    return api_version.split("/", 1)[0] if "/" in api_version else ""


def _version(api_version: str) -> str:
    return api_version.split("/", 1)[-1]


def merge_patch(target: Any, patch: Any) -> Any:
    """Apply an RFC 7386 JSON merge patch."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


@dataclass
class _Failure:
    verb: str
    kind: Optional[str]
    error: Exception
    times: Optional[int]
    name: Optional[str] = None


class FakeObjectStore(ObjectStore):
    def __init__(self, *objects: Dict[str, Any]) -> None:
        self._kinds: Dict[Tuple[str, str], Tuple[str, bool]] = {}
        self._objects: Dict[Tuple[str, str, str, str], Dict[str, Any]] = {}
        self._versions = itertools.count(1)
        self._uids = itertools.count(1)
        self._failures: List[_Failure] = []
        self.actions: List[Tuple[str, str, str, str]] = []
        for api_version, kind, namespaced in DEFAULT_KINDS:
            self.register_kind(api_version, kind, namespaced)
        self.add(*objects)

    # test helpers

    def register_kind(self, api_version: str, kind: str, namespaced: bool = True) -> None:
        self._kinds[(_group(api_version), kind)] = (_version(api_version), namespaced)

    def unregister_kind(self, api_version: str, kind: str) -> None:
        self._kinds.pop((_group(api_version), kind), None)

    def add(self, *objects: Dict[str, Any]) -> None:
        """Seed objects as-is, including their status."""
        for obj in objects:
            obj = copy.deepcopy(obj)
            self._kind_info(obj["apiVersion"], obj["kind"])
            metadata = obj.setdefault("metadata", {})
            metadata.setdefault("uid", "uid-%d" % next(self._uids))
            metadata.setdefault("generation", 1)
            metadata["resourceVersion"] = str(next(self._versions))
            self._objects[self._key_for(obj)] = obj

    def fail_on(
        self,
        verb: str,
        kind: Optional[str],
        error: Exception,
        times: Optional[int] = None,
        name: Optional[str] = None,
    ) -> None:
        """Raise ``error`` for ``verb`` on ``kind`` (any kind if ``None``)."""
        self._failures.append(_Failure(verb=verb, kind=kind, error=error, times=times, name=name))

    def clear_failures(self) -> None:
        self._failures = []

    def clear_actions(self) -> None:
        self.actions = []

    def writes(self) -> List[Tuple[str, str, str, str]]:
        return [action for action in self.actions if action[0] not in {"get", "list"}]

    def objects(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(obj)
            for obj in self._objects.values()
            if kind is None or obj.get("kind") == kind
        ]

    def exists(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> bool:
        return self._storage_key(api_version, kind, namespace, name) in self._objects

    # internals

    def _kind_info(self, api_version: str, kind: str) -> Tuple[str, bool]:
        info = self._kinds.get((_group(api_version), kind))
        if info is None:
            raise NoKindMatchError(f"no matches for kind {kind!r} in version {api_version!r}")
        return info

    def _storage_key(
        self, api_version: str, kind: str, namespace: Optional[str], name: str
    ) -> Tuple[str, str, str, str]:
        _, namespaced = self._kind_info(api_version, kind)
        return (_group(api_version), kind, (namespace or "") if namespaced else "", name)

    def _key_for(self, obj: Mapping[str, Any]) -> Tuple[str, str, str, str]:
        metadata = obj.get("metadata") or {}
        return self._storage_key(obj["apiVersion"], obj["kind"], metadata.get("namespace"), metadata.get("name", ""))

    def _record(self, verb: str, kind: str, namespace: Optional[str], name: str) -> None:
        self.actions.append((verb, kind, namespace or "", name))
        for failure in list(self._failures):
            if failure.verb != verb:
                continue
            if failure.kind is not None and failure.kind != kind:
                continue
            if failure.name is not None and failure.name != name:
                continue
            if failure.times is not None:
                failure.times -= 1
                if failure.times <= 0:
                    self._failures.remove(failure)
            raise failure.error

    def _bump(self, obj: Dict[str, Any]) -> None:
        obj["metadata"]["resourceVersion"] = str(next(self._versions))

    def _check_version(self, stored: Dict[str, Any], obj: Mapping[str, Any]) -> None:
        wanted = (obj.get("metadata") or {}).get("resourceVersion")
        if wanted and wanted != stored["metadata"].get("resourceVersion"):
            raise ConflictError(
                "Operation cannot be fulfilled on %s %r: the object has been modified; "
                "please apply your changes to the latest version and try again"
                % (stored.get("kind"), stored["metadata"].get("name"))
            )

    def _finish_if_finalized(self, key: Tuple[str, str, str, str]) -> None:
        obj = self._objects.get(key)
        if obj is None:
            return
        metadata = obj["metadata"]
        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            self._remove(key)

    def _remove(self, key: Tuple[str, str, str, str]) -> None:
        obj = self._objects.pop(key)
        if obj.get("kind") == "Namespace":
            namespace = obj["metadata"]["name"]
            for child in [k for k in self._objects if k[2] == namespace]:
                self._objects.pop(child, None)

    # ObjectStore

    def get(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> Dict[str, Any]:
        self._record("get", kind, namespace, name)
        key = self._storage_key(api_version, kind, namespace, name)
        obj = self._objects.get(key)
        if obj is None:
            raise NotFoundError(f"{kind} {namespace or ''}/{name} not found")
        return copy.deepcopy(obj)

    def list(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[Mapping[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        self._record("list", kind, namespace, "")
        _, namespaced = self._kind_info(api_version, kind)
        group = _group(api_version)
        items = []
        for (obj_group, obj_kind, obj_namespace, _), obj in sorted(self._objects.items()):
            if obj_group != group or obj_kind != kind:
                continue
            if namespaced and namespace and obj_namespace != namespace:
                continue
            if not selector_matches((obj.get("metadata") or {}).get("labels"), label_selector):
                continue
            items.append(copy.deepcopy(obj))
        return items

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        metadata = obj.get("metadata") or {}
        self._record("create", obj.get("kind", ""), metadata.get("namespace"), metadata.get("name", ""))
        if not metadata.get("name"):
            raise InvalidError(f"{obj.get('kind')}: metadata.name is required")
        key = self._key_for(obj)
        if key in self._objects:
            raise AlreadyExistsError(f"{obj.get('kind')} {metadata.get('name')!r} already exists")
        if metadata.get("resourceVersion"):
            raise InvalidError("resourceVersion should not be set on objects to be created")
        stored = copy.deepcopy(obj)
        stored_meta = stored.setdefault("metadata", {})
        stored_meta["uid"] = "uid-%d" % next(self._uids)
        stored_meta["generation"] = 1
        stored_meta["creationTimestamp"] = now_timestamp()
        self._bump(stored)
        self._objects[key] = stored
        return copy.deepcopy(stored)

    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        metadata = obj.get("metadata") or {}
        self._record("update", obj.get("kind", ""), metadata.get("namespace"), metadata.get("name", ""))
        key = self._key_for(obj)
        stored = self._objects.get(key)
        if stored is None:
            raise NotFoundError(f"{obj.get('kind')} {metadata.get('name')!r} not found")
        self._check_version(stored, obj)
        updated = copy.deepcopy(obj)
        updated.pop("status", None)
        if "status" in stored:
            updated["status"] = copy.deepcopy(stored["status"])
        updated_meta = updated.setdefault("metadata", {})
        for field_name in ("uid", "creationTimestamp", "deletionTimestamp", "generation"):
            if field_name in stored["metadata"]:
                updated_meta[field_name] = stored["metadata"][field_name]
            else:
                updated_meta.pop(field_name, None)
        if _spec_of(updated) != _spec_of(stored):
            updated_meta["generation"] = int(stored["metadata"].get("generation", 1)) + 1
        self._bump(updated)
        self._objects[key] = updated
        self._finish_if_finalized(key)
        return copy.deepcopy(updated)

    def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        metadata = obj.get("metadata") or {}
        self._record("update_status", obj.get("kind", ""), metadata.get("namespace"), metadata.get("name", ""))
        key = self._key_for(obj)
        stored = self._objects.get(key)
        if stored is None:
            raise NotFoundError(f"{obj.get('kind')} {metadata.get('name')!r} not found")
        self._check_version(stored, obj)
        stored["status"] = copy.deepcopy(obj.get("status") or {})
        self._bump(stored)
        return copy.deepcopy(stored)

    def patch(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str],
        name: str,
        patch: Any,
        patch_type: str = "application/merge-patch+json",
    ) -> Dict[str, Any]:
        self._record("patch", kind, namespace, name)
        key = self._storage_key(api_version, kind, namespace, name)
        stored = self._objects.get(key)
        if stored is None:
            raise NotFoundError(f"{kind} {name!r} not found")
        if patch_type == PATCH_TYPE_JSON:
            try:
                patched = jsonpatch.apply_patch(stored, patch, in_place=False)
            except jsonpatch.JsonPatchException as exc:
                raise InvalidError(str(exc)) from exc
        else:
            patched = merge_patch(stored, patch)
        self._check_version(stored, patched)
        patched["metadata"]["resourceVersion"] = stored["metadata"]["resourceVersion"]
        if _spec_of(patched) != _spec_of(stored):
            patched["metadata"]["generation"] = int(stored["metadata"].get("generation", 1)) + 1
        self._bump(patched)
        self._objects[key] = patched
        self._finish_if_finalized(key)
        return copy.deepcopy(patched)

    def delete(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str],
        name: str,
        propagation: str = PROPAGATION_BACKGROUND,
    ) -> None:
        self._record("delete", kind, namespace, name)
        key = self._storage_key(api_version, kind, namespace, name)
        stored = self._objects.get(key)
        if stored is None:
            raise NotFoundError(f"{kind} {name!r} not found")
        if stored["metadata"].get("finalizers"):
            if not stored["metadata"].get("deletionTimestamp"):
                stored["metadata"]["deletionTimestamp"] = now_timestamp()
                if kind == "Namespace":
                    stored.setdefault("status", {})["phase"] = "Terminating"
                self._bump(stored)
            return
        self._remove(key)

    def served_version(self, group: str, kind: str) -> Optional[str]:
        info = self._kinds.get((group, kind))
        return info[0] if info else None

    def is_namespaced(self, api_version: str, kind: str) -> bool:
        return self._kind_info(api_version, kind)[1]


def _spec_of(obj: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in obj.items() if key not in {"metadata", "status"}}


__all__ = ["DEFAULT_KINDS", "FakeObjectStore", "merge_patch"]
