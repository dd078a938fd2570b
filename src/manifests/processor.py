from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import yaml

from src.common.document import Document
from src.common.errors import AggregateError, ReconcileError, is_invalid, is_not_found
from src.common.metadata import (
    KUBERNETES_APP_COMPONENT_KEY,
    KUBERNETES_APP_INSTANCE_KEY,
    KUBERNETES_APP_MANAGED_BY_KEY,
    KUBERNETES_APP_MANAGED_BY_VALUE,
    KUBERNETES_APP_NAME_KEY,
    KUBERNETES_APP_PART_OF_KEY,
    KUBERNETES_APP_PART_OF_VALUE,
    KUBERNETES_APP_VERSION_KEY,
    LAST_APPLIED_CONFIG_ANNOTATION,
    OWNER_KEY,
    OWNER_NAME_KEY,
)
from src.common.resource_key import ResourceKey
from src.common.status import (
    CONDITION_STATUS_FALSE,
    CONDITION_STATUS_TRUE,
    CONDITION_TYPE_INSTALLED,
    CONDITION_TYPE_RECONCILED,
    REASON_RECONCILE_ERROR,
    REASON_RESOURCE_CREATED,
    REASON_UPDATE_SUCCESSFUL,
    ComponentStatus,
    Condition,
)
from src.kube.client import PROPAGATION_BACKGROUND, ObjectStore
from src.manifests.patch import PatchFactory

LOG = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")

# Deleting one of these briefly disables admission for the whole cluster, so
# a rejected update is reported instead of being recreated.
NO_RECREATE_KINDS = frozenset({"MutatingWebhookConfiguration", "ValidatingWebhookConfiguration"})

Manifest = Tuple[str, str]
ObjectHook = Callable[[Document], None]


@dataclass
class ProcessingStats:
    created: int = 0
    patched: int = 0
    recreated: int = 0
    unchanged: int = 0
    failed: int = 0

    @property
    def writes(self) -> int:
        return self.created + self.patched + self.recreated


class ManifestProcessor:
    """Creates or patches every object rendered for a component."""

    def __init__(
        self,
        store: ObjectStore,
        owner_namespace: str,
        app_instance: str,
        app_version: str,
        owner_name: str = "",
        pre_process: Optional[ObjectHook] = None,
        post_create: Optional[ObjectHook] = None,
        no_recreate_kinds: Iterable[str] = NO_RECREATE_KINDS,
    ) -> None:
        self.store = store
        self.owner_namespace = owner_namespace
        self.owner_name = owner_name
        self.app_instance = app_instance
        self.app_version = app_version
        self.pre_process = pre_process
        self.post_create = post_create
        self.no_recreate_kinds = frozenset(no_recreate_kinds)
        self.patches = PatchFactory(store)
        self.stats = ProcessingStats()

    def process_manifests(
        self,
        manifests: Sequence[Manifest],
        component: str,
        status: Optional[ComponentStatus] = None,
    ) -> Optional[Exception]:
        """Apply every object in ``manifests``; failures are collected, not raised."""
        errors: List[Exception] = []
        for name, content in manifests:
            if not name.endswith(MANIFEST_SUFFIXES):
                LOG.debug("skipping rendered manifest %s", name)
                continue
            LOG.info("processing resources from manifest %s", name)
            errors.extend(self._process_manifest(name, content, component, status))
        return AggregateError.from_list(errors)

    def _process_manifest(
        self,
        name: str,
        content: str,
        component: str,
        status: Optional[ComponentStatus],
    ) -> List[Exception]:
        errors: List[Exception] = []
        try:
            documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
        except yaml.YAMLError as exc:
            LOG.error("could not parse manifest %s: %s", name, exc)
            return [ReconcileError(f"could not parse manifest {name}: {exc}")]

        for raw in documents:
            if not isinstance(raw, dict) or not raw.get("kind"):
                LOG.warning("skipping malformed object in manifest %s", name)
                errors.append(ReconcileError(f"malformed object in manifest {name}"))
                continue
            try:
                objects = expand_list(raw)
            except ReconcileError as exc:
                LOG.error("could not expand List in manifest %s: %s", name, exc)
                errors.append(exc)
                break
            for obj in objects:
                err = self.process_object(Document(obj), component, status)
                if err is not None:
                    errors.append(err)
        return errors

    def add_metadata(self, doc: Document, component: str) -> None:
        doc.set_label(KUBERNETES_APP_NAME_KEY, component)
        doc.set_label(KUBERNETES_APP_INSTANCE_KEY, self.app_instance)
        doc.set_label(KUBERNETES_APP_VERSION_KEY, self.app_version)
        doc.set_label(KUBERNETES_APP_COMPONENT_KEY, component)
        doc.set_label(KUBERNETES_APP_PART_OF_KEY, KUBERNETES_APP_PART_OF_VALUE)
        doc.set_label(KUBERNETES_APP_MANAGED_BY_KEY, KUBERNETES_APP_MANAGED_BY_VALUE)
        doc.set_label(OWNER_KEY, self.owner_namespace)
        if self.owner_name:
            doc.set_label(OWNER_NAME_KEY, self.owner_name)

    def process_object(
        self,
        doc: Document,
        component: str,
        status: Optional[ComponentStatus] = None,
    ) -> Optional[Exception]:
        try:
            if not doc.namespace and self.store.is_namespaced(doc.api_version, doc.kind):
                doc.set("metadata.namespace", self.owner_namespace)
            self.add_metadata(doc, component)
            if self.pre_process is not None:
                self.pre_process(doc)
            record_last_applied(doc)
            self._create_or_patch(doc)
        except ReconcileError as exc:
            LOG.error("error processing %s: %s", doc.key, exc)
            self.stats.failed += 1
            self._record(status, doc.key, exc)
            return exc
        self._record(status, doc.key, None)
        return None

    def _create_or_patch(self, doc: Document) -> None:
        try:
            current = self.store.get(doc.api_version, doc.kind, doc.namespace, doc.name)
        except ReconcileError as exc:
            if not is_not_found(exc):
                raise
            self._create(doc)
            return

        patch = self.patches.create_patch(current, doc.obj)
        if patch is None:
            self.stats.unchanged += 1
            return
        LOG.info("patching %s", doc.key)
        try:
            patch.apply()
        except ReconcileError as exc:
            if not is_invalid(exc) or doc.kind in self.no_recreate_kinds:
                raise
            self._recreate(doc, exc)
            return
        self.stats.patched += 1

    def _create(self, doc: Document) -> None:
        LOG.info("creating %s", doc.key)
        doc.resource_version = ""
        created = self.store.create(doc.obj)
        self.stats.created += 1
        if self.post_create is not None:
            self.post_create(Document(created))

    def _recreate(self, doc: Document, cause: Exception) -> None:
        LOG.warning("update of %s was rejected (%s), deleting and recreating it", doc.key, cause)
        try:
            self.store.delete(doc.api_version, doc.kind, doc.namespace, doc.name, propagation=PROPAGATION_BACKGROUND)
        except ReconcileError as exc:
            if not is_not_found(exc):
                raise
        recreated = doc.copy()
        recreated.resource_version = ""
        created = self.store.create(recreated.obj)
        self.stats.recreated += 1
        if self.post_create is not None:
            self.post_create(Document(created))

    def _record(self, status: Optional[ComponentStatus], key: ResourceKey, err: Optional[Exception]) -> None:
        if status is None:
            return
        child = status.find_child(key)
        if child is None:
            child = ComponentStatus(resource=str(key))
            status.children.append(child)
        if err is not None:
            child.set_condition(
                Condition(
                    type=CONDITION_TYPE_RECONCILED,
                    status=CONDITION_STATUS_FALSE,
                    reason=REASON_RECONCILE_ERROR,
                    message=str(err),
                )
            )
            return
        if child.get_condition(CONDITION_TYPE_INSTALLED).status != CONDITION_STATUS_TRUE:
            child.set_condition(
                Condition(type=CONDITION_TYPE_INSTALLED, status=CONDITION_STATUS_TRUE, reason=REASON_RESOURCE_CREATED)
            )
        child.set_condition(
            Condition(type=CONDITION_TYPE_RECONCILED, status=CONDITION_STATUS_TRUE, reason=REASON_UPDATE_SUCCESSFUL)
        )


def expand_list(obj: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten ``List`` kinds recursively into their items."""
    kind = obj.get("kind", "")
    if kind != "List" and not (kind.endswith("List") and "items" in obj):
        return [obj]
    items = obj.get("items")
    if not isinstance(items, list):
        raise ReconcileError(f"{kind} object has no items list")
    expanded: List[Dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("kind"):
            raise ReconcileError(f"{kind} contains a malformed item")
        expanded.extend(expand_list(item))
    return expanded


def record_last_applied(doc: Document) -> None:
    """Store the object being written as its own last-applied configuration."""
    applied = copy.deepcopy(doc.obj)
    applied.pop("status", None)
    metadata = applied.get("metadata") or {}
    metadata.pop("resourceVersion", None)
    annotations = metadata.get("annotations") or {}
    annotations.pop(LAST_APPLIED_CONFIG_ANNOTATION, None)
    if not annotations:
        metadata.pop("annotations", None)
    doc.set_annotation(
        LAST_APPLIED_CONFIG_ANNOTATION,
        json.dumps(applied, sort_keys=True, separators=(",", ":")),
    )


__all__ = [
    "MANIFEST_SUFFIXES",
    "Manifest",
    "ManifestProcessor",
    "NO_RECREATE_KINDS",
    "ObjectHook",
    "ProcessingStats",
    "expand_list",
    "record_last_applied",
]
