"""Deletes owned objects that the current mesh generation no longer renders."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from src.common.document import Document
from src.common.errors import (
    AggregateError,
    ReconcileError,
    is_no_kind_match,
    is_not_found,
)
from src.common.metadata import MESH_GENERATION_KEY, OWNER_KEY
from src.kube.client import PROPAGATION_BACKGROUND, ObjectStore

LOG = logging.getLogger(__name__)

# Passing this as the generation deletes every owned object.
DELETE_ALL = ""

# Workloads and their frontends go first; RBAC, webhooks and cluster-scoped
# bindings that gate them go last.
BUILTIN_KINDS: Tuple[Tuple[str, str], ...] = (
    ("autoscaling/v2beta1", "HorizontalPodAutoscaler"),
    ("policy/v1beta1", "PodDisruptionBudget"),
    ("route.openshift.io/v1", "Route"),
    ("apps/v1", "Deployment"),
    ("apps/v1", "DaemonSet"),
    ("apps/v1", "StatefulSet"),
    ("networking.k8s.io/v1", "Ingress"),
    ("v1", "Service"),
    ("v1", "Endpoints"),
    ("v1", "ConfigMap"),
    ("v1", "PersistentVolumeClaim"),
    ("v1", "Pod"),
    ("v1", "Secret"),
    ("v1", "ServiceAccount"),
    ("networking.k8s.io/v1", "NetworkPolicy"),
    ("rbac.authorization.k8s.io/v1", "RoleBinding"),
    ("rbac.authorization.k8s.io/v1", "Role"),
    ("admissionregistration.k8s.io/v1", "MutatingWebhookConfiguration"),
    ("admissionregistration.k8s.io/v1", "ValidatingWebhookConfiguration"),
    ("rbac.authorization.k8s.io/v1", "ClusterRole"),
    ("rbac.authorization.k8s.io/v1", "ClusterRoleBinding"),
)

# (group, kind) of custom resources, pruned only when the cluster serves them.
MESH_CUSTOM_KINDS: Tuple[Tuple[str, str], ...] = (
    ("kiali.io", "Kiali"),
    ("jaegertracing.io", "Jaeger"),
    ("config.istio.io", "adapter"),
    ("config.istio.io", "attributemanifest"),
    ("config.istio.io", "handler"),
    ("config.istio.io", "instance"),
    ("config.istio.io", "kubernetes"),
    ("config.istio.io", "logentry"),
    ("config.istio.io", "metric"),
    ("config.istio.io", "rule"),
    ("config.istio.io", "template"),
    ("networking.istio.io", "DestinationRule"),
    ("networking.istio.io", "EnvoyFilter"),
    ("networking.istio.io", "Gateway"),
    ("networking.istio.io", "ServiceEntry"),
    ("networking.istio.io", "Sidecar"),
    ("networking.istio.io", "VirtualService"),
    ("networking.istio.io", "WorkloadEntry"),
    ("authentication.istio.io", "Policy"),
    ("authentication.maistra.io", "ServiceMeshPolicy"),
    ("security.istio.io", "AuthorizationPolicy"),
    ("security.istio.io", "PeerAuthentication"),
    ("security.istio.io", "RequestAuthentication"),
    ("certmanager.k8s.io", "ClusterIssuer"),
)


def should_prune(doc: Document, owner_namespace: str, generation: str) -> bool:
    if doc.label(OWNER_KEY) != owner_namespace:
        return False
    if generation == DELETE_ALL:
        return True
    return doc.annotation(MESH_GENERATION_KEY) != generation


class Pruner:
    def __init__(
        self,
        store: ObjectStore,
        owner_namespace: str,
        builtin_kinds: Sequence[Tuple[str, str]] = BUILTIN_KINDS,
        custom_kinds: Sequence[Tuple[str, str]] = MESH_CUSTOM_KINDS,
    ) -> None:
        self.store = store
        self.owner_namespace = owner_namespace
        self.builtin_kinds = tuple(builtin_kinds)
        self.custom_kinds = tuple(custom_kinds)

    def kinds_to_prune(self) -> List[Tuple[str, str]]:
        kinds = list(self.builtin_kinds)
        for group, kind in self.custom_kinds:
            version = self.store.served_version(group, kind)
            if version:
                kinds.append(("%s/%s" % (group, version), kind))
            else:
                LOG.info("%s is not served by this cluster, nothing to prune", kind)
        return kinds

    def prune(self, generation: str) -> Optional[Exception]:
        """Delete stale owned objects of every known kind, in order."""
        errors: List[Exception] = []
        for api_version, kind in self.kinds_to_prune():
            LOG.info("pruning %s resources of mesh %s", kind, self.owner_namespace)
            err = self.prune_individually(api_version, kind, generation)
            if err is not None:
                LOG.error("error pruning %s resources: %s", kind, err)
                errors.append(err)
        return AggregateError.from_list(errors)

    def prune_individually(self, api_version: str, kind: str, generation: str) -> Optional[Exception]:
        try:
            objects = self.store.list(api_version, kind, label_selector={OWNER_KEY: self.owner_namespace})
        except ReconcileError as exc:
            if is_no_kind_match(exc) or is_not_found(exc):
                LOG.info("%s is not served by this cluster, nothing to prune", kind)
                return None
            return ReconcileError(f"error retrieving {kind} resources to prune: {exc}")

        errors: List[Exception] = []
        for obj in objects:
            doc = Document(obj)
            if not should_prune(doc, self.owner_namespace, generation):
                continue
            LOG.info("deleting %s (generation %r)", doc.key, doc.annotation(MESH_GENERATION_KEY))
            try:
                self.store.delete(api_version, kind, doc.namespace, doc.name, propagation=PROPAGATION_BACKGROUND)
            except ReconcileError as exc:
                if is_not_found(exc):
                    continue
                errors.append(ReconcileError(f"error deleting {doc.key}: {exc}"))
        return AggregateError.from_list(errors)


__all__ = [
    "BUILTIN_KINDS",
    "DELETE_ALL",
    "MESH_CUSTOM_KINDS",
    "Pruner",
    "should_prune",
]
