from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional

from src.common.config import OperatorConfig
from src.common.document import Document
from src.common.errors import (
    AggregateError,
    MembershipConflictError,
    NamespaceTerminatingError,
    ReconcileError,
    is_not_found,
)
from src.common.metadata import MEMBER_OF_KEY, OWNER_KEY
from src.kube.client import PROPAGATION_FOREGROUND, PROPAGATION_ORPHAN, ObjectStore
from src.memberroll.networking import NetworkingStrategy, NoOpStrategy

LOG = logging.getLogger(__name__)

ROLE_BINDING_API_VERSION = "rbac.authorization.k8s.io/v1"
NAD_API_VERSION = "k8s.cni.cncf.io/v1"
NAD_KIND = "NetworkAttachmentDefinition"


def _raise_all(errors: List[Exception]) -> None:
    error = AggregateError.from_list(errors)
    if error is not None:
        raise error


class NamespaceReconciler:
    """Configures a single namespace for membership in one mesh.

    Everything created in a member namespace carries the ``member-of`` label
    so that removal only ever touches objects this mesh put there.
    """

    def __init__(
        self,
        store: ObjectStore,
        config: OperatorConfig,
        mesh_namespace: str,
        mesh_version: Optional[str],
        is_cni_enabled: bool,
        strategy: Optional[NetworkingStrategy] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.mesh_namespace = mesh_namespace
        self.mesh_version = mesh_version
        self.is_cni_enabled = is_cni_enabled
        self.strategy = strategy or NoOpStrategy()
        try:
            self.mesh_role_bindings = [
                Document(obj)
                for obj in store.list(
                    ROLE_BINDING_API_VERSION,
                    "RoleBinding",
                    namespace=mesh_namespace,
                    label_selector={OWNER_KEY: mesh_namespace},
                )
            ]
        except ReconcileError as exc:
            raise ReconcileError("error retrieving RoleBinding resources for mesh") from exc

    @property
    def required_role_bindings(self) -> List[str]:
        return sorted(doc.name for doc in self.mesh_role_bindings)

    def _member_selector(self) -> Dict[str, str]:
        return {MEMBER_OF_KEY: self.mesh_namespace}

    # membership

    def reconcile_namespace_in_mesh(self, namespace: str) -> None:
        LOG.debug("configuring namespace %s for use with mesh %s", namespace, self.mesh_namespace)
        ns = Document(self.store.get("v1", "Namespace", None, namespace))
        if ns.deletion_timestamp:
            LOG.info("not reconciling member namespace %s, because it is being deleted", namespace)
            raise NamespaceTerminatingError("namespace %s is terminating" % namespace)

        member_of = ns.label(MEMBER_OF_KEY)
        if member_of and member_of != self.mesh_namespace:
            raise MembershipConflictError(
                "Cannot reconcile namespace %s in mesh %s, as it is already a member of %s"
                % (namespace, self.mesh_namespace, member_of)
            )

        self.strategy.reconcile_namespace_in_mesh(namespace)

        errors: List[Exception] = []
        try:
            self.reconcile_role_bindings(namespace)
        except ReconcileError as exc:
            errors.append(exc)
        try:
            if self.is_cni_enabled:
                self.add_network_attachment_definition(namespace)
            else:
                self.remove_network_attachment_definitions(namespace)
        except ReconcileError as exc:
            errors.append(exc)

        # the label marks the namespace as fully configured
        _raise_all(errors)
        if member_of is None:
            # re-read to narrow the window for a conflict with other writers
            try:
                fresh = Document(self.store.get("v1", "Namespace", None, namespace))
                fresh.set_label(MEMBER_OF_KEY, self.mesh_namespace)
                self.store.update(fresh.obj)
                LOG.info("added member-of label to namespace %s", namespace)
            except ReconcileError as exc:
                raise ReconcileError(
                    "Error adding member-of label to namespace %s: %s" % (namespace, exc)
                ) from exc

    def remove_namespace_from_mesh(self, namespace: str) -> None:
        try:
            ns = Document(self.store.get("v1", "Namespace", None, namespace))
        except ReconcileError as exc:
            if is_not_found(exc):
                LOG.info("namespace %s to remove from mesh is missing", namespace)
                return
            raise
        if ns.deletion_timestamp:
            LOG.info("not removing mesh resources from namespace %s because it is being deleted", namespace)
            raise NamespaceTerminatingError("namespace %s is terminating" % namespace)

        LOG.info("cleaning up resources in namespace %s removed from mesh %s", namespace, self.mesh_namespace)
        errors: List[Exception] = []
        try:
            for obj in self.store.list(
                ROLE_BINDING_API_VERSION, "RoleBinding", namespace=namespace, label_selector=self._member_selector()
            ):
                self._delete_ignoring_missing(ROLE_BINDING_API_VERSION, "RoleBinding", namespace, Document(obj).name, errors)
        except ReconcileError as exc:
            LOG.error("could not retrieve RoleBindings associated with mesh: %s", exc)
            errors.append(exc)

        for step in (self.remove_network_attachment_definitions, self.strategy.remove_namespace_from_mesh):
            try:
                step(namespace)
            except ReconcileError as exc:
                errors.append(exc)

        try:
            fresh = Document(self.store.get("v1", "Namespace", None, namespace))
            if fresh.label(MEMBER_OF_KEY) != self.mesh_namespace:
                LOG.info("namespace %s is not labeled as a member of mesh %s", namespace, self.mesh_namespace)
            elif fresh.remove_label(MEMBER_OF_KEY):
                self.store.update(fresh.obj)
                LOG.info("removed member-of label from namespace %s", namespace)
        except ReconcileError as exc:
            if not is_not_found(exc):
                wrapped = ReconcileError("Error removing member-of label from namespace %s: %s" % (namespace, exc))
                wrapped.__cause__ = exc
                errors.append(wrapped)
        _raise_all(errors)

    # role bindings

    def _mirror_role_binding(self, source: Document, namespace: str) -> Dict[str, Any]:
        mirror = Document(copy.deepcopy(source.obj))
        mirror.obj.pop("status", None)
        mirror.obj["metadata"] = {
            "name": source.name,
            "namespace": namespace,
            "labels": dict(source.labels),
            "annotations": dict(source.annotations),
        }
        if not mirror.annotations:
            mirror.remove("metadata.annotations")
        mirror.set_label(MEMBER_OF_KEY, self.mesh_namespace)
        return mirror.obj

    def reconcile_role_bindings(self, namespace: str) -> None:
        """Mirror the mesh's RoleBindings into ``namespace`` by name."""
        try:
            existing = {
                Document(obj).name
                for obj in self.store.list(
                    ROLE_BINDING_API_VERSION,
                    "RoleBinding",
                    namespace=namespace,
                    label_selector=self._member_selector(),
                )
            }
        except ReconcileError as exc:
            LOG.error("error retrieving RoleBinding resources for namespace %s: %s", namespace, exc)
            raise

        errors: List[Exception] = []
        for source in self.mesh_role_bindings:
            if source.name in existing:
                continue
            LOG.info("creating RoleBinding %s in namespace %s", source.name, namespace)
            try:
                self.store.create(self._mirror_role_binding(source, namespace))
            except ReconcileError as exc:
                LOG.error("error creating RoleBinding %s in namespace %s: %s", source.name, namespace, exc)
                errors.append(exc)
                continue
            existing.add(source.name)

        for name in sorted(existing - set(self.required_role_bindings)):
            LOG.info("deleting RoleBinding %s in namespace %s", name, namespace)
            self._delete_ignoring_missing(
                ROLE_BINDING_API_VERSION, "RoleBinding", namespace, name, errors, PROPAGATION_FOREGROUND
            )
        _raise_all(errors)

    # cni

    def _member_network_attachments(self, namespace: str) -> List[Document]:
        try:
            return [
                Document(obj)
                for obj in self.store.list(NAD_API_VERSION, NAD_KIND, namespace=namespace, label_selector=self._member_selector())
            ]
        except ReconcileError as exc:
            raise ReconcileError(
                "Could not list NetworkAttachmentDefinition resources in member namespace %s: %s" % (namespace, exc)
            ) from exc

    def add_network_attachment_definition(self, namespace: str) -> None:
        name = self.config.cni_network_name(self.mesh_version)
        if not name:
            raise ReconcileError("no CNI network configured for mesh version %s" % self.mesh_version)
        errors: List[Exception] = []
        found = False
        for nad in self._member_network_attachments(namespace):
            if nad.name == name:
                found = True
                continue
            self._delete_ignoring_missing(NAD_API_VERSION, NAD_KIND, namespace, nad.name, errors, PROPAGATION_ORPHAN)
        if not found:
            LOG.info("creating NetworkAttachmentDefinition %s in namespace %s", name, namespace)
            nad = Document.new(NAD_API_VERSION, NAD_KIND, name, namespace)
            nad.set_label(MEMBER_OF_KEY, self.mesh_namespace)
            try:
                self.store.create(nad.obj)
            except ReconcileError as exc:
                errors.append(
                    ReconcileError("Could not create NetworkAttachmentDefinition %s/%s: %s" % (namespace, name, exc))
                )
        _raise_all(errors)

    def remove_network_attachment_definitions(self, namespace: str) -> None:
        errors: List[Exception] = []
        for nad in self._member_network_attachments(namespace):
            LOG.info("deleting NetworkAttachmentDefinition %s in namespace %s", nad.name, namespace)
            self._delete_ignoring_missing(NAD_API_VERSION, NAD_KIND, namespace, nad.name, errors, PROPAGATION_ORPHAN)
        _raise_all(errors)

    def _delete_ignoring_missing(
        self,
        api_version: str,
        kind: str,
        namespace: str,
        name: str,
        errors: List[Exception],
        propagation: Optional[str] = None,
    ) -> None:
        try:
            if propagation is None:
                self.store.delete(api_version, kind, namespace, name)
            else:
                self.store.delete(api_version, kind, namespace, name, propagation=propagation)
        except ReconcileError as exc:
            if not is_not_found(exc):
                LOG.error("error deleting %s %s/%s: %s", kind, namespace, name, exc)
                errors.append(exc)


__all__ = ["NamespaceReconciler"]
