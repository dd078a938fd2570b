from __future__ import annotations

import logging
import re
from typing import Callable, Dict, List, Optional, Set, Tuple

from src.common.config import OperatorConfig
from src.common.conflicts import ConflictHandlingReconciler, ReconcileResult, is_conflict_only
from src.common.document import Document
from src.common.errors import (
    AggregateError,
    NamespaceTerminatingError,
    ReconcileError,
    is_not_found,
)
from src.common.events import EVENT_TYPE_WARNING, EventRecorder
from src.common.lifecycle import handle_finalization
from src.common.metadata import (
    CONFIGURED_MEMBER_COUNT_ANNOTATION,
    FINALIZER_NAME,
    MEMBER_OF_KEY,
    MEMBER_ROLL_NAME,
)
from src.common.status import (
    CONDITION_STATUS_FALSE,
    CONDITION_STATUS_TRUE,
    CONDITION_TYPE_READY,
    CONDITION_TYPE_RECONCILED,
    REASON_CONFIGURED,
    REASON_INVALID_NAME,
    REASON_MULTIPLE_SMCP,
    REASON_NAMESPACE_EXCLUDED,
    REASON_NAMESPACE_NOT_EXISTS,
    REASON_NAMESPACE_TERMINATING,
    REASON_RECONCILE_ERROR,
    REASON_SMCP_MISSING,
    Condition,
    ControlPlaneStatus,
    MemberRollStatus,
    MemberStatus,
)
from src.controlplane.reconciler import CONTROL_PLANE_API_VERSION, CONTROL_PLANE_KIND, controller_reference
from src.kube.client import ObjectStore
from src.memberroll.addons import DEFAULT_KIALI_NAME, KialiReconciler
from src.memberroll.namespace_reconciler import NamespaceReconciler
from src.memberroll.networking import NetworkingStrategy, select_networking_strategy

LOG = logging.getLogger(__name__)

MEMBER_ROLL_API_VERSION = "maistra.io/v1"
MEMBER_ROLL_KIND = "ServiceMeshMemberRoll"

KIALI_NAME_ANNOTATION = "kialiName"
ERROR_REQUEUE_AFTER = 30.0

StrategyFactory = Callable[[ObjectStore, str, OperatorConfig], NetworkingStrategy]


def _set_ready(status: MemberRollStatus, ready: bool, reason: str, message: str) -> None:
    status.set_condition(
        Condition(
            type=CONDITION_TYPE_READY,
            status=CONDITION_STATUS_TRUE if ready else CONDITION_STATUS_FALSE,
            reason=reason,
            message=message,
        )
    )


class MemberRollReconciler:
    """Converges the namespaces listed in a member roll into its mesh.

    Every pass takes at most one of these actions, checked in order:

    1. the roll's spec changed: add listed namespaces, remove unlisted ones
    2. listed namespaces that were missing now exist: add just those
    3. the control plane was reconciled again: re-add every member
    4. configured namespaces were deleted: forget them
    """

    def __init__(
        self,
        store: ObjectStore,
        config: OperatorConfig,
        events: Optional[EventRecorder] = None,
        strategy_factory: StrategyFactory = select_networking_strategy,
        kiali: Optional[KialiReconciler] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.events = events or EventRecorder()
        self.strategy_factory = strategy_factory
        self.kiali = kiali or KialiReconciler(store)
        self._excluded = [re.compile(pattern) for pattern in config.excluded_namespace_patterns()]
        self._handler = ConflictHandlingReconciler(self._reconcile, requeue_after=config.conflict_requeue_after)

    def reconcile(self, namespace: str, name: str = MEMBER_ROLL_NAME) -> ReconcileResult:
        return self._handler.reconcile((namespace, name))

    def is_excluded(self, namespace: str) -> bool:
        return any(pattern.search(namespace) for pattern in self._excluded)

    def new_namespace_reconciler(self, mesh_namespace: str, mesh_version: Optional[str]) -> NamespaceReconciler:
        strategy = self.strategy_factory(self.store, mesh_namespace, self.config)
        LOG.debug("using %s networking strategy for mesh %s", strategy.name, mesh_namespace)
        return NamespaceReconciler(
            self.store,
            self.config,
            mesh_namespace,
            mesh_version,
            self.config.cni.enabled,
            strategy,
        )

    def _reconcile(self, request: Tuple[str, str]) -> ReconcileResult:
        namespace, name = request
        LOG.info("processing ServiceMeshMemberRoll %s/%s", namespace, name)
        try:
            roll = Document(self.store.get(MEMBER_ROLL_API_VERSION, MEMBER_ROLL_KIND, namespace, name))
        except ReconcileError as exc:
            if is_not_found(exc):
                return ReconcileResult()
            raise

        proceed, _ = handle_finalization(self.store, roll, FINALIZER_NAME, self.finalize)
        if not proceed:
            return ReconcileResult()
        return self.reconcile_object(roll)

    # deletion

    def _labeled_members(self, mesh_namespace: str) -> Set[str]:
        namespaces = self.store.list("v1", "Namespace", label_selector={MEMBER_OF_KEY: mesh_namespace})
        return {Document(obj).name for obj in namespaces} - {mesh_namespace}

    def _mesh_version(self, mesh_namespace: str) -> Optional[str]:
        meshes = self.store.list(CONTROL_PLANE_API_VERSION, CONTROL_PLANE_KIND, namespace=mesh_namespace)
        if len(meshes) != 1:
            return None
        return Document(meshes[0]).get_str("spec.version")

    def finalize(self, roll: Document) -> bool:
        """Remove every member from the mesh; the finalizer stays on failure."""
        mesh_namespace = roll.namespace
        status = MemberRollStatus.from_dict(roll.get_map("status"))
        members = (set(status.configured_members) | self._labeled_members(mesh_namespace)) - {mesh_namespace}
        LOG.info("removing members %s from mesh %s", sorted(members), mesh_namespace)

        errors: List[Exception] = []
        if members:
            reconciler = self.new_namespace_reconciler(mesh_namespace, self._mesh_version(mesh_namespace))
            for namespace in sorted(members):
                try:
                    reconciler.remove_namespace_from_mesh(namespace)
                except NamespaceTerminatingError:
                    LOG.info("namespace %s is being deleted, nothing to clean up", namespace)
                except ReconcileError as exc:
                    LOG.error("error removing namespace %s from mesh: %s", namespace, exc)
                    errors.append(exc)
        try:
            kiali_name = status.annotations.get(KIALI_NAME_ANNOTATION, DEFAULT_KIALI_NAME)
            self.kiali.reconcile_kiali(kiali_name, mesh_namespace, [])
        except ReconcileError as exc:
            errors.append(exc)

        error = AggregateError.from_list(errors)
        if error is not None:
            raise error
        return True

    # reconciliation

    def ensure_owner_reference(self, roll: Document, mesh: Document) -> None:
        if roll.is_controlled_by(mesh):
            return
        LOG.info("adding ServiceMeshControlPlane %s as owner of %s", mesh.name, roll.name)
        references = [ref for ref in roll.owner_references if not ref.get("controller")]
        references.append(controller_reference(mesh))
        roll.set("metadata.ownerReferences", references)
        try:
            roll.obj = self.store.update(roll.obj)
        except ReconcileError as exc:
            raise ReconcileError("Error adding ServiceMeshControlPlane owner reference to ServiceMeshMemberRoll") from exc

    def _list_namespaces(self) -> Dict[str, Document]:
        try:
            return {Document(obj).name: Document(obj) for obj in self.store.list("v1", "Namespace")}
        except ReconcileError as exc:
            raise ReconcileError("Error listing namespaces") from exc

    def _add_members(
        self,
        reconciler: NamespaceReconciler,
        namespaces: Set[str],
        failures: Dict[str, Exception],
    ) -> Set[str]:
        added: Set[str] = set()
        for namespace in sorted(namespaces):
            try:
                reconciler.reconcile_namespace_in_mesh(namespace)
            except ReconcileError as exc:
                LOG.error("error configuring namespace %s for mesh: %s", namespace, exc)
                failures[namespace] = exc
                continue
            added.add(namespace)
        return added

    def reconcile_object(self, roll: Document) -> ReconcileResult:
        mesh_namespace = roll.namespace
        status = MemberRollStatus.from_dict(roll.get_map("status"))
        persisted = status.to_dict()

        if roll.name != MEMBER_ROLL_NAME:
            LOG.info("skipping reconciliation of ServiceMeshMemberRoll with invalid name %s", roll.name)
            _set_ready(
                status,
                False,
                REASON_INVALID_NAME,
                "the ServiceMeshMemberRoll name is invalid; must be %r" % MEMBER_ROLL_NAME,
            )
            self.post_status(roll, status, persisted)
            return ReconcileResult()

        try:
            meshes = self.store.list(CONTROL_PLANE_API_VERSION, CONTROL_PLANE_KIND, namespace=mesh_namespace)
        except ReconcileError as exc:
            raise ReconcileError("Error retrieving ServiceMeshControlPlane resources") from exc
        if not meshes:
            LOG.info("no ServiceMeshControlPlane in namespace %s, waiting", mesh_namespace)
            _set_ready(status, False, REASON_SMCP_MISSING, "No ServiceMeshControlPlane exists in the namespace")
            self.post_status(roll, status, persisted)
            return ReconcileResult()
        if len(meshes) > 1:
            LOG.info("multiple ServiceMeshControlPlanes in namespace %s, waiting", mesh_namespace)
            _set_ready(
                status,
                False,
                REASON_MULTIPLE_SMCP,
                "Multiple ServiceMeshControlPlane resources exist in the namespace",
            )
            self.post_status(roll, status, persisted)
            return ReconcileResult()

        mesh = Document(meshes[0])
        self.ensure_owner_reference(roll, mesh)

        mesh_status = ControlPlaneStatus.from_dict(mesh.get_map("status"))
        if not mesh_status.reconciled_version:
            LOG.info("initial installation of mesh %s has not completed, waiting", mesh_namespace)
            return ReconcileResult()

        listed = {ns for ns in roll.get_list("spec.members") or [] if isinstance(ns, str) and ns}
        listed.discard(mesh_namespace)
        excluded = {ns for ns in listed if self.is_excluded(ns)}
        required = listed - excluded

        namespaces = self._list_namespaces()
        existing = set(namespaces) - {mesh_namespace}
        terminating = {ns for ns in required & existing if namespaces[ns].deletion_timestamp}
        available = (required & existing) - terminating
        configured = set(status.configured_members) - {mesh_namespace}
        mesh_version = mesh.get_str("spec.version")

        failures: Dict[str, Exception] = {}
        removal_errors: List[Exception] = []

        if roll.generation != status.observed_generation:
            LOG.info("member list changed, reconciling all members of mesh %s", mesh_namespace)
            reconciler = self.new_namespace_reconciler(mesh_namespace, mesh_version)
            stale = (configured | (self._labeled_members(mesh_namespace) & existing)) - required
            for namespace in sorted(stale):
                try:
                    reconciler.remove_namespace_from_mesh(namespace)
                except NamespaceTerminatingError:
                    LOG.info("namespace %s is being deleted, nothing to clean up", namespace)
                except ReconcileError as exc:
                    LOG.error("error removing namespace %s from mesh: %s", namespace, exc)
                    removal_errors.append(exc)
            configured = self._add_members(reconciler, available, failures)
            status.observed_generation = roll.generation
            status.service_mesh_generation = mesh_status.observed_generation
            status.service_mesh_reconciled_version = mesh_status.reconciled_version
        elif available - configured:
            appeared = available - configured
            LOG.info("namespaces %s now exist, adding them to mesh %s", sorted(appeared), mesh_namespace)
            reconciler = self.new_namespace_reconciler(mesh_namespace, mesh_version)
            configured |= self._add_members(reconciler, appeared, failures)
        elif status.service_mesh_reconciled_version != mesh_status.reconciled_version:
            LOG.info("mesh %s was reconciled, reconciling all members", mesh_namespace)
            reconciler = self.new_namespace_reconciler(mesh_namespace, mesh_version)
            configured = self._add_members(reconciler, available, failures)
            status.service_mesh_generation = mesh_status.observed_generation
            status.service_mesh_reconciled_version = mesh_status.reconciled_version
        elif configured - existing:
            LOG.info("namespaces %s were deleted, removing them from configured members", sorted(configured - existing))
        else:
            LOG.debug("member roll of mesh %s is up to date", mesh_namespace)

        configured = (configured & existing) - terminating
        kiali_name = mesh.get_str("spec.addons.kiali.name") or DEFAULT_KIALI_NAME
        kiali_error: Optional[Exception] = None
        try:
            self.kiali.reconcile_kiali(kiali_name, mesh_namespace, configured | {mesh_namespace})
        except ReconcileError as exc:
            LOG.error("error updating Kiali: %s", exc)
            kiali_error = exc

        self._update_status(status, listed, excluded, existing, terminating, configured, failures)
        status.annotations[KIALI_NAME_ANNOTATION] = kiali_name
        pending = status.pending_members
        if pending:
            _set_ready(
                status,
                False,
                REASON_RECONCILE_ERROR,
                "The following namespaces are not yet configured: %s" % ", ".join(pending),
            )
        elif removal_errors:
            _set_ready(
                status,
                False,
                REASON_RECONCILE_ERROR,
                "Error removing namespaces from mesh: %s" % AggregateError.from_list(removal_errors),
            )
        elif kiali_error is not None:
            _set_ready(status, False, REASON_RECONCILE_ERROR, "Kiali could not be configured: %s" % kiali_error)
        else:
            _set_ready(status, True, REASON_CONFIGURED, "All namespaces have been configured successfully")
        self.post_status(roll, status, persisted)

        errors = list(failures.values()) + removal_errors
        if kiali_error is not None:
            errors.append(kiali_error)
        error = AggregateError.from_list(errors)
        if error is None:
            return ReconcileResult()
        if is_conflict_only(error):
            raise error
        self.events.event(roll.obj, EVENT_TYPE_WARNING, REASON_RECONCILE_ERROR, str(error))
        return ReconcileResult(requeue=True, requeue_after=ERROR_REQUEUE_AFTER)

    def _update_status(
        self,
        status: MemberRollStatus,
        listed: Set[str],
        excluded: Set[str],
        existing: Set[str],
        terminating: Set[str],
        configured: Set[str],
        failures: Dict[str, Exception],
    ) -> None:
        previous = {member.namespace: member for member in status.member_statuses}
        status.member_statuses = []
        for namespace in sorted(listed):
            member = previous.get(namespace) or MemberStatus(namespace=namespace)
            if namespace in excluded:
                reason, message = REASON_NAMESPACE_EXCLUDED, "Namespace %s is excluded from mesh membership" % namespace
            elif namespace not in existing:
                reason, message = REASON_NAMESPACE_NOT_EXISTS, "Namespace %s does not exist" % namespace
            elif namespace in terminating:
                reason, message = REASON_NAMESPACE_TERMINATING, "Namespace %s is being deleted" % namespace
            elif namespace in failures:
                reason, message = REASON_RECONCILE_ERROR, str(failures[namespace])
            elif namespace in configured:
                reason, message = REASON_CONFIGURED, "Namespace %s is configured" % namespace
            else:
                reason, message = "", ""
            if reason:
                member.set_condition(
                    Condition(
                        type=CONDITION_TYPE_RECONCILED,
                        status=CONDITION_STATUS_TRUE if reason == REASON_CONFIGURED else CONDITION_STATUS_FALSE,
                        reason=reason,
                        message=message,
                    )
                )
            status.member_statuses.append(member)

        status.configured_members = sorted(configured)
        status.pending_members = sorted(listed - configured - terminating)
        status.terminating_members = sorted(terminating)
        status.annotations[CONFIGURED_MEMBER_COUNT_ANNOTATION] = "%d/%d" % (len(configured), len(listed))

    def post_status(self, roll: Document, status: MemberRollStatus, persisted: Dict) -> None:
        if status.to_dict() == persisted:
            LOG.debug("status of ServiceMeshMemberRoll %s/%s is unchanged", roll.namespace, roll.name)
            return
        try:
            fresh = Document(self.store.get(MEMBER_ROLL_API_VERSION, MEMBER_ROLL_KIND, roll.namespace, roll.name))
            fresh.set("status", status.to_dict())
            roll.obj = self.store.update_status(fresh.obj)
        except ReconcileError as exc:
            if is_not_found(exc):
                return
            raise ReconcileError("error updating status for ServiceMeshMemberRoll") from exc


__all__ = [
    "MEMBER_ROLL_API_VERSION",
    "MEMBER_ROLL_KIND",
    "MemberRollReconciler",
    "StrategyFactory",
]
