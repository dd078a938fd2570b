from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from src.common.config import OperatorConfig
from src.common.conflicts import ConflictHandlingReconciler, ReconcileResult, is_conflict_only
from src.common.document import Document
from src.common.errors import ReconcileError, is_not_found
from src.common.events import EVENT_TYPE_NORMAL, EVENT_TYPE_WARNING, EventRecorder
from src.common.lifecycle import Lifecycle, handle_finalization
from src.common.metadata import (
    FINALIZER_NAME,
    IGNORE_NAMESPACE_KEY,
    MEMBER_OF_KEY,
    MESH_GENERATION_KEY,
)
from src.common.status import (
    CONDITION_STATUS_FALSE,
    CONDITION_STATUS_TRUE,
    CONDITION_TYPE_INSTALLED,
    CONDITION_TYPE_READY,
    CONDITION_TYPE_RECONCILED,
    REASON_DELETED,
    REASON_DELETING,
    REASON_DELETION_ERROR,
    REASON_INSTALL_SUCCESSFUL,
    REASON_PAUSING_INSTALL,
    REASON_PAUSING_UPDATE,
    REASON_RECONCILE_ERROR,
    REASON_RESOURCE_CREATED,
    REASON_SPEC_UPDATED,
    REASON_UPDATE_SUCCESSFUL,
    ComponentStatus,
    Condition,
    ControlPlaneStatus,
    current_reconciled_version,
    update_reconcile_conditions,
)
from src.controlplane.pruner import DELETE_ALL, Pruner
from src.controlplane.readiness import CNI_COMPONENT, ReadinessAggregator
from src.controlplane.rendering import (
    Renderer,
    Renderings,
    charts_in_installation_order,
    component_from_chart,
)
from src.kube.client import ObjectStore
from src.manifests.processor import ManifestProcessor, ObjectHook

LOG = logging.getLogger(__name__)

CONTROL_PLANE_API_VERSION = "maistra.io/v2"
CONTROL_PLANE_KIND = "ServiceMeshControlPlane"

EVENT_REASON_INSTALLING = "Installing"
EVENT_REASON_PAUSING_INSTALL = "PausingInstall"
EVENT_REASON_PAUSING_UPDATE = "PausingUpdate"
EVENT_REASON_INSTALLED = "Installed"
EVENT_REASON_UPDATING = "Updating"
EVENT_REASON_UPDATED = "Updated"
EVENT_REASON_DELETING = "Deleting"
EVENT_REASON_DELETED = "Deleted"
EVENT_REASON_PRUNING = "Pruning"
EVENT_REASON_FAILED_REMOVING_FINALIZER = "FailedRemovingFinalizer"
EVENT_REASON_FAILED_DELETING_RESOURCES = "FailedDeletingResources"

COMPONENT_SUCCESS_MESSAGE = "Component installed successfully"
ERROR_REQUEUE_AFTER = 30.0
PAUSED_REQUEUE_AFTER = 10.0


def controller_reference(instance: Document) -> Dict[str, Any]:
    return {
        "apiVersion": instance.api_version,
        "kind": instance.kind,
        "name": instance.name,
        "uid": instance.get_str("metadata.uid") or "",
        "controller": True,
        "blockOwnerDeletion": True,
    }


def is_fully_reconciled(instance: Document) -> bool:
    status = ControlPlaneStatus.from_dict(instance.get_map("status"))
    return (
        status.reconciled_version == current_reconciled_version(instance.generation)
        and status.get_condition(CONDITION_TYPE_RECONCILED).status == CONDITION_STATUS_TRUE
    )


class ControlPlaneReconciler:
    """Reconciles one control-plane instance for a single pass."""

    def __init__(
        self,
        store: ObjectStore,
        config: OperatorConfig,
        instance: Dict[str, Any],
        renderer: Renderer,
        events: Optional[EventRecorder] = None,
        wait_for_components: bool = True,
        kind_hooks: Optional[Mapping[str, ObjectHook]] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.instance = Document(copy.deepcopy(instance))
        self.renderer = renderer
        self.events = events or EventRecorder()
        self.wait_for_components = wait_for_components
        self.kind_hooks = dict(kind_hooks or {})
        self.status = ControlPlaneStatus.from_dict(self.instance.get_map("status"))
        self.mesh_generation = current_reconciled_version(self.instance.generation)
        self.pruner = Pruner(store, self.namespace)
        self.readiness = ReadinessAggregator(store, config, self.instance)

    @property
    def namespace(self) -> str:
        return self.instance.namespace

    def is_updating(self) -> bool:
        return ControlPlaneStatus.from_dict(self.instance.get_map("status")).observed_generation != 0

    def _event(self, event_type: str, reason: str, message: str) -> None:
        self.events.event(self.instance.obj, event_type, reason, message)

    # reconcile

    def reconcile(self) -> ReconcileResult:
        """Run one reconcile pass and post the resulting status.

        Per-object failures are reported through the status conditions and
        requeued. Failures that prevent the pass from running at all, and
        conflicts, are raised.
        """
        LOG.info("reconciling ServiceMeshControlPlane %s/%s", self.namespace, self.instance.name)
        result, reason, message, err, fatal = self._reconcile_pass()
        try:
            self._post_reconciliation_status(reason, message, err)
        except ReconcileError as status_err:
            if err is None or not fatal:
                raise
            LOG.error("error posting reconciliation status: %s", status_err)
        if err is not None and fatal:
            raise err
        return result

    def _reconcile_pass(self) -> Tuple[ReconcileResult, str, str, Optional[Exception], bool]:
        self.initialize_reconcile_status()

        try:
            renderings = self.renderer(self.instance)
        except Exception as exc:
            message = "Error rendering helm charts"
            err = ReconcileError(f"{message}: {exc}")
            err.__cause__ = exc
            update_reconcile_conditions(self.status, err, message)
            return ReconcileResult(), REASON_RECONCILE_ERROR, message, err, True

        try:
            self.label_mesh_namespace()
        except ReconcileError as exc:
            message = "Error updating labels on mesh namespace"
            update_reconcile_conditions(self.status, exc, message)
            return ReconcileResult(), REASON_RECONCILE_ERROR, message, exc, True

        charts = charts_in_installation_order(renderings.keys())
        self.initialize_component_statuses(charts)

        if self.config.cni.enabled and self.wait_for_components:
            try:
                cni_ready = self.readiness.is_cni_ready()
            except ReconcileError as exc:
                message = "Error checking readiness of component %s" % CNI_COMPONENT
                return ReconcileResult(), REASON_RECONCILE_ERROR, message, exc, True
            if not cni_ready:
                return self._pause(CNI_COMPONENT)

        # later charts depend on earlier ones, so stop at the first failure
        for chart in charts:
            component = component_from_chart(chart)
            ready, err = self.process_component(chart, renderings[chart])
            if err is not None:
                message = "Error processing component %s" % component
                update_reconcile_conditions(self.status, err, message)
                return self._failed(message, err)
            if not ready:
                return self._pause(component)

        message = "Pruning obsolete resources"
        self._event(EVENT_TYPE_NORMAL, EVENT_REASON_PRUNING, message)
        LOG.info(message)
        prune_err = self.pruner.prune(self.mesh_generation)
        if prune_err is not None:
            message = "Error pruning obsolete resources"
            update_reconcile_conditions(self.status, prune_err, message)
            return self._failed(message, prune_err)

        if self.is_updating():
            reason = REASON_UPDATE_SUCCESSFUL
            message = "Successfully updated from version %s to version %s" % (
                self.status.reconciled_version,
                self.mesh_generation,
            )
            self._event(EVENT_TYPE_NORMAL, EVENT_REASON_UPDATED, message)
        else:
            reason = REASON_INSTALL_SUCCESSFUL
            message = "Successfully installed version %s" % self.mesh_generation
            self._event(EVENT_TYPE_NORMAL, EVENT_REASON_INSTALLED, message)
        self.status.observed_generation = self.instance.generation
        self.status.reconciled_version = self.mesh_generation
        update_reconcile_conditions(self.status, None, "Successfully installed all mesh components")
        self.readiness.update_readiness_status(self.status, self.events)
        LOG.info("completed ServiceMeshControlPlane reconciliation")
        return ReconcileResult(), reason, message, None, False

    def _failed(self, message: str, err: Exception) -> Tuple[ReconcileResult, str, str, Optional[Exception], bool]:
        LOG.error("%s: %s", message, err)
        fatal = is_conflict_only(err)
        return ReconcileResult(requeue=True, requeue_after=ERROR_REQUEUE_AFTER), REASON_RECONCILE_ERROR, message, err, fatal

    def _pause(self, component: str) -> Tuple[ReconcileResult, str, str, Optional[Exception], bool]:
        if self.is_updating():
            event_reason, reason = EVENT_REASON_PAUSING_UPDATE, REASON_PAUSING_UPDATE
        else:
            event_reason, reason = EVENT_REASON_PAUSING_INSTALL, REASON_PAUSING_INSTALL
        message = "Paused until %s becomes ready" % component
        self._event(EVENT_TYPE_NORMAL, event_reason, message)
        LOG.info(message)
        return ReconcileResult(requeue=True, requeue_after=PAUSED_REQUEUE_AFTER), reason, message, None, False

    def initialize_reconcile_status(self) -> None:
        generation = self.instance.generation
        if self.is_updating():
            if self.status.observed_generation == generation:
                from_version = self.status.reconciled_version.rsplit("-", 1)[0]
                to_version = self.mesh_generation.rsplit("-", 1)[0]
                message = "Upgrading mesh from version %s to version %s" % (from_version, to_version)
            else:
                message = "Updating mesh from generation %d to generation %d" % (
                    self.status.observed_generation,
                    generation,
                )
            event_reason, reason = EVENT_REASON_UPDATING, REASON_SPEC_UPDATED
        else:
            message = "Installing mesh generation %d" % generation
            event_reason, reason = EVENT_REASON_INSTALLING, REASON_RESOURCE_CREATED
            self.status.set_condition(
                Condition(type=CONDITION_TYPE_INSTALLED, status=CONDITION_STATUS_FALSE, reason=reason, message=message)
            )
        self._event(EVENT_TYPE_NORMAL, event_reason, message)
        for condition_type in (CONDITION_TYPE_RECONCILED, CONDITION_TYPE_READY):
            self.status.set_condition(
                Condition(type=condition_type, status=CONDITION_STATUS_FALSE, reason=reason, message=message)
            )

    def label_mesh_namespace(self) -> None:
        namespace = Document(self.store.get("v1", "Namespace", None, self.namespace))
        changed = False
        if namespace.label(IGNORE_NAMESPACE_KEY) != "ignore":
            LOG.info("adding %s=ignore label to namespace %s", IGNORE_NAMESPACE_KEY, self.namespace)
            namespace.set_label(IGNORE_NAMESPACE_KEY, "ignore")
            changed = True
        if namespace.label(MEMBER_OF_KEY) != self.namespace:
            LOG.info("adding %s label to namespace %s", MEMBER_OF_KEY, self.namespace)
            namespace.set_label(MEMBER_OF_KEY, self.namespace)
            changed = True
        if changed:
            self.store.update(namespace.obj)

    def initialize_component_statuses(self, charts: Sequence[str]) -> None:
        statuses: List[ComponentStatus] = []
        for chart in charts:
            name = component_from_chart(chart)
            component = self.status.find_component_by_name(name) or ComponentStatus(resource=name)
            component.set_condition(Condition(type=CONDITION_TYPE_RECONCILED, status=CONDITION_STATUS_FALSE))
            statuses.append(component)
        self.status.components = statuses

    def _pre_process(self, doc: Document) -> None:
        if doc.namespace == self.namespace:
            doc.set("metadata.ownerReferences", [controller_reference(self.instance)])
        doc.set_annotation(MESH_GENERATION_KEY, self.mesh_generation)
        hook = self.kind_hooks.get(doc.kind)
        if hook is not None:
            hook(doc)

    def manifest_processor(self) -> ManifestProcessor:
        return ManifestProcessor(
            self.store,
            owner_namespace=self.namespace,
            owner_name=self.instance.name,
            app_instance=self.namespace,
            app_version=self.mesh_generation,
            pre_process=self._pre_process,
        )

    def process_component(self, chart: str, manifests: Renderings) -> Tuple[bool, Optional[Exception]]:
        """Apply a component's manifests; return whether it is ready."""
        component = component_from_chart(chart)
        LOG.info("reconciling component %s", component)
        status = self.status.find_component_by_name(component)
        if status is None:
            status = ComponentStatus(resource=component)
            self.status.components.append(status)
        err = self.manifest_processor().process_manifests(manifests, component, status)
        update_reconcile_conditions(status, err, COMPONENT_SUCCESS_MESSAGE)
        if err is not None:
            return False, err
        if not self.wait_for_components:
            return True, None
        try:
            readiness = self.readiness.component_readiness()
        except ReconcileError as exc:
            return False, exc
        return readiness.get(component, True), None

    def _post_reconciliation_status(self, reason: str, message: str, err: Optional[Exception]) -> None:
        reconciled = copy.copy(self.status.get_condition(CONDITION_TYPE_RECONCILED))
        reconciled.reason = reason
        if err is None:
            reconciled.message = message
        else:
            reconciled.message = "%s: error: %s" % (message, err)
            self._event(
                EVENT_TYPE_WARNING,
                EVENT_REASON_UPDATING if self.is_updating() else EVENT_REASON_INSTALLING,
                reconciled.message,
            )
        self.status.set_condition(reconciled)
        if self.status.to_dict() == ControlPlaneStatus.from_dict(self.instance.get_map("status")).to_dict():
            LOG.debug("status of %s/%s is unchanged", self.namespace, self.instance.name)
            return
        self.post_status()

    def post_status(self) -> None:
        try:
            fresh = Document(self.store.get(CONTROL_PLANE_API_VERSION, CONTROL_PLANE_KIND, self.namespace, self.instance.name))
        except ReconcileError as exc:
            if is_not_found(exc):
                return
            raise ReconcileError("error getting ServiceMeshControlPlane prior to updating status") from exc
        fresh.set("status", self.status.to_dict())
        try:
            updated = self.store.update_status(fresh.obj)
        except ReconcileError as exc:
            if is_not_found(exc):
                return
            raise ReconcileError("error updating ServiceMeshControlPlane status") from exc
        self.instance.set("status", copy.deepcopy(updated.get("status") or {}))
        self.instance.resource_version = Document(updated).resource_version

    # readiness

    def update_readiness(self) -> None:
        if self.readiness.update_readiness_status(self.status, self.events):
            self.post_status()

    # deletion

    def delete(self) -> bool:
        """Tear down every owned object; return True once the finalizer may go."""
        reconciled = self.status.get_condition(CONDITION_TYPE_RECONCILED)
        if reconciled.status != CONDITION_STATUS_FALSE or reconciled.reason != REASON_DELETING:
            for condition_type in (CONDITION_TYPE_RECONCILED, CONDITION_TYPE_READY):
                self.status.set_condition(
                    Condition(
                        type=condition_type,
                        status=CONDITION_STATUS_FALSE,
                        reason=REASON_DELETING,
                        message="Deleting service mesh",
                    )
                )
            # deletion continues when the status update comes back around
            self.post_status()
            return False

        LOG.info("deleting ServiceMeshControlPlane %s/%s", self.namespace, self.instance.name)
        self._event(EVENT_TYPE_NORMAL, EVENT_REASON_DELETING, "Deleting service mesh")
        err = self.pruner.prune(DELETE_ALL)
        if err is not None:
            self._event(
                EVENT_TYPE_WARNING,
                EVENT_REASON_FAILED_DELETING_RESOURCES,
                "Error deleting service mesh resources: %s" % err,
            )
            self.status.set_condition(
                Condition(
                    type=CONDITION_TYPE_RECONCILED,
                    status=CONDITION_STATUS_FALSE,
                    reason=REASON_DELETION_ERROR,
                    message="Error deleting service mesh: %s" % err,
                )
            )
            try:
                self.post_status()
            except ReconcileError as status_err:
                LOG.error("error updating status: %s", status_err)
            raise err

        self._event(EVENT_TYPE_NORMAL, EVENT_REASON_DELETED, "Successfully deleted service mesh resources")
        self.status.set_condition(
            Condition(
                type=CONDITION_TYPE_RECONCILED,
                status=CONDITION_STATUS_TRUE,
                reason=REASON_DELETED,
                message="Service mesh deleted",
            )
        )
        return True


class ControlPlaneController:
    """Entry point invoked by the work queue for control-plane keys."""

    def __init__(
        self,
        store: ObjectStore,
        config: OperatorConfig,
        renderer: Renderer,
        events: Optional[EventRecorder] = None,
        wait_for_components: bool = True,
        kind_hooks: Optional[Mapping[str, ObjectHook]] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.renderer = renderer
        self.events = events or EventRecorder()
        self.wait_for_components = wait_for_components
        self.kind_hooks = kind_hooks
        self._handler = ConflictHandlingReconciler(self._reconcile, requeue_after=config.conflict_requeue_after)

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        return self._handler.reconcile((namespace, name))

    def new_reconciler(self, instance: Dict[str, Any]) -> ControlPlaneReconciler:
        return ControlPlaneReconciler(
            self.store,
            self.config,
            instance,
            self.renderer,
            events=self.events,
            wait_for_components=self.wait_for_components,
            kind_hooks=self.kind_hooks,
        )

    def _reconcile(self, request: Tuple[str, str]) -> ReconcileResult:
        namespace, name = request
        LOG.info("processing ServiceMeshControlPlane %s/%s", namespace, name)
        try:
            instance = Document(self.store.get(CONTROL_PLANE_API_VERSION, CONTROL_PLANE_KIND, namespace, name))
        except ReconcileError as exc:
            if is_not_found(exc):
                LOG.info("ServiceMeshControlPlane %s/%s deleted", namespace, name)
                return ReconcileResult()
            raise

        def finalize(doc: Document) -> bool:
            return self.new_reconciler(doc.obj).delete()

        try:
            proceed, state = handle_finalization(self.store, instance, FINALIZER_NAME, finalize)
        except ReconcileError:
            if instance.deletion_timestamp:
                self.events.event(
                    instance.obj,
                    EVENT_TYPE_WARNING,
                    EVENT_REASON_FAILED_REMOVING_FINALIZER,
                    "Error occurred removing finalizer from service mesh",
                )
            raise
        if not proceed:
            if state is Lifecycle.GONE:
                LOG.info("deletion of ServiceMeshControlPlane %s/%s complete", namespace, name)
            return ReconcileResult()

        reconciler = self.new_reconciler(instance.obj)
        if is_fully_reconciled(instance):
            reconciler.update_readiness()
            return ReconcileResult()
        return reconciler.reconcile()


__all__ = [
    "COMPONENT_SUCCESS_MESSAGE",
    "CONTROL_PLANE_API_VERSION",
    "CONTROL_PLANE_KIND",
    "ControlPlaneController",
    "ControlPlaneReconciler",
    "controller_reference",
    "is_fully_reconciled",
]
