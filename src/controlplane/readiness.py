from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Set, Tuple

from src.common.config import OperatorConfig
from src.common.document import Document
from src.common.errors import ReconcileError, is_not_found
from src.common.events import EVENT_TYPE_NORMAL, EVENT_TYPE_WARNING, EventRecorder
from src.common.metadata import (
    CNI_COMPONENT_LABEL,
    CNI_COMPONENT_VALUE,
    MEMBER_ROLL_NAME,
    OWNER_KEY,
    READY_COMPONENT_COUNT_ANNOTATION,
    component_of,
)
from src.common.status import (
    CONDITION_STATUS_FALSE,
    CONDITION_STATUS_TRUE,
    CONDITION_STATUS_UNKNOWN,
    CONDITION_TYPE_READY,
    CONDITION_TYPE_RECONCILED,
    REASON_COMPONENTS_NOT_READY,
    REASON_COMPONENTS_READY,
    REASON_PROBE_ERROR,
    Condition,
    ControlPlaneStatus,
)
from src.kube.client import ObjectStore

LOG = logging.getLogger(__name__)

EVENT_REASON_NOT_READY = "NotReady"
EVENT_REASON_READY = "Ready"

ALL_READY_MESSAGE = "All component deployments are Available"
CNI_COMPONENT = "cni"


def deployment_ready(doc: Document) -> bool:
    replicas = doc.get_int("status.replicas") or 0
    ready_replicas = doc.get_int("status.readyReplicas") or 0
    observed = doc.get_int("status.observedGeneration")
    if ready_replicas < replicas:
        return False
    if observed is not None and observed < doc.generation:
        return False
    for condition in doc.get_list("status.conditions") or []:
        if isinstance(condition, dict) and condition.get("type") == "Available":
            return condition.get("status") == "True"
    return False


def stateful_set_ready(doc: Document) -> bool:
    return (doc.get_int("status.readyReplicas") or 0) >= (doc.get_int("status.replicas") or 0)


def daemon_set_ready(doc: Document) -> bool:
    return (doc.get_int("status.numberUnavailable") or 0) == 0


READINESS_CHECKS: Tuple[Tuple[str, str, Callable[[Document], bool]], ...] = (
    ("apps/v1", "Deployment", deployment_ready),
    ("apps/v1", "StatefulSet", stateful_set_ready),
    ("apps/v1", "DaemonSet", daemon_set_ready),
)


class ReadinessAggregator:
    """Computes component readiness of a control plane from its workloads."""

    def __init__(self, store: ObjectStore, config: OperatorConfig, instance: Document) -> None:
        self.store = store
        self.config = config
        self.instance = instance

    @property
    def mesh_namespace(self) -> str:
        return self.instance.namespace

    def _gateway_namespaces(self) -> Set[str]:
        namespaces: Set[str] = set()
        gateways = self.instance.get_map("spec.gateways") or {}
        for value in gateways.values():
            candidates = value.values() if isinstance(value, dict) and "namespace" not in value else [value]
            for gateway in candidates:
                if isinstance(gateway, dict) and gateway.get("namespace"):
                    namespaces.add(str(gateway["namespace"]))
        return namespaces

    def namespaces_to_check(self) -> List[str]:
        namespaces = {self.mesh_namespace} | self._gateway_namespaces()
        members = {self.mesh_namespace}
        try:
            roll = Document(self.store.get("maistra.io/v1", "ServiceMeshMemberRoll", self.mesh_namespace, MEMBER_ROLL_NAME))
            members.update(roll.get_list("status.configuredMembers") or [])
        except ReconcileError as exc:
            if not is_not_found(exc):
                raise
        return sorted(namespaces & members)

    def component_readiness(self) -> Dict[str, bool]:
        readiness: Dict[str, bool] = {}
        selector = {OWNER_KEY: self.mesh_namespace}
        for namespace in self.namespaces_to_check():
            for api_version, kind, is_ready in READINESS_CHECKS:
                for obj in self.store.list(api_version, kind, namespace=namespace, label_selector=selector):
                    doc = Document(obj)
                    component = component_of(doc.labels)
                    if not component:
                        LOG.warning("skipping %s for readiness check: resource has no component label", doc.key)
                        continue
                    readiness[component] = readiness.get(component, True) and is_ready(doc)
        if self.config.cni.enabled:
            readiness[CNI_COMPONENT] = self.is_cni_ready()
        return readiness

    def is_cni_ready(self) -> bool:
        if not self.config.cni.enabled:
            return True
        daemon_sets = self.store.list(
            "apps/v1",
            "DaemonSet",
            namespace=self.config.operator_namespace,
            label_selector={CNI_COMPONENT_LABEL: CNI_COMPONENT_VALUE},
        )
        return all(daemon_set_ready(Document(obj)) for obj in daemon_sets)

    def update_readiness_status(
        self,
        status: ControlPlaneStatus,
        events: Optional[EventRecorder] = None,
    ) -> bool:
        """Refresh the Ready condition; return whether ``status`` changed.

        Events are only emitted when the Ready status flips.
        """
        ready_condition = status.get_condition(CONDITION_TYPE_READY)
        try:
            readiness = self.component_readiness()
        except ReconcileError as exc:
            condition = Condition(
                type=CONDITION_TYPE_READY,
                status=CONDITION_STATUS_UNKNOWN,
                reason=REASON_PROBE_ERROR,
                message="Error collecting ready state: %s" % exc,
            )
            if ready_condition.matches(condition):
                return False
            status.set_condition(condition)
            if ready_condition.status != condition.status and events is not None:
                events.event(self.instance.obj, EVENT_TYPE_WARNING, EVENT_REASON_NOT_READY, condition.message)
            return True

        ready = sorted(component for component, ok in readiness.items() if ok)
        unready = sorted(component for component, ok in readiness.items() if not ok)
        changed = False

        reconciled = status.get_condition(CONDITION_TYPE_RECONCILED)
        if reconciled.status != CONDITION_STATUS_TRUE:
            wanted = Condition(
                type=CONDITION_TYPE_READY,
                status=reconciled.status,
                reason=reconciled.reason,
                message=reconciled.message,
            )
            event = None
        elif unready:
            wanted = Condition(
                type=CONDITION_TYPE_READY,
                status=CONDITION_STATUS_FALSE,
                reason=REASON_COMPONENTS_NOT_READY,
                message="The following components are not fully available: %s" % ", ".join(unready),
            )
            event = (EVENT_TYPE_WARNING, EVENT_REASON_NOT_READY)
        else:
            wanted = Condition(
                type=CONDITION_TYPE_READY,
                status=CONDITION_STATUS_TRUE,
                reason=REASON_COMPONENTS_READY,
                message=ALL_READY_MESSAGE,
            )
            event = (EVENT_TYPE_NORMAL, EVENT_REASON_READY)

        if not ready_condition.matches(wanted):
            status.set_condition(wanted)
            changed = True
            if event is not None and events is not None and ready_condition.status != wanted.status:
                LOG.info("control plane %s is now %s", self.mesh_namespace, wanted.reason)
                events.event(self.instance.obj, event[0], event[1], wanted.message)

        count = "%d/%d" % (len(ready), len(status.components))
        if status.annotations.get(READY_COMPONENT_COUNT_ANNOTATION) != count:
            status.annotations[READY_COMPONENT_COUNT_ANNOTATION] = count
            changed = True

        all_components = {component.resource for component in status.components}
        readiness_map = {
            "ready": ready,
            "unready": unready,
            "pending": sorted(all_components - set(ready) - set(unready)),
        }
        if status.readiness != readiness_map:
            status.readiness = readiness_map
            changed = True
        return changed


__all__ = [
    "ALL_READY_MESSAGE",
    "READINESS_CHECKS",
    "ReadinessAggregator",
    "daemon_set_ready",
    "deployment_ready",
    "stateful_set_ready",
]
