"""Versioned status conditions for control planes, components and members."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.common.resource_key import ResourceKey


OPERATOR_VERSION = "2.0.0"

CONDITION_TYPE_INSTALLED = "Installed"
CONDITION_TYPE_RECONCILED = "Reconciled"
CONDITION_TYPE_READY = "Ready"

CONDITION_STATUS_TRUE = "True"
CONDITION_STATUS_FALSE = "False"
CONDITION_STATUS_UNKNOWN = "Unknown"

REASON_DELETION_ERROR = "DeletionError"
REASON_INSTALL_SUCCESSFUL = "InstallSuccessful"
REASON_INSTALL_ERROR = "InstallError"
REASON_RECONCILE_SUCCESSFUL = "ReconcileSuccessful"
REASON_RECONCILE_ERROR = "ReconcileError"
REASON_RESOURCE_CREATED = "ResourceCreated"
REASON_SPEC_UPDATED = "SpecUpdated"
REASON_UPDATE_SUCCESSFUL = "UpdateSuccessful"
REASON_COMPONENTS_READY = "ComponentsReady"
REASON_COMPONENTS_NOT_READY = "ComponentsNotReady"
REASON_PROBE_ERROR = "ProbeError"
REASON_PAUSING_INSTALL = "PausingInstall"
REASON_PAUSING_UPDATE = "PausingUpdate"
REASON_DELETING = "Deleting"
REASON_DELETED = "Deleted"
REASON_CONFIGURED = "Configured"
REASON_INVALID_NAME = "InvalidName"
REASON_MULTIPLE_SMCP = "MultipleSMCP"
REASON_SMCP_MISSING = "SMCPMissing"
REASON_NAMESPACE_EXCLUDED = "NamespaceExcluded"
REASON_NAMESPACE_NOT_EXISTS = "NamespaceNotExists"
REASON_NAMESPACE_TERMINATING = "NamespaceTerminating"


def now_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def compose_reconciled_version(operator_version: str, generation: int) -> str:
    return "%s-%d" % (operator_version, generation)


def current_reconciled_version(generation: int) -> str:
    return compose_reconciled_version(OPERATOR_VERSION, generation)


@dataclass
class Condition:
    type: str
    status: str = CONDITION_STATUS_UNKNOWN
    reason: str = ""
    message: str = ""
    last_transition_time: str = ""

    def matches(self, other: "Condition") -> bool:
        return (
            self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": self.type, "status": self.status}
        if self.reason:
            data["reason"] = self.reason
        if self.message:
            data["message"] = self.message
        if self.last_transition_time:
            data["lastTransitionTime"] = self.last_transition_time
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=str(data.get("type", "")),
            status=str(data.get("status", CONDITION_STATUS_UNKNOWN)),
            reason=str(data.get("reason", "")),
            message=str(data.get("message", "")),
            last_transition_time=str(data.get("lastTransitionTime", "")),
        )


@dataclass
class StatusType:
    """A list of conditions keyed by condition type."""

    conditions: List[Condition] = field(default_factory=list)

    def get_condition(self, condition_type: str) -> Condition:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return Condition(type=condition_type, status=CONDITION_STATUS_UNKNOWN)

    def set_condition(self, condition: Condition, now: Optional[str] = None) -> Condition:
        """Insert or replace ``condition``.

        ``last_transition_time`` is preserved when the status for this type
        is unchanged and stamped with ``now`` otherwise.
        """
        condition = copy.copy(condition)
        for index, existing in enumerate(self.conditions):
            if existing.type != condition.type:
                continue
            if existing.status == condition.status and existing.last_transition_time:
                condition.last_transition_time = existing.last_transition_time
            else:
                condition.last_transition_time = now or now_timestamp()
            self.conditions[index] = condition
            return condition
        condition.last_transition_time = now or now_timestamp()
        self.conditions.append(condition)
        return condition

    def remove_condition(self, condition_type: str) -> None:
        self.conditions = [c for c in self.conditions if c.type != condition_type]

    def conditions_to_list(self) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self.conditions]


@dataclass
class ComponentStatus(StatusType):
    resource: str = ""
    children: List["ComponentStatus"] = field(default_factory=list)

    def find_child(self, key: ResourceKey) -> Optional["ComponentStatus"]:
        wanted = str(key)
        for child in self.children:
            if child.resource == wanted:
                return child
        return None

    def find_resources_of_kind(self, kind: str) -> List["ComponentStatus"]:
        found = []
        for child in self.children:
            try:
                if ResourceKey.parse(child.resource).kind == kind:
                    found.append(child)
            except ValueError:
                continue
        return found

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"resource": self.resource}
        if self.conditions:
            data["conditions"] = self.conditions_to_list()
        if self.children:
            data["resources"] = [child.to_dict() for child in self.children]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ComponentStatus":
        return cls(
            resource=str(data.get("resource", "")),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            children=[cls.from_dict(c) for c in data.get("resources") or []],
        )


@dataclass
class ControlPlaneStatus(StatusType):
    observed_generation: int = 0
    reconciled_version: str = ""
    components: List[ComponentStatus] = field(default_factory=list)
    annotations: Dict[str, str] = field(default_factory=dict)
    readiness: Dict[str, List[str]] = field(default_factory=dict)

    def find_component_by_name(self, name: str) -> Optional[ComponentStatus]:
        for component in self.components:
            if component.resource == name:
                return component
        return None

    def find_resource_by_key(self, key: ResourceKey) -> Optional[ComponentStatus]:
        for component in self.components:
            child = component.find_child(key)
            if child is not None:
                return child
        return None

    def find_resources_of_kind(self, kind: str) -> List[ComponentStatus]:
        found: List[ComponentStatus] = []
        for component in self.components:
            found.extend(component.find_resources_of_kind(kind))
        return found

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "observedGeneration": self.observed_generation,
            "conditions": self.conditions_to_list(),
            "components": [component.to_dict() for component in self.components],
        }
        if self.reconciled_version:
            data["reconciledVersion"] = self.reconciled_version
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        if self.readiness:
            data["readiness"] = {"components": {k: list(v) for k, v in self.readiness.items()}}
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ControlPlaneStatus":
        data = data or {}
        readiness = (data.get("readiness") or {}).get("components") or {}
        return cls(
            observed_generation=int(data.get("observedGeneration") or 0),
            reconciled_version=str(data.get("reconciledVersion") or ""),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            components=[ComponentStatus.from_dict(c) for c in data.get("components") or []],
            annotations=dict(data.get("annotations") or {}),
            readiness={k: list(v) for k, v in readiness.items()},
        )


@dataclass
class MemberStatus(StatusType):
    namespace: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"namespace": self.namespace, "conditions": self.conditions_to_list()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemberStatus":
        return cls(
            namespace=str(data.get("namespace", "")),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
        )


@dataclass
class MemberRollStatus(StatusType):
    observed_generation: int = 0
    service_mesh_generation: int = 0
    service_mesh_reconciled_version: str = ""
    configured_members: List[str] = field(default_factory=list)
    pending_members: List[str] = field(default_factory=list)
    terminating_members: List[str] = field(default_factory=list)
    member_statuses: List[MemberStatus] = field(default_factory=list)
    annotations: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "observedGeneration": self.observed_generation,
            "serviceMeshGeneration": self.service_mesh_generation,
            "configuredMembers": list(self.configured_members),
            "pendingMembers": list(self.pending_members),
            "terminatingMembers": list(self.terminating_members),
            "conditions": self.conditions_to_list(),
        }
        if self.service_mesh_reconciled_version:
            data["serviceMeshReconciledVersion"] = self.service_mesh_reconciled_version
        if self.member_statuses:
            data["memberStatuses"] = [member.to_dict() for member in self.member_statuses]
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MemberRollStatus":
        data = data or {}
        return cls(
            observed_generation=int(data.get("observedGeneration") or 0),
            service_mesh_generation=int(data.get("serviceMeshGeneration") or 0),
            service_mesh_reconciled_version=str(data.get("serviceMeshReconciledVersion") or ""),
            configured_members=list(data.get("configuredMembers") or []),
            pending_members=list(data.get("pendingMembers") or []),
            terminating_members=list(data.get("terminatingMembers") or []),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            member_statuses=[MemberStatus.from_dict(m) for m in data.get("memberStatuses") or []],
            annotations=dict(data.get("annotations") or {}),
        )


def update_reconcile_conditions(
    status: StatusType,
    err: Optional[BaseException],
    success_message: str,
    now: Optional[str] = None,
) -> None:
    """Drive ``Installed``/``Reconciled`` from the outcome of a reconcile pass."""
    installed = status.get_condition(CONDITION_TYPE_INSTALLED)
    if err is None:
        if installed.status != CONDITION_STATUS_TRUE:
            for condition_type in (CONDITION_TYPE_INSTALLED, CONDITION_TYPE_RECONCILED):
                status.set_condition(
                    Condition(
                        type=condition_type,
                        status=CONDITION_STATUS_TRUE,
                        reason=REASON_INSTALL_SUCCESSFUL,
                        message=success_message,
                    ),
                    now=now,
                )
        else:
            status.set_condition(
                Condition(
                    type=CONDITION_TYPE_RECONCILED,
                    status=CONDITION_STATUS_TRUE,
                    reason=REASON_RECONCILE_SUCCESSFUL,
                    message="Successfully reconciled",
                ),
                now=now,
            )
        return

    message = str(err)
    if installed.status == CONDITION_STATUS_UNKNOWN:
        for condition_type in (CONDITION_TYPE_INSTALLED, CONDITION_TYPE_RECONCILED):
            status.set_condition(
                Condition(
                    type=condition_type,
                    status=CONDITION_STATUS_FALSE,
                    reason=REASON_INSTALL_ERROR,
                    message=message,
                ),
                now=now,
            )
    else:
        status.set_condition(
            Condition(
                type=CONDITION_TYPE_RECONCILED,
                status=CONDITION_STATUS_FALSE,
                reason=REASON_RECONCILE_ERROR,
                message=message,
            ),
            now=now,
        )


__all__ = [
    "CONDITION_STATUS_FALSE",
    "CONDITION_STATUS_TRUE",
    "CONDITION_STATUS_UNKNOWN",
    "CONDITION_TYPE_INSTALLED",
    "CONDITION_TYPE_READY",
    "CONDITION_TYPE_RECONCILED",
    "ComponentStatus",
    "Condition",
    "ControlPlaneStatus",
    "MemberRollStatus",
    "MemberStatus",
    "OPERATOR_VERSION",
    "StatusType",
    "compose_reconciled_version",
    "current_reconciled_version",
    "now_timestamp",
    "update_reconcile_conditions",
]
