from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

from src.common.errors import ReconcileError
from src.common.status import now_timestamp

LOG = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

COMPONENT_NAME = "mesh-reconciler"


@dataclass
class Event:
    kind: str
    namespace: str
    name: str
    event_type: str
    reason: str
    message: str


class EventRecorder:
    """Emits events about an object; the base implementation only logs them."""

    def event(self, obj: Mapping[str, Any], event_type: str, reason: str, message: str) -> None:
        metadata = obj.get("metadata") or {}
        LOG.info(
            "event %s/%s on %s %s/%s: %s",
            event_type,
            reason,
            obj.get("kind"),
            metadata.get("namespace", ""),
            metadata.get("name", ""),
            message,
        )


class RecordingEventRecorder(EventRecorder):
    def __init__(self) -> None:
        self.events: List[Event] = []

    def event(self, obj: Mapping[str, Any], event_type: str, reason: str, message: str) -> None:
        super().event(obj, event_type, reason, message)
        metadata = obj.get("metadata") or {}
        self.events.append(
            Event(
                kind=str(obj.get("kind", "")),
                namespace=str(metadata.get("namespace", "")),
                name=str(metadata.get("name", "")),
                event_type=event_type,
                reason=reason,
                message=message,
            )
        )

    def reasons(self) -> List[str]:
        return [event.reason for event in self.events]


class StoreEventRecorder(EventRecorder):
    """Writes ``v1/Event`` objects through an object store."""

    def __init__(self, store: Any) -> None:
        self.store = store

    def event(self, obj: Mapping[str, Any], event_type: str, reason: str, message: str) -> None:
        super().event(obj, event_type, reason, message)
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace") or "default"
        timestamp = now_timestamp()
        body: Dict[str, Any] = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": "%s.%s" % (metadata.get("name", "object"), uuid.uuid4().hex[:16]),
                "namespace": namespace,
            },
            "involvedObject": {
                "apiVersion": obj.get("apiVersion"),
                "kind": obj.get("kind"),
                "name": metadata.get("name"),
                "namespace": metadata.get("namespace"),
                "uid": metadata.get("uid"),
                "resourceVersion": metadata.get("resourceVersion"),
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": COMPONENT_NAME},
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }
        try:
            self.store.create(body)
        except ReconcileError as exc:
            # events are best effort
            LOG.warning("failed to record event %s: %s", reason, exc)


__all__ = [
    "EVENT_TYPE_NORMAL",
    "EVENT_TYPE_WARNING",
    "Event",
    "EventRecorder",
    "RecordingEventRecorder",
    "StoreEventRecorder",
]
