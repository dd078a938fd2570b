"""Label, annotation and finalizer keys shared by every reconciler."""

from __future__ import annotations

from typing import Dict, Optional


OWNER_KEY = "maistra.io/owner"
OWNER_NAME_KEY = "maistra.io/owner-name"
MEMBER_OF_KEY = "maistra.io/member-of"
MESH_GENERATION_KEY = "maistra.io/mesh-generation"
INTERNAL_KEY = "maistra.io/internal"
IGNORE_NAMESPACE_KEY = "maistra.io/ignore-namespace"
CREATED_BY_KEY = "maistra.io/created-by"

LAST_APPLIED_CONFIG_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"

FINALIZER_NAME = "maistra.io/istio-operator"

MEMBER_ROLL_NAME = "default"

KUBERNETES_APP_NAME_KEY = "app.kubernetes.io/name"
KUBERNETES_APP_INSTANCE_KEY = "app.kubernetes.io/instance"
KUBERNETES_APP_VERSION_KEY = "app.kubernetes.io/version"
KUBERNETES_APP_COMPONENT_KEY = "app.kubernetes.io/component"
KUBERNETES_APP_PART_OF_KEY = "app.kubernetes.io/part-of"
KUBERNETES_APP_PART_OF_VALUE = "istio"
KUBERNETES_APP_MANAGED_BY_KEY = "app.kubernetes.io/managed-by"
KUBERNETES_APP_MANAGED_BY_VALUE = "mesh-reconciler"

# Older charts only carry the legacy "app" label.
LEGACY_COMPONENT_KEY = "app"

CNI_COMPONENT_LABEL = "istio"
CNI_COMPONENT_VALUE = "cni"

READY_COMPONENT_COUNT_ANNOTATION = "readyComponentCount"
CONFIGURED_MEMBER_COUNT_ANNOTATION = "configuredMemberCount"


def component_of(labels: Optional[Dict[str, str]]) -> Optional[str]:
    """Return the component an object belongs to, if it is labelled with one."""

    if not labels:
        return None
    return labels.get(KUBERNETES_APP_COMPONENT_KEY) or labels.get(LEGACY_COMPONENT_KEY)


__all__ = [
    "CNI_COMPONENT_LABEL",
    "CNI_COMPONENT_VALUE",
    "CONFIGURED_MEMBER_COUNT_ANNOTATION",
    "CREATED_BY_KEY",
    "FINALIZER_NAME",
    "IGNORE_NAMESPACE_KEY",
    "INTERNAL_KEY",
    "KUBERNETES_APP_COMPONENT_KEY",
    "KUBERNETES_APP_INSTANCE_KEY",
    "KUBERNETES_APP_MANAGED_BY_KEY",
    "KUBERNETES_APP_MANAGED_BY_VALUE",
    "KUBERNETES_APP_NAME_KEY",
    "KUBERNETES_APP_PART_OF_KEY",
    "KUBERNETES_APP_PART_OF_VALUE",
    "KUBERNETES_APP_VERSION_KEY",
    "LAST_APPLIED_CONFIG_ANNOTATION",
    "LEGACY_COMPONENT_KEY",
    "MEMBER_OF_KEY",
    "MEMBER_ROLL_NAME",
    "MESH_GENERATION_KEY",
    "OWNER_KEY",
    "OWNER_NAME_KEY",
    "READY_COMPONENT_COUNT_ANNOTATION",
    "component_of",
]
