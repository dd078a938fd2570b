"""Pod-network isolation strategies applied to member namespaces.

Which strategy applies depends on the cluster network provider. It is probed
once per reconcile with :func:`select_networking_strategy`.
"""

from __future__ import annotations

import abc
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set

from src.common.config import BackoffConfig, OperatorConfig
from src.common.document import Document
from src.common.errors import (
    AggregateError,
    ReconcileError,
    is_no_kind_match,
    is_not_found,
)
from src.common.metadata import INTERNAL_KEY, MEMBER_OF_KEY, OWNER_KEY
from src.kube.client import PROPAGATION_FOREGROUND, ObjectStore

LOG = logging.getLogger(__name__)

NETWORK_POLICY_API_VERSION = "networking.k8s.io/v1"
NET_NAMESPACE_API_VERSION = "network.openshift.io/v1"
CHANGE_POD_NETWORK_ANNOTATION = "pod.network.openshift.io/multitenant.change-network"

NETWORK_TYPE_OPENSHIFT_SDN = "openshiftsdn"
NETWORK_TYPE_CALICO = "calico"
NETWORK_TYPE_OVN_KUBERNETES = "ovnkubernetes"

PLUGIN_SUBNET = "redhat/openshift-ovs-subnet"
PLUGIN_NETWORK_POLICY = "redhat/openshift-ovs-networkpolicy"
PLUGIN_MULTITENANT = "redhat/openshift-ovs-multitenant"


class NetworkingStrategy(abc.ABC):
    """Joins member namespaces to, and isolates them from, the mesh network."""

    name = "abstract"

    @abc.abstractmethod
    def reconcile_namespace_in_mesh(self, namespace: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def remove_namespace_from_mesh(self, namespace: str) -> None:
        raise NotImplementedError


class NoOpStrategy(NetworkingStrategy):
    """Flat pod networks (ovs-subnet or no provider info) need no changes."""

    name = "subnet"

    def reconcile_namespace_in_mesh(self, namespace: str) -> None:
        return None

    def remove_namespace_from_mesh(self, namespace: str) -> None:
        return None


def _mirror_network_policy(source: Document, namespace: str, mesh_namespace: str) -> Dict[str, Any]:
    mirror = Document.new(NETWORK_POLICY_API_VERSION, "NetworkPolicy", source.name, namespace)
    for key, value in source.labels.items():
        mirror.set_label(key, value)
    for key, value in source.annotations.items():
        mirror.set_annotation(key, value)
    mirror.set_label(MEMBER_OF_KEY, mesh_namespace)
    spec = dict(source.get_map("spec") or {})
    mirror.set("spec", {key: spec[key] for key in ("podSelector", "ingress", "egress", "policyTypes") if key in spec})
    return mirror.obj


class NetworkPolicyStrategy(NetworkingStrategy):
    """Mirrors the mesh's NetworkPolicies into every member namespace.

    Policies annotated ``maistra.io/internal`` only protect the control plane
    itself and are not mirrored.
    """

    name = "networkpolicy"

    def __init__(self, store: ObjectStore, mesh_namespace: str) -> None:
        self.store = store
        self.mesh_namespace = mesh_namespace
        self.mesh_policies: List[Document] = []
        for obj in store.list(
            NETWORK_POLICY_API_VERSION,
            "NetworkPolicy",
            namespace=mesh_namespace,
            label_selector={OWNER_KEY: mesh_namespace},
        ):
            doc = Document(obj)
            if doc.annotation(INTERNAL_KEY) is None:
                self.mesh_policies.append(doc)

    @property
    def required_policies(self) -> Set[str]:
        return {doc.name for doc in self.mesh_policies}

    def _member_policies(self, namespace: str) -> List[Document]:
        return [
            Document(obj)
            for obj in self.store.list(
                NETWORK_POLICY_API_VERSION,
                "NetworkPolicy",
                namespace=namespace,
                label_selector={MEMBER_OF_KEY: self.mesh_namespace},
            )
        ]

    def reconcile_namespace_in_mesh(self, namespace: str) -> None:
        existing = {doc.name for doc in self._member_policies(namespace)}
        errors: List[Exception] = []
        for source in self.mesh_policies:
            if source.name in existing:
                continue
            LOG.info("creating NetworkPolicy %s in namespace %s", source.name, namespace)
            try:
                self.store.create(_mirror_network_policy(source, namespace, self.mesh_namespace))
            except ReconcileError as exc:
                LOG.error("error creating NetworkPolicy %s in namespace %s: %s", source.name, namespace, exc)
                errors.append(exc)
                continue
            existing.add(source.name)

        for name in sorted(existing - self.required_policies):
            LOG.info("deleting NetworkPolicy %s in namespace %s", name, namespace)
            try:
                self.store.delete(
                    NETWORK_POLICY_API_VERSION, "NetworkPolicy", namespace, name, propagation=PROPAGATION_FOREGROUND
                )
            except ReconcileError as exc:
                if not is_not_found(exc):
                    LOG.error("error deleting NetworkPolicy %s in namespace %s: %s", name, namespace, exc)
                    errors.append(exc)
        error = AggregateError.from_list(errors)
        if error is not None:
            raise error

    def remove_namespace_from_mesh(self, namespace: str) -> None:
        errors: List[Exception] = []
        for doc in self._member_policies(namespace):
            LOG.info("deleting NetworkPolicy %s in namespace %s", doc.name, namespace)
            try:
                self.store.delete(NETWORK_POLICY_API_VERSION, "NetworkPolicy", namespace, doc.name)
            except ReconcileError as exc:
                if not is_not_found(exc):
                    errors.append(exc)
        error = AggregateError.from_list(errors)
        if error is not None:
            raise error


class MultitenantStrategy(NetworkingStrategy):
    """Joins NetNamespaces of members to the mesh's virtual network."""

    name = "multitenant"

    def __init__(
        self,
        store: ObjectStore,
        mesh_namespace: str,
        backoff: BackoffConfig = BackoffConfig(),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.mesh_namespace = mesh_namespace
        self.backoff = backoff
        self.sleep = sleep

    def reconcile_namespace_in_mesh(self, namespace: str) -> None:
        LOG.info("joining network of namespace %s to mesh %s", namespace, self.mesh_namespace)
        self.update_net_namespace(namespace, "join:%s" % self.mesh_namespace)

    def remove_namespace_from_mesh(self, namespace: str) -> None:
        LOG.info("isolating network of namespace %s", namespace)
        self.update_net_namespace(namespace, "isolate:")

    def update_net_namespace(self, namespace: str, change: str) -> None:
        netns = Document(self.store.get(NET_NAMESPACE_API_VERSION, "NetNamespace", None, namespace))
        netns.set_annotation(CHANGE_POD_NETWORK_ANNOTATION, change)
        self.store.update(netns.obj)

        # the SDN controller removes the annotation once the change is applied
        for delay in self.backoff.delays():
            self.sleep(delay)
            current = Document(self.store.get(NET_NAMESPACE_API_VERSION, "NetNamespace", None, namespace))
            if current.annotation(CHANGE_POD_NETWORK_ANNOTATION) is None:
                return
        raise ReconcileError(
            "timed out waiting for the SDN to apply %r to NetNamespace %s" % (change, namespace)
        )


def _get_optional(store: ObjectStore, api_version: str, kind: str, name: str) -> Optional[Document]:
    try:
        return Document(store.get(api_version, kind, None, name))
    except ReconcileError as exc:
        if is_not_found(exc) or is_no_kind_match(exc):
            return None
        raise


def select_networking_strategy(
    store: ObjectStore,
    mesh_namespace: str,
    config: OperatorConfig,
    sleep: Callable[[float], None] = time.sleep,
) -> NetworkingStrategy:
    network = _get_optional(store, "config.openshift.io/v1", "Network", "cluster")
    if network is None:
        LOG.info("network configuration not defined, skipping")
        return NoOpStrategy()
    network_type = network.get("spec.networkType")
    if network_type is None:
        LOG.info("networkType not defined, skipping network configuration")
        return NoOpStrategy()

    normalized = str(network_type).lower()
    if normalized in (NETWORK_TYPE_CALICO, NETWORK_TYPE_OVN_KUBERNETES):
        LOG.info("network strategy %s: NetworkPolicy", network_type)
        return NetworkPolicyStrategy(store, mesh_namespace)
    if normalized != NETWORK_TYPE_OPENSHIFT_SDN:
        raise ReconcileError("unsupported network type: %s" % network_type)

    cluster_network = _get_optional(store, NET_NAMESPACE_API_VERSION, "ClusterNetwork", "default")
    if cluster_network is None:
        LOG.info("default cluster network not defined, skipping network configuration")
        return NoOpStrategy()
    plugin = cluster_network.get_str("pluginName")
    if plugin is None:
        LOG.info("cluster network plugin not defined, skipping network configuration")
        return NoOpStrategy()
    if plugin == PLUGIN_SUBNET:
        return NoOpStrategy()
    if plugin == PLUGIN_NETWORK_POLICY:
        LOG.info("network strategy OpenShiftSDN: NetworkPolicy")
        return NetworkPolicyStrategy(store, mesh_namespace)
    if plugin == PLUGIN_MULTITENANT:
        LOG.info("network strategy OpenShiftSDN: MultiTenant")
        return MultitenantStrategy(store, mesh_namespace, backoff=config.multitenant_backoff, sleep=sleep)
    raise ReconcileError("unsupported cluster network plugin: %s" % plugin)


__all__ = [
    "CHANGE_POD_NETWORK_ANNOTATION",
    "MultitenantStrategy",
    "NetworkPolicyStrategy",
    "NetworkingStrategy",
    "NoOpStrategy",
    "select_networking_strategy",
]
