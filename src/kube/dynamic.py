"""Object store backed by the kubernetes dynamic client."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from src.common.errors import (
    AlreadyExistsError,
    ConflictError,
    GoneError,
    InvalidError,
    NoKindMatchError,
    NotFoundError,
    ReconcileError,
)
from src.kube.client import (
    PATCH_TYPE_MERGE,
    PROPAGATION_BACKGROUND,
    ObjectStore,
    format_selector,
)

LOG = logging.getLogger(__name__)


def load_cluster_config(kubeconfig: Optional[str] = None, context: Optional[str] = None) -> None:
    """Load in-cluster credentials, falling back to a kubeconfig file."""
    if kubeconfig is None and context is None:
        try:
            k8s_config.load_incluster_config()
            return
        except k8s_config.ConfigException:
            LOG.debug("not running in a cluster, loading kubeconfig")
    k8s_config.load_kube_config(config_file=kubeconfig, context=context)


def translate_api_exception(exc: ApiException, verb: str, kind: str, name: str) -> ReconcileError:
    message = "%s %s %r: %s" % (verb, kind, name, exc.reason or exc.body or exc.status)
    if exc.status == 404:
        return NotFoundError(message)
    if exc.status == 410:
        return GoneError(message)
    if exc.status == 409:
        if "AlreadyExists" in str(exc.body or ""):
            return AlreadyExistsError(message)
        return ConflictError(message)
    if exc.status == 422:
        return InvalidError(message)
    return ReconcileError(message)


class KubernetesObjectStore(ObjectStore):
    def __init__(self, api_client: Optional[k8s_client.ApiClient] = None) -> None:
        self.client = DynamicClient(api_client or k8s_client.ApiClient())

    def _resource(self, api_version: str, kind: str) -> Any:
        try:
            return self.client.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as exc:
            raise NoKindMatchError(f"no matches for kind {kind!r} in version {api_version!r}") from exc

    @staticmethod
    def _namespace(resource: Any, namespace: Optional[str]) -> Optional[str]:
        return namespace if resource.namespaced else None

    def get(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> Dict[str, Any]:
        resource = self._resource(api_version, kind)
        try:
            return resource.get(name=name, namespace=self._namespace(resource, namespace)).to_dict()
        except ApiException as exc:
            raise translate_api_exception(exc, "get", kind, name) from exc

    def list(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[Mapping[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        resource = self._resource(api_version, kind)
        try:
            result = resource.get(
                namespace=self._namespace(resource, namespace),
                label_selector=format_selector(label_selector),
            )
        except ApiException as exc:
            raise translate_api_exception(exc, "list", kind, "") from exc
        items = []
        for item in result.to_dict().get("items") or []:
            item.setdefault("apiVersion", api_version)
            item.setdefault("kind", kind)
            items.append(item)
        return items

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        resource = self._resource(obj["apiVersion"], obj["kind"])
        metadata = obj.get("metadata") or {}
        try:
            return resource.create(body=obj, namespace=self._namespace(resource, metadata.get("namespace"))).to_dict()
        except ApiException as exc:
            raise translate_api_exception(exc, "create", obj["kind"], metadata.get("name", "")) from exc

    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        resource = self._resource(obj["apiVersion"], obj["kind"])
        metadata = obj.get("metadata") or {}
        try:
            return resource.replace(body=obj, namespace=self._namespace(resource, metadata.get("namespace"))).to_dict()
        except ApiException as exc:
            raise translate_api_exception(exc, "update", obj["kind"], metadata.get("name", "")) from exc

    def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        resource = self._resource(obj["apiVersion"], obj["kind"])
        metadata = obj.get("metadata") or {}
        try:
            return resource.status.replace(
                body=obj, namespace=self._namespace(resource, metadata.get("namespace"))
            ).to_dict()
        except ApiException as exc:
            raise translate_api_exception(exc, "update status of", obj["kind"], metadata.get("name", "")) from exc

    def patch(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str],
        name: str,
        patch: Any,
        patch_type: str = PATCH_TYPE_MERGE,
    ) -> Dict[str, Any]:
        resource = self._resource(api_version, kind)
        try:
            return resource.patch(
                body=patch,
                name=name,
                namespace=self._namespace(resource, namespace),
                content_type=patch_type,
            ).to_dict()
        except ApiException as exc:
            raise translate_api_exception(exc, "patch", kind, name) from exc

    def delete(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str],
        name: str,
        propagation: str = PROPAGATION_BACKGROUND,
    ) -> None:
        resource = self._resource(api_version, kind)
        body = {"apiVersion": "v1", "kind": "DeleteOptions", "propagationPolicy": propagation}
        try:
            resource.delete(name=name, namespace=self._namespace(resource, namespace), body=body)
        except ApiException as exc:
            raise translate_api_exception(exc, "delete", kind, name) from exc

    def served_version(self, group: str, kind: str) -> Optional[str]:
        found = self.client.resources.search(group=group, kind=kind)
        if not found:
            return None
        return found[0].api_version

    def is_namespaced(self, api_version: str, kind: str) -> bool:
        return bool(self._resource(api_version, kind).namespaced)


def connect(kubeconfig: Optional[str] = None, context: Optional[str] = None) -> KubernetesObjectStore:
    load_cluster_config(kubeconfig, context)
    return KubernetesObjectStore()


__all__ = ["KubernetesObjectStore", "connect", "load_cluster_config", "translate_api_exception"]
