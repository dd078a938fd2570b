from __future__ import annotations

import logging
from typing import Iterable, List

from src.common.document import Document
from src.common.errors import ReconcileError, is_no_kind_match, is_not_found
from src.kube.client import PATCH_TYPE_MERGE, ObjectStore

LOG = logging.getLogger(__name__)

KIALI_API_VERSION = "kiali.io/v1alpha1"
DEFAULT_KIALI_NAME = "kiali"


class KialiReconciler:
    """Keeps Kiali's accessible namespaces in line with the mesh members."""

    def __init__(self, store: ObjectStore) -> None:
        self.store = store

    def reconcile_kiali(self, name: str, namespace: str, accessible_namespaces: Iterable[str]) -> bool:
        """Return True when the Kiali resource was patched."""
        wanted: List[str] = sorted(set(accessible_namespaces))
        try:
            kiali = Document(self.store.get(KIALI_API_VERSION, "Kiali", namespace, name))
        except ReconcileError as exc:
            if is_no_kind_match(exc) or is_not_found(exc):
                LOG.info("Kiali %s/%s does not exist, Kiali probably not enabled", namespace, name)
                return False
            raise ReconcileError("error retrieving Kiali CR from mesh") from exc

        existing = kiali.get_list("spec.deployment.accessible_namespaces")
        if existing is not None and sorted(set(existing)) == wanted:
            LOG.debug("Kiali %s/%s accessible namespaces already up to date", namespace, name)
            return False

        LOG.info("updating accessible namespaces of Kiali %s/%s to %s", namespace, name, wanted)
        patch = {"spec": {"deployment": {"accessible_namespaces": wanted}}}
        try:
            self.store.patch(KIALI_API_VERSION, "Kiali", namespace, name, patch, patch_type=PATCH_TYPE_MERGE)
        except ReconcileError as exc:
            if is_no_kind_match(exc) or is_not_found(exc):
                LOG.info("skipping Kiali update, %s/%s is no longer available", namespace, name)
                return False
            raise ReconcileError(
                "cannot update Kiali CR %s/%s with new accessible namespaces" % (namespace, name)
            ) from exc
        return True


__all__ = ["DEFAULT_KIALI_NAME", "KIALI_API_VERSION", "KialiReconciler"]
