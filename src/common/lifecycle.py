"""Finalizer-driven object lifecycle.

An object managed by a reconciler is in one of three states:

* ``ACTIVE``: not being deleted;
* ``FINALIZING``: deletion was requested and our finalizer still blocks it;
* ``GONE``: deletion was requested and our finalizer is already removed.
"""

from __future__ import annotations

import enum
import logging
from typing import Callable, Tuple

from src.common.document import Document
from src.common.errors import ReconcileError, is_conflict, is_not_found
from src.kube.client import ObjectStore

LOG = logging.getLogger(__name__)


class Lifecycle(enum.Enum):
    ACTIVE = "Active"
    FINALIZING = "Finalizing"
    GONE = "Gone"


def lifecycle_of(doc: Document, finalizer: str) -> Lifecycle:
    if not doc.deletion_timestamp:
        return Lifecycle.ACTIVE
    if finalizer in doc.finalizers:
        return Lifecycle.FINALIZING
    return Lifecycle.GONE


def add_finalizer(doc: Document, finalizer: str) -> bool:
    """Transition hook for first sight of an active object."""
    finalizers = doc.finalizers
    if finalizer in finalizers:
        return False
    doc.finalizers = sorted(set(finalizers) | {finalizer})
    return True


def remove_finalizer(doc: Document, finalizer: str) -> bool:
    """Transition FINALIZING -> GONE once cleanup has completed."""
    finalizers = doc.finalizers
    if finalizer not in finalizers:
        return False
    doc.finalizers = sorted(set(finalizers) - {finalizer})
    return True


def handle_finalization(
    store: ObjectStore,
    doc: Document,
    finalizer: str,
    finalize: Callable[[Document], bool],
) -> Tuple[bool, Lifecycle]:
    """Run the finalizer protocol for ``doc``.

    Returns ``(continue_reconciliation, state)``. ``finalize`` is called while
    FINALIZING and returns whether the finalizer may be removed.
    """
    state = lifecycle_of(doc, finalizer)
    if state is Lifecycle.GONE:
        LOG.info("ignoring deleted %s %s/%s with no finalizer", doc.kind, doc.namespace, doc.name)
        return False, state

    if state is Lifecycle.FINALIZING:
        if not finalize(doc):
            return False, state
        try:
            fresh = Document(store.get(doc.api_version, doc.kind, doc.namespace, doc.name))
        except ReconcileError as exc:
            if is_not_found(exc):
                return False, Lifecycle.GONE
            raise
        if remove_finalizer(fresh, finalizer):
            LOG.info("removing finalizer from %s %s/%s", doc.kind, doc.namespace, doc.name)
            try:
                store.update(fresh.obj)
            except ReconcileError as exc:
                # a stale instance or an object that is already gone; the
                # next watch event finishes the job
                if is_not_found(exc) or is_conflict(exc):
                    return False, Lifecycle.GONE
                raise ReconcileError(
                    "Could not remove finalizer from %s/%s" % (doc.namespace, doc.name)
                ) from exc
        return False, Lifecycle.GONE

    if add_finalizer(doc, finalizer):
        LOG.info("adding finalizer to %s %s/%s", doc.kind, doc.namespace, doc.name)
        try:
            updated = store.update(doc.obj)
        except ReconcileError as exc:
            if is_not_found(exc) or is_conflict(exc):
                return False, state
            raise
        doc.obj = updated
    return True, state


__all__ = [
    "Lifecycle",
    "add_finalizer",
    "handle_finalization",
    "lifecycle_of",
    "remove_finalizer",
]
