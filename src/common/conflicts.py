"""Requeue instead of failing when a reconcile loses an optimistic-concurrency race."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from src.common.errors import AggregateError, ConflictError, iter_causes

LOG = logging.getLogger(__name__)

DEFAULT_REQUEUE_AFTER = 5.0


@dataclass(frozen=True)
class ReconcileResult:
    requeue: bool = False
    requeue_after: float = 0.0


def is_conflict_only(err: Optional[BaseException]) -> bool:
    """Return True if ``err`` is a conflict, possibly wrapped or aggregated.

    An aggregate qualifies only when every error it carries is a conflict.
    """
    if err is None:
        return False
    for cause in iter_causes(err):
        if isinstance(cause, ConflictError):
            return True
        if isinstance(cause, AggregateError):
            flat = cause.flatten()
            return bool(flat) and all(is_conflict_only(item) for item in flat)
    return False


class ConflictHandlingReconciler:
    """Wraps a ``reconcile(request) -> ReconcileResult`` callable.

    Conflicts are expected when several writers race on the same object, so
    they are turned into a delayed requeue instead of an error. Every other
    exception propagates unchanged.
    """

    def __init__(
        self,
        reconcile: Callable[[Any], ReconcileResult],
        requeue_after: float = DEFAULT_REQUEUE_AFTER,
    ) -> None:
        self._reconcile = reconcile
        self.requeue_after = requeue_after

    def reconcile(self, request: Any) -> ReconcileResult:
        try:
            return self._reconcile(request)
        except Exception as exc:
            if not is_conflict_only(exc):
                raise
            LOG.debug("conflict during reconcile of %s, requeueing: %s", request, exc)
            return ReconcileResult(requeue=True, requeue_after=self.requeue_after)


__all__ = [
    "ConflictHandlingReconciler",
    "DEFAULT_REQUEUE_AFTER",
    "ReconcileResult",
    "is_conflict_only",
]
