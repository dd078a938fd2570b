"""Error taxonomy shared by the object store and the reconcilers.

Reconcilers distinguish a handful of expected failure classes: objects that
are already gone, optimistic-concurrency conflicts, kinds the cluster does not
serve and structurally invalid writes. Everything else is collected into an
:class:`AggregateError` so sibling objects keep converging.
"""

from __future__ import annotations

from typing import Iterator, List, Optional, Sequence, Type


class ReconcileError(Exception):
    """Base class for errors raised while reconciling cluster state."""


class NotFoundError(ReconcileError):
    """Raised when the requested object does not exist."""


class GoneError(NotFoundError):
    """Raised when the requested object or version is no longer available."""


class ConflictError(ReconcileError):
    """Raised when a write loses an optimistic-concurrency race."""


class AlreadyExistsError(ReconcileError):
    """Raised when creating an object whose name is already taken."""


class InvalidError(ReconcileError):
    """Raised when the API server rejects an object as structurally invalid."""


class NoKindMatchError(ReconcileError):
    """Raised when the cluster does not serve the requested kind."""


class PreconditionError(ReconcileError):
    """Raised when a merge patch would change an object's identity."""


class NamespaceTerminatingError(ReconcileError):
    """Raised when a namespace is being deleted and cannot be reconciled."""


class MembershipConflictError(ReconcileError):
    """Raised when a namespace already belongs to a different mesh."""


class AggregateError(ReconcileError):
    """Carries every failure of a best-effort batch operation."""

    def __init__(self, errors: Sequence[Exception]) -> None:
        self.errors: List[Exception] = list(errors)
        super().__init__(self._format())

    def _format(self) -> str:
        messages = [str(err) for err in self.errors]
        if len(messages) == 1:
            return messages[0]
        return "[" + ", ".join(messages) + "]"

    def flatten(self) -> List[Exception]:
        flat: List[Exception] = []
        for err in self.errors:
            if isinstance(err, AggregateError):
                flat.extend(err.flatten())
            else:
                flat.append(err)
        return flat

    @classmethod
    def from_list(cls, errors: Sequence[Exception]) -> Optional[Exception]:
        """Return ``None``, the single error, or an aggregate of all of them."""
        errors = [err for err in errors if err is not None]
        if not errors:
            return None
        if len(errors) == 1:
            return errors[0]
        return cls(errors)


def iter_causes(err: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def _matches(err: Optional[BaseException], kind: Type[BaseException]) -> bool:
    if err is None:
        return False
    return any(isinstance(cause, kind) for cause in iter_causes(err))


def is_not_found(err: Optional[BaseException]) -> bool:
    return _matches(err, NotFoundError)


def is_conflict(err: Optional[BaseException]) -> bool:
    return _matches(err, ConflictError)


def is_no_kind_match(err: Optional[BaseException]) -> bool:
    return _matches(err, NoKindMatchError)


def is_invalid(err: Optional[BaseException]) -> bool:
    return _matches(err, InvalidError)


def ignore_not_found(err: Optional[Exception]) -> Optional[Exception]:
    """Drop ``err`` if it only says the object is already absent."""
    if is_not_found(err):
        return None
    return err


__all__ = [
    "AggregateError",
    "AlreadyExistsError",
    "ConflictError",
    "GoneError",
    "InvalidError",
    "MembershipConflictError",
    "NamespaceTerminatingError",
    "NoKindMatchError",
    "NotFoundError",
    "PreconditionError",
    "ReconcileError",
    "ignore_not_found",
    "iter_causes",
    "is_conflict",
    "is_invalid",
    "is_no_kind_match",
    "is_not_found",
]
