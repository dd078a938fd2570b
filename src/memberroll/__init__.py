"""Member-roll reconciliation and per-namespace mesh membership."""

from .namespace_reconciler import NamespaceReconciler
from .networking import (
    MultitenantStrategy,
    NetworkPolicyStrategy,
    NetworkingStrategy,
    NoOpStrategy,
    select_networking_strategy,
)
from .reconciler import MemberRollReconciler

__all__ = [
    "MemberRollReconciler",
    "MultitenantStrategy",
    "NamespaceReconciler",
    "NetworkPolicyStrategy",
    "NetworkingStrategy",
    "NoOpStrategy",
    "select_networking_strategy",
]
