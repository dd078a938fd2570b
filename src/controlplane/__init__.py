"""Control-plane reconciliation: ordered component install, pruning and readiness."""

from .pruner import DELETE_ALL, Pruner
from .readiness import ReadinessAggregator
from .reconciler import ControlPlaneController, ControlPlaneReconciler
from .rendering import DirectoryRenderer, charts_in_installation_order

__all__ = [
    "ControlPlaneController",
    "ControlPlaneReconciler",
    "DELETE_ALL",
    "DirectoryRenderer",
    "Pruner",
    "ReadinessAggregator",
    "charts_in_installation_order",
]
