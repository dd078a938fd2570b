"""Manifest processing and three-way patching of rendered objects."""

from .patch import Patch, PatchFactory
from .processor import ManifestProcessor, ProcessingStats

__all__ = [
    "ManifestProcessor",
    "Patch",
    "PatchFactory",
    "ProcessingStats",
]
