"""Object-store interface and its in-memory implementation."""

from .client import ObjectStore
from .fake import FakeObjectStore

__all__ = ["FakeObjectStore", "ObjectStore"]
