"""Object Store Adapters for sealed objects."""

from .abstract import AbstractObjectStore
from .memory import MemoryObjectStore
from .filesystem import FilesystemObjectStore

__all__ = [
    "AbstractObjectStore",
    "MemoryObjectStore",
    "FilesystemObjectStore",
]
