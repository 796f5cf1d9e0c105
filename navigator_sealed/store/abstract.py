"""Object Store Adapter contract.

Versioned storage for SealedObjects. The version token returned by the store
is the only concurrency control used when re-encrypting: ``update`` succeeds
only when the stored version still equals ``expected_version``.
"""
from abc import ABC, abstractmethod
from typing import Optional

from ..data import SealedObject


class AbstractObjectStore(ABC):
    """Base class for sealed object storage backends."""

    name: str = "abstract"

    @abstractmethod
    async def list(self, namespace: Optional[str] = None) -> list[SealedObject]:
        """List sealed objects, each carrying its current version token.

        Args:
            namespace: Restrict to one namespace; None lists all namespaces.

        Raises:
            TransientError: If the store is temporarily unavailable.
        """

    @abstractmethod
    async def get(self, namespace: str, name: str) -> SealedObject:
        """Fetch the current version of one object.

        Raises:
            NotFoundError: If the object does not exist.
        """

    @abstractmethod
    async def create(self, obj: SealedObject) -> str:
        """Store a new object and return its version token.

        Raises:
            ConflictError: If the object already exists.
        """

    @abstractmethod
    async def update(self, obj: SealedObject, expected_version: str) -> str:
        """Replace an object if its stored version equals expected_version.

        Returns:
            The new version token.

        Raises:
            ConflictError: If the stored version changed.
            NotFoundError: If the object was deleted.
        """

    async def close(self) -> None:
        return None
