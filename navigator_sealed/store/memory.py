"""In-memory object store with integer version tokens."""
import asyncio
import logging
from typing import Optional

from ..data import ObjectRef, SealedObject
from ..exceptions import ConflictError, NotFoundError
from .abstract import AbstractObjectStore

logger = logging.getLogger("navigator.sealed")


class MemoryObjectStore(AbstractObjectStore):
    """Process-local store. Documents are copied in and out so callers never
    share state with the store.
    """

    name: str = "memory"

    def __init__(self) -> None:
        self._docs: dict[ObjectRef, dict] = {}
        self._counter = 0
        self._lock = asyncio.Lock()
        self.updates: list[ObjectRef] = []  # successful updates, in order

    def _next_version(self) -> str:
        self._counter += 1
        return str(self._counter)

    def _load(self, ref: ObjectRef) -> SealedObject:
        return SealedObject.from_dict(self._docs[ref])

    async def list(self, namespace: Optional[str] = None) -> list[SealedObject]:
        async with self._lock:
            return [
                self._load(ref) for ref in sorted(self._docs)
                if namespace is None or ref.namespace == namespace
            ]

    async def get(self, namespace: str, name: str) -> SealedObject:
        ref = ObjectRef(namespace, name)
        async with self._lock:
            if ref not in self._docs:
                raise NotFoundError(f"{ref} not found")
            return self._load(ref)

    async def create(self, obj: SealedObject) -> str:
        async with self._lock:
            if obj.ref in self._docs:
                raise ConflictError(f"{obj.ref} already exists")
            version = self._next_version()
            self._store(obj, version)
        return version

    async def update(self, obj: SealedObject, expected_version: str) -> str:
        async with self._lock:
            current = self._docs.get(obj.ref)
            if current is None:
                raise NotFoundError(f"{obj.ref} not found")
            stored = current['metadata'].get('resourceVersion')
            if stored != expected_version:
                raise ConflictError(
                    f"{obj.ref} changed: expected version {expected_version}, found {stored}"
                )
            version = self._next_version()
            self._store(obj, version)
            self.updates.append(obj.ref)
        logger.debug("Updated %s to version %s", obj.ref, version)
        return version

    async def delete(self, namespace: str, name: str) -> None:
        async with self._lock:
            self._docs.pop(ObjectRef(namespace, name), None)

    def _store(self, obj: SealedObject, version: str) -> None:
        doc = obj.to_dict()
        doc['metadata']['resourceVersion'] = version
        self._docs[obj.ref] = doc
