"""
Filesystem object store — one JSON document per sealed object.

Layout:
    <root>/<namespace>/<name>.json

The version token is ``metadata.resourceVersion``, an integer incremented on
every write. Compare-and-swap is serialized by an asyncio lock, so a single
process owns the directory; writes are atomic (temp file + rename).
A document that cannot be decoded raises ``FatalError``.
"""
import os
import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Optional, Union

import orjson

from ..data import SealedObject
from ..exceptions import ConflictError, FatalError, NotFoundError, TransientError
from .abstract import AbstractObjectStore

logger = logging.getLogger("navigator.sealed")


class FilesystemObjectStore(AbstractObjectStore):
    name: str = "filesystem"

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)
        self._lock = asyncio.Lock()

    def _path(self, namespace: str, name: str) -> Path:
        for part in (namespace, name):
            if not part or "/" in part or part in (".", ".."):
                raise ValueError(f"Invalid object identifier: {part!r}")
        return self.root / namespace / f"{name}.json"

    def _read(self, path: Path) -> SealedObject:
        try:
            return SealedObject.from_json(path.read_bytes())
        except FileNotFoundError:
            raise
        except OSError as err:
            raise TransientError(f"Cannot read {path}: {err}") from err
        except (ValueError, TypeError, AttributeError) as err:
            raise FatalError(f"Malformed sealed object {path}: {err}") from err

    def _write(self, obj: SealedObject, version: int) -> str:
        path = self._path(obj.namespace, obj.name)
        doc = obj.to_dict()
        doc['metadata']['resourceVersion'] = str(version)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(orjson.dumps(doc, option=orjson.OPT_INDENT_2))
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as err:
            raise TransientError(f"Cannot write {path}: {err}") from err
        return str(version)

    def _list_sync(self, namespace: Optional[str]) -> list[SealedObject]:
        if not self.root.is_dir():
            return []
        if namespace is not None:
            folders = [self.root / namespace]
        else:
            folders = sorted(p for p in self.root.iterdir() if p.is_dir())
        objects = []
        for folder in folders:
            if not folder.is_dir():
                continue
            for path in sorted(folder.glob("*.json")):
                objects.append(self._read(path))
        return objects

    def _get_sync(self, namespace: str, name: str) -> SealedObject:
        try:
            return self._read(self._path(namespace, name))
        except FileNotFoundError:
            raise NotFoundError(f"{namespace}/{name} not found") from None

    def _create_sync(self, obj: SealedObject) -> str:
        if self._path(obj.namespace, obj.name).exists():
            raise ConflictError(f"{obj.ref} already exists")
        return self._write(obj, 1)

    def _update_sync(self, obj: SealedObject, expected_version: str) -> str:
        current = self._get_sync(obj.namespace, obj.name)
        if current.version != expected_version:
            raise ConflictError(
                f"{obj.ref} changed: expected version {expected_version}, "
                f"found {current.version}"
            )
        return self._write(obj, int(current.version or 0) + 1)

    async def list(self, namespace: Optional[str] = None) -> list[SealedObject]:
        try:
            return await asyncio.to_thread(self._list_sync, namespace)
        except OSError as err:
            raise TransientError(f"Cannot list {self.root}: {err}") from err

    async def get(self, namespace: str, name: str) -> SealedObject:
        return await asyncio.to_thread(self._get_sync, namespace, name)

    async def create(self, obj: SealedObject) -> str:
        async with self._lock:
            return await asyncio.to_thread(self._create_sync, obj)

    async def update(self, obj: SealedObject, expected_version: str) -> str:
        async with self._lock:
            version = await asyncio.to_thread(self._update_sync, obj, expected_version)
        logger.debug("Updated %s to version %s", obj.ref, version)
        return version
