"""Backup of sealed objects before they are overwritten.

A failed backup aborts that object's update.
"""
import os
import asyncio
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

from ..data import BackupRecord, SealedObject
from ..exceptions import BackupError

logger = logging.getLogger("navigator.sealed")


def snapshot(obj: SealedObject) -> BackupRecord:
    return BackupRecord(
        namespace=obj.namespace,
        name=obj.name,
        version=obj.version or '',
        taken_at=datetime.now(timezone.utc).isoformat(),
        document=obj.to_dict(),
    )


def restore(record: BackupRecord) -> SealedObject:
    """SealedObject saved in a backup record."""
    return SealedObject.from_dict(record.document)


class BackupSink:
    """Destination for prior versions of sealed objects."""

    async def save(self, obj: SealedObject) -> None:
        raise NotImplementedError


class MemoryBackup(BackupSink):

    def __init__(self) -> None:
        self.records: list[BackupRecord] = []

    async def save(self, obj: SealedObject) -> None:
        self.records.append(snapshot(obj))


class DirectoryBackup(BackupSink):
    """Writes ``<root>/<namespace>/<name>@<version>.json`` (jsonpickle)."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def path_for(self, obj: SealedObject) -> Path:
        return self.root / obj.namespace / f"{obj.name}@{obj.version or 0}.json"

    def _write(self, obj: SealedObject) -> Path:
        target = self.path_for(obj)
        data = obj.encode(snapshot(obj)).encode("utf-8")
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, target)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        return target

    async def save(self, obj: SealedObject) -> None:
        try:
            target = await asyncio.to_thread(self._write, obj)
        except (OSError, RuntimeError) as err:
            raise BackupError(f"Backup of {obj.ref} failed: {err}") from err
        logger.debug("Backed up %s to %s", obj.ref, target)

    def load(self, path: Union[str, Path]) -> BackupRecord:
        return SealedObject.decode(Path(path).read_text(encoding="utf-8"))
