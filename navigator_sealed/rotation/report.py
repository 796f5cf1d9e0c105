"""
Re-encryption report — one outcome per processed object plus run totals.

Exit codes:
    0  every processed object succeeded or was skipped
    1  the run completed with failures
    2  the run was aborted before completion
"""
import asyncio
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import orjson
from datamodel import BaseModel

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_ABORTED = 2


class OutcomeStatus(str, Enum):
    SKIPPED = 'skipped'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


class ReportEntry(BaseModel):
    """Outcome of one object."""
    namespace: str
    name: str
    status: str
    detail: str = ''
    category: Optional[str] = None
    attempts: int = 0

    def as_dict(self) -> dict:
        data = {
            'namespace': self.namespace,
            'name': self.name,
            'status': self.status,
            'detail': self.detail,
            'attempts': self.attempts,
        }
        if self.category:
            data['category'] = self.category
        return data


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Report:
    """Finalized result of an orchestrator run."""

    def __init__(
        self,
        entries: list[ReportEntry],
        *,
        dry_run: bool = False,
        aborted: bool = False,
        abort_reason: Optional[str] = None,
        started_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None
    ) -> None:
        self.entries = sorted(entries, key=lambda e: (e.namespace, e.name))
        self.dry_run = dry_run
        self.aborted = aborted
        self.abort_reason = abort_reason
        self.started_at = started_at or _now()
        self.finished_at = finished_at or _now()

    def __repr__(self) -> str:
        return f'<Report {self.counters} aborted={self.aborted}>'

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def entry(self, namespace: str, name: str) -> Optional[ReportEntry]:
        for item in self.entries:
            if item.namespace == namespace and item.name == name:
                return item
        return None

    def with_status(self, status: OutcomeStatus) -> list[ReportEntry]:
        return [e for e in self.entries if e.status == status.value]

    @property
    def counters(self) -> dict[str, int]:
        counts = {
            'processed': len(self.entries),
            'skipped': 0,
            'succeeded': 0,
            'failed': 0,
        }
        for item in self.entries:
            counts[item.status] += 1
        return counts

    @property
    def exit_code(self) -> int:
        if self.aborted:
            return EXIT_ABORTED
        if self.counters['failed']:
            return EXIT_FAILURES
        return EXIT_OK

    def to_dict(self) -> dict:
        return {
            'dry_run': self.dry_run,
            'aborted': self.aborted,
            'abort_reason': self.abort_reason,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat(),
            'totals': self.counters,
            'objects': [e.as_dict() for e in self.entries],
        }

    def to_json(self) -> bytes:
        return orjson.dumps(self.to_dict(), option=orjson.OPT_INDENT_2)

    def write(self, destination: Union[str, Path]) -> Path:
        path = Path(destination)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.to_json())
        return path


class ReportBuilder:
    """Collects outcomes from concurrent workers."""

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run
        self.started_at = _now()
        self._entries: list[ReportEntry] = []
        self._lock = asyncio.Lock()

    async def add(
        self,
        namespace: str,
        name: str,
        status: OutcomeStatus,
        detail: str = '',
        category: Optional[str] = None,
        attempts: int = 0
    ) -> ReportEntry:
        item = ReportEntry(
            namespace=namespace,
            name=name,
            status=status.value,
            detail=detail,
            category=category,
            attempts=attempts,
        )
        async with self._lock:
            self._entries.append(item)
        return item

    def finalize(self, aborted: bool = False, abort_reason: Optional[str] = None) -> Report:
        return Report(
            list(self._entries),
            dry_run=self.dry_run,
            aborted=aborted,
            abort_reason=abort_reason,
            started_at=self.started_at,
            finished_at=_now(),
        )
