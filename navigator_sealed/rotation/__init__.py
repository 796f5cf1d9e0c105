"""Re-encryption of sealed objects after key rotation."""

from .backup import BackupSink, DirectoryBackup, MemoryBackup, restore, snapshot
from .jobs import JobState, ReencryptionJob
from .limiter import RateLimiter, cancellable_sleep
from .orchestrator import Reencryptor
from .report import (
    EXIT_ABORTED,
    EXIT_FAILURES,
    EXIT_OK,
    OutcomeStatus,
    Report,
    ReportBuilder,
    ReportEntry,
)

__all__ = [
    "BackupSink",
    "DirectoryBackup",
    "MemoryBackup",
    "restore",
    "snapshot",
    "JobState",
    "ReencryptionJob",
    "RateLimiter",
    "cancellable_sleep",
    "Reencryptor",
    "EXIT_ABORTED",
    "EXIT_FAILURES",
    "EXIT_OK",
    "OutcomeStatus",
    "Report",
    "ReportBuilder",
    "ReportEntry",
]
