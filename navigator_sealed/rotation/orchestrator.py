"""
Re-encryption Orchestrator — migrates sealed objects onto the active key.

Lists sealed objects, skips those already sealed with the active key, and
runs every other object through decrypt → reseal → conditional update on a
bounded pool of asyncio workers. The operation is idempotent: a second run
over migrated objects reports every object skipped and performs no update.

Failure handling per object:
    - Conflict: re-fetch and retry up to ``max_conflict_retries``.
    - Transient: exponential backoff up to ``max_transient_retries``.
    - UnknownKey / NoMatchingKey / Tampered / Forbidden: never retried.
    - Deleted between listing and update: skipped.
    - FatalError and unexpected errors abort the run unless ``force`` is set.

Security Note:
    Plaintext exists in memory only while an object is being re-sealed.
    Never log plaintext or ciphertext values.
"""
import random
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ..crypto.config import SealerConfig
from ..crypto.engine import Envelope, seal
from ..crypto.registry import PublicKeyInfo
from ..data import SealedObject
from ..exceptions import (
    CancelledRunError,
    ConflictError,
    FatalError,
    NotFoundError,
    SealedError,
    TransientError,
)
from ..boundary.service import Unsealer
from ..store.abstract import AbstractObjectStore
from .backup import BackupSink
from .jobs import JobState, ReencryptionJob
from .limiter import RateLimiter, cancellable_sleep
from .report import OutcomeStatus, Report, ReportBuilder

logger = logging.getLogger("navigator.sealed")


@dataclass
class _Run:
    """Run-scoped flags shared by the workers."""
    cancel: asyncio.Event
    dry_run: bool = False
    force: bool = False
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    abort_reason: Optional[str] = None

    @property
    def stopped(self) -> bool:
        return self.stop.is_set() or self.cancel.is_set()

    def abort(self, reason: str) -> None:
        if self.abort_reason is None:
            self.abort_reason = reason
        self.stop.set()

    def check_cancel(self) -> None:
        if self.cancel.is_set():
            raise CancelledRunError("Run cancelled before the object was updated")


class Reencryptor:
    """Drives bulk re-encryption of sealed objects.

    Args:
        store: Object store holding the sealed objects.
        unsealer: Unseal boundary (local or remote); the orchestrator never
            holds private keys.
        keys: Source of the active public key (a KeyRegistry or a
            StaticKeySource).
        config: Concurrency, rate and retry settings.
        backup: Optional sink receiving each object before it is overwritten.
        limiter: Rate limiter for store requests; built from config if omitted.
    """

    def __init__(
        self,
        store: AbstractObjectStore,
        unsealer: Unsealer,
        keys: Any,
        config: Optional[SealerConfig] = None,
        backup: Optional[BackupSink] = None,
        limiter: Optional[RateLimiter] = None,
    ) -> None:
        self._store = store
        self._unsealer = unsealer
        self._keys = keys
        self._config = config or SealerConfig()
        self._backup = backup
        self._limiter = limiter or RateLimiter(
            self._config.rate_limit, self._config.rate_burst,
        )

    @property
    def config(self) -> SealerConfig:
        return self._config

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self,
        namespace: Optional[str] = None,
        *,
        dry_run: bool = False,
        force: bool = False,
        cancel: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> Report:
        """Re-encrypt every sealed object in namespace (all when None).

        Returns:
            Finalized Report. A Fatal listing failure or cancellation yields
            an aborted report covering the objects processed so far.
        """
        run = _Run(cancel=cancel or asyncio.Event(), dry_run=dry_run, force=force)
        builder = ReportBuilder(dry_run=dry_run)
        timer = None
        if timeout:
            timer = asyncio.get_running_loop().call_later(
                timeout, self._on_timeout, run,
            )
        logger.info(
            "Starting re-encryption: namespace=%s dry_run=%s force=%s concurrency=%d",
            namespace or "<all>", dry_run, force, self._config.concurrency,
        )
        try:
            await self._execute(namespace, run, builder)
        finally:
            if timer is not None:
                timer.cancel()
        if run.cancel.is_set() and run.abort_reason is None:
            run.abort_reason = "cancelled"
        report = builder.finalize(
            aborted=run.abort_reason is not None, abort_reason=run.abort_reason,
        )
        logger.info(
            "Re-encryption finished: %s%s",
            report.counters,
            f" (aborted: {report.abort_reason})" if report.aborted else "",
        )
        return report

    def _on_timeout(self, run: _Run) -> None:
        logger.warning("Re-encryption run timed out; cancelling")
        if run.abort_reason is None:
            run.abort_reason = "timeout"
        run.cancel.set()

    async def _execute(self, namespace: Optional[str], run: _Run, builder: ReportBuilder) -> None:
        try:
            objects = await self._list(namespace, run)
            active = self._keys.active_public()
        except CancelledRunError:
            return
        except SealedError as err:
            logger.error("Cannot list sealed objects: %s", err)
            run.abort(f"{FatalError.category}: cannot list sealed objects: {err}")
            return
        except Exception as err:  # pylint: disable=W0703
            logger.exception("Unexpected error listing sealed objects")
            run.abort(
                f"{FatalError.category}: cannot list sealed objects: "
                f"{type(err).__name__}: {err}"
            )
            return

        queue: asyncio.Queue[ReencryptionJob] = asyncio.Queue()
        seen = set()
        for obj in objects:
            if obj.ref in seen:
                continue
            seen.add(obj.ref)
            if not len(obj):
                await builder.add(
                    obj.namespace, obj.name, OutcomeStatus.SKIPPED,
                    "no encrypted data",
                )
            elif not obj.outdated(active.id):
                await builder.add(
                    obj.namespace, obj.name, OutcomeStatus.SKIPPED,
                    f"already sealed with key {active.id}",
                )
            else:
                queue.put_nowait(ReencryptionJob(obj))

        logger.info(
            "Listed %d sealed object(s), %d need re-encryption",
            len(seen), queue.qsize(),
        )
        workers = [
            asyncio.create_task(self._worker(queue, run, builder))
            for _ in range(min(self._config.concurrency, queue.qsize()))
        ]
        if workers:
            await asyncio.gather(*workers)

    async def _worker(self, queue: asyncio.Queue, run: _Run, builder: ReportBuilder) -> None:
        while not run.stopped:
            try:
                job = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._process(job, run, builder)
            finally:
                queue.task_done()

    async def _process(self, job: ReencryptionJob, run: _Run, builder: ReportBuilder) -> None:
        ref = job.ref
        try:
            status, detail = await self._migrate(job, run)
        except FatalError as err:
            logger.error("Fatal error re-encrypting %s: %s", ref, err)
            await self._fatal(job, run, builder, str(err), err)
            return
        except SealedError as err:
            job.fail(err)
            logger.warning(
                "Re-encryption of %s failed: %s (%s)", ref, err.category, err,
            )
            await builder.add(
                ref.namespace, ref.name, OutcomeStatus.FAILED,
                str(err), category=err.category, attempts=job.attempts,
            )
            return
        except Exception as err:  # pylint: disable=W0703
            logger.exception("Unexpected error re-encrypting %s", ref)
            await self._fatal(job, run, builder, f"{type(err).__name__}: {err}", err)
            return
        await builder.add(
            ref.namespace, ref.name, status, detail, attempts=job.attempts,
        )

    async def _fatal(
        self,
        job: ReencryptionJob,
        run: _Run,
        builder: ReportBuilder,
        detail: str,
        err: Exception,
    ) -> None:
        ref = job.ref
        job.fail(err)
        await builder.add(
            ref.namespace, ref.name, OutcomeStatus.FAILED, detail,
            category=FatalError.category, attempts=job.attempts,
        )
        if not run.force:
            run.abort(f"{FatalError.category}: {detail} on {ref}")

    # ------------------------------------------------------------------
    # One object
    # ------------------------------------------------------------------

    async def _migrate(self, job: ReencryptionJob, run: _Run) -> tuple[OutcomeStatus, str]:
        # one key snapshot per job, even if the registry rotates mid-run
        key = self._keys.active_public()
        obj = job.obj
        conflicts = 0
        while True:
            stale = obj.outdated(key.id)
            if not stale:
                job.transition(JobState.DONE)
                return OutcomeStatus.SKIPPED, f"already sealed with key {key.id}"
            job.attempts += 1
            updated = await self._reseal(job, obj, stale, key, run)

            if run.dry_run:
                job.transition(JobState.DONE)
                return (
                    OutcomeStatus.SUCCEEDED,
                    f"dry-run: would re-encrypt fields {sorted(stale)} with key {key.id}",
                )

            run.check_cancel()
            job.transition(JobState.UPDATING)
            if self._backup is not None:
                await self._backup.save(obj)
            run.check_cancel()
            retries_before = job.attempts
            try:
                version = await self._store_call(
                    job, run, self._store.update, updated, obj.version,
                )
            except NotFoundError:
                job.transition(JobState.DONE)
                return OutcomeStatus.SKIPPED, "deleted"
            except ConflictError:
                # a transient-retried write may have landed before the conflict
                landed = job.attempts > retries_before
                conflicts += 1
                if conflicts > self._config.max_conflict_retries and not landed:
                    raise ConflictError(
                        f"{obj.ref} kept changing; gave up after {conflicts} conflict(s)"
                    ) from None
                logger.info(
                    "Conflict updating %s (attempt %d); re-fetching", obj.ref, conflicts,
                )
                try:
                    obj = await self._store_call(
                        job, run, self._store.get, obj.namespace, obj.name,
                    )
                except NotFoundError:
                    job.transition(JobState.DONE)
                    return OutcomeStatus.SKIPPED, "deleted"
                if landed and not obj.outdated(key.id):
                    job.transition(JobState.DONE)
                    return (
                        OutcomeStatus.SUCCEEDED,
                        f"re-encrypted {len(stale)} field(s) with key {key.id}",
                    )
                if conflicts > self._config.max_conflict_retries:
                    raise ConflictError(
                        f"{obj.ref} kept changing; gave up after {conflicts} conflict(s)"
                    ) from None
                continue
            job.transition(JobState.DONE)
            logger.debug("Re-encrypted %s (version %s)", obj.ref, version)
            return (
                OutcomeStatus.SUCCEEDED,
                f"re-encrypted {len(stale)} field(s) with key {key.id}",
            )

    async def _reseal(
        self,
        job: ReencryptionJob,
        obj: SealedObject,
        stale: list[str],
        key: PublicKeyInfo,
        run: _Run,
    ) -> SealedObject:
        """New version of obj with every stale field sealed under key.

        All fields are unsealed before anything is re-sealed; a failure on any
        field leaves the object untouched.
        """
        job.transition(JobState.DECRYPTING)
        claim = obj.claim()
        label = claim.label()
        plaintexts: dict[str, bytes] = {}
        try:
            for field_name in stale:
                envelope = obj[field_name]
                plaintexts[field_name] = await self._with_retries(
                    job, run, self._unsealer.unseal, envelope, claim,
                )
            job.transition(JobState.RESEALING)
            sealed: dict[str, Envelope] = {
                name: seal(value, label, key.public_key)
                for name, value in plaintexts.items()
            }
        finally:
            plaintexts.clear()
        return obj.replace(sealed)

    # ------------------------------------------------------------------
    # Retry helpers
    # ------------------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        delay = min(self._config.backoff_max, self._config.backoff_base * (2 ** attempt))
        return delay * random.uniform(0.5, 1.0)

    async def _with_retries(self, job: Optional[ReencryptionJob], run: _Run, func, *args):
        attempt = 0
        while True:
            run.check_cancel()
            try:
                return await func(*args)
            except TransientError as err:
                if attempt >= self._config.max_transient_retries:
                    raise TransientError(
                        f"gave up after {attempt + 1} attempt(s): {err}"
                    ) from err
                delay = self._backoff(attempt)
                attempt += 1
                if job is not None:
                    job.attempts += 1
                logger.info(
                    "Transient error (%s); retry %d in %.2fs", err, attempt, delay,
                )
                await cancellable_sleep(delay, run.cancel)

    async def _store_call(self, job: Optional[ReencryptionJob], run: _Run, func, *args):
        async def limited(*a):
            await self._limiter.acquire(run.cancel)
            return await func(*a)
        return await self._with_retries(job, run, limited, *args)

    async def _list(self, namespace: Optional[str], run: _Run) -> list[SealedObject]:
        return await self._store_call(None, run, self._store.list, namespace)
