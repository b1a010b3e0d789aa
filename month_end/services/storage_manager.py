"""Durable, cache-accelerated, batch-writing storage for jobs and timelines.

Layout (SQLAlchemy): ``reconciliation_jobs`` (one row per job, indexed on
district/status/month), ``reconciliation_timelines`` (one header row per job)
and ``reconciliation_entries`` (one row per appended timeline entry).

Write path for jobs:

* ``save_job`` stages a copy in the pending batch. Reads see it immediately.
* The batch is persisted when it reaches ``batch_size``, after
  ``flush_interval_seconds`` (background task), or on ``flush()``.
* The committed LRU cache only ever holds what is durably stored. When every
  write attempt fails the cache is untouched and ``StorageError`` propagates.
  Only the write of the caller that triggered the flush (``save_job`` filling
  the batch, or ``save_job(job, flush=True)``) is withdrawn; every other
  staged write stays pending for the next flush.

Timeline headers and entries are written through immediately. Callers get
deep copies, so mutating a returned model never leaks into the cache.
"""
from __future__ import annotations

import asyncio
import re
import threading
import time
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from month_end.config import STORAGE_SETTINGS
from month_end.errors import StorageError
from month_end.models.db import (
    JobStatus,
    ReconciliationEntryRecord,
    ReconciliationJobRecord,
    ReconciliationTimelineRecord,
)
from month_end.models.schemas import (
    DistrictStatistics,
    JobMetadata,
    JobProgress,
    ReconciliationConfig,
    ReconciliationEntry,
    ReconciliationJob,
    ReconciliationStatus,
    ReconciliationTimeline,
)
from month_end.utils import get_logger, log_performance
from month_end.utils.backoff import retry_async
from month_end.utils.locks import KeyedLocks
from month_end.utils.time import ensure_utc, utc_now

logger = get_logger(__name__)

JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
TRANSIENT_ERRORS = (SQLAlchemyError, OSError)


def validate_job_id(job_id: str) -> None:
    if not isinstance(job_id, str) or not JOB_ID_PATTERN.match(job_id):
        raise ValueError(f"Invalid job id: {job_id!r}")


# ------------------------------ conversions ------------------------------ #

def _job_to_record(job: ReconciliationJob) -> ReconciliationJobRecord:
    return ReconciliationJobRecord(
        id=job.id,
        district_id=job.district_id,
        target_month=job.target_month,
        status=job.status,
        triggered_by=job.triggered_by,
        start_date=job.start_date,
        end_date=job.end_date,
        max_end_date=job.max_end_date,
        current_data_date=job.current_data_date,
        finalized_date=job.finalized_date,
        config=job.config.to_document(),
        extension_days=job.extension_days,
        phase=job.progress.phase,
        completion_percentage=job.progress.completion_percentage,
        created_at=job.metadata.created_at,
        updated_at=job.metadata.updated_at,
    )


def _record_to_job(rec: ReconciliationJobRecord) -> ReconciliationJob:
    return ReconciliationJob(
        id=rec.id,
        district_id=rec.district_id,
        target_month=rec.target_month,
        status=rec.status,
        start_date=ensure_utc(rec.start_date),
        end_date=ensure_utc(rec.end_date),
        max_end_date=ensure_utc(rec.max_end_date),
        current_data_date=ensure_utc(rec.current_data_date),
        finalized_date=ensure_utc(rec.finalized_date),
        config=ReconciliationConfig.model_validate(rec.config),
        triggered_by=rec.triggered_by,
        extension_days=rec.extension_days or 0,
        progress=JobProgress(phase=rec.phase, completion_percentage=rec.completion_percentage or 0.0),
        metadata=JobMetadata(
            created_at=ensure_utc(rec.created_at),
            updated_at=ensure_utc(rec.updated_at),
            triggered_by=rec.triggered_by,
        ),
    )


def _entry_to_record(job_id: str, entry: ReconciliationEntry) -> ReconciliationEntryRecord:
    return ReconciliationEntryRecord(
        job_id=job_id,
        date=entry.date,
        changes=entry.changes.model_dump(mode="json"),
        is_significant=entry.is_significant,
        cache_updated=entry.cache_updated,
        notes=entry.notes,
    )


def _record_to_entry(rec: ReconciliationEntryRecord) -> ReconciliationEntry:
    return ReconciliationEntry(
        date=ensure_utc(rec.date),
        changes=rec.changes,
        is_significant=rec.is_significant,
        cache_updated=rec.cache_updated,
        notes=rec.notes,
    )


def _matches(job: ReconciliationJob, district_id: Optional[str], status: Optional[JobStatus], target_month: Optional[str]) -> bool:
    if district_id is not None and job.district_id != district_id:
        return False
    if status is not None and job.status != status:
        return False
    if target_month is not None and job.target_month != target_month:
        return False
    return True


class ReconciliationStorageManager:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        cache_max_size: Optional[int] = None,
        batch_size: Optional[int] = None,
        flush_interval_seconds: Optional[float] = None,
        max_write_attempts: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self.cache_max_size = int(cache_max_size if cache_max_size is not None else STORAGE_SETTINGS["cache_max_size"])
        self.batch_size = int(batch_size if batch_size is not None else STORAGE_SETTINGS["batch_size"])
        self.flush_interval = float(flush_interval_seconds if flush_interval_seconds is not None else STORAGE_SETTINGS["flush_interval_seconds"])
        self.max_write_attempts = int(max_write_attempts if max_write_attempts is not None else STORAGE_SETTINGS["max_write_attempts"])
        self._clock = clock

        self._job_cache: "OrderedDict[str, ReconciliationJob]" = OrderedDict()
        self._timeline_cache: "OrderedDict[str, ReconciliationTimeline]" = OrderedDict()
        self._pending_jobs: Dict[str, ReconciliationJob] = {}

        self._key_locks = KeyedLocks()
        self._flush_lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None
        # sqlite connections are shared across worker threads
        self._db_lock = threading.Lock()

        self.cache_hits = 0
        self.cache_misses = 0
        self.flush_count = 0

    # ------------------------------ helpers ------------------------------- #
    def _cache_put(self, cache: OrderedDict, key: str, value) -> None:
        cache[key] = value
        cache.move_to_end(key)
        while len(cache) > self.cache_max_size:
            cache.popitem(last=False)

    def _run_db(self, fn: Callable[[Session], object]):
        with self._db_lock, self._session_factory() as session:
            try:
                result = fn(session)
                session.commit()
                return result
            except BaseException:
                session.rollback()
                raise

    async def _db(self, fn: Callable[[Session], object], *, description: str, attempts: Optional[int] = None):
        """Run ``fn`` in a worker thread, retrying transient failures, mapping the last one to StorageError."""
        try:
            return await retry_async(
                lambda: asyncio.to_thread(self._run_db, fn),
                attempts=attempts or self.max_write_attempts,
                retry_on=TRANSIENT_ERRORS,
                description=description,
            )
        except TRANSIENT_ERRORS as exc:
            logger.error("Storage operation failed", operation=description, error=str(exc))
            raise StorageError(f"{description} failed: {exc}") from exc

    # -------------------------------- jobs -------------------------------- #
    async def save_job(self, job: ReconciliationJob, *, flush: bool = False) -> None:
        """Stage ``job`` for the next batch; ``flush=True`` persists it before returning.

        If the flush this call triggers fails, only this job's write is
        withdrawn (a previously staged version of it is restored) and
        ``StorageError`` propagates. Other staged writes stay pending.
        """
        validate_job_id(job.id)
        staged = job.model_copy(deep=True)
        async with self._key_locks.hold(job.id):
            previous = self._pending_jobs.get(job.id)
            self._pending_jobs[job.id] = staged
        if not flush and len(self._pending_jobs) < self.batch_size:
            self._schedule_flush()
            return
        try:
            await self._flush_pending()
        except StorageError:
            self._withdraw(job.id, staged, previous)
            if self._pending_jobs:
                self._schedule_flush()
            raise

    def _withdraw(self, job_id: str, staged: ReconciliationJob, previous: Optional[ReconciliationJob]) -> None:
        # a newer save of the same job made meanwhile is left alone
        if self._pending_jobs.get(job_id) is not staged:
            return
        if previous is None:
            del self._pending_jobs[job_id]
        else:
            self._pending_jobs[job_id] = previous
        logger.warning("Staged job write withdrawn after failed flush", job_id=job_id, restored_previous=previous is not None)

    def _schedule_flush(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            return
        self._flush_task = asyncio.get_running_loop().create_task(self._delayed_flush())

    async def _delayed_flush(self) -> None:
        await asyncio.sleep(self.flush_interval)
        try:
            await self._flush_pending()
        except StorageError as exc:
            logger.error("Background flush failed; writes stay pending", pending=len(self._pending_jobs), error=str(exc))

    async def flush(self) -> int:
        """Persist every pending job write now. Returns the number of jobs written.

        On failure nothing is dropped: the writes stay pending and
        ``StorageError`` propagates.
        """
        return await self._flush_pending()

    async def _flush_pending(self) -> int:
        async with self._flush_lock:
            batch = dict(self._pending_jobs)
            if not batch:
                return 0
            started = time.perf_counter()

            def write(session: Session) -> None:
                for job in batch.values():
                    session.merge(_job_to_record(job))

            await self._db(write, description="flush jobs")

            for job_id, job in batch.items():
                self._cache_put(self._job_cache, job_id, job)
                # a newer save made while flushing stays pending
                if self._pending_jobs.get(job_id) is job:
                    del self._pending_jobs[job_id]
            self.flush_count += 1
            log_performance("storage_flush", (time.perf_counter() - started) * 1000, {"jobs": len(batch)})
            return len(batch)

    async def get_job(self, job_id: str) -> Optional[ReconciliationJob]:
        if not isinstance(job_id, str) or not JOB_ID_PATTERN.match(job_id):
            return None
        pending = self._pending_jobs.get(job_id)
        if pending is not None:
            return pending.model_copy(deep=True)
        cached = self._job_cache.get(job_id)
        if cached is not None:
            self.cache_hits += 1
            self._job_cache.move_to_end(job_id)
            return cached.model_copy(deep=True)
        self.cache_misses += 1

        def load(session: Session) -> Optional[ReconciliationJob]:
            rec = session.get(ReconciliationJobRecord, job_id)
            return _record_to_job(rec) if rec is not None else None

        job = await self._db(load, description="load job")
        if job is None:
            return None
        self._cache_put(self._job_cache, job_id, job)
        return job.model_copy(deep=True)

    async def get_jobs_bulk(self, job_ids: Iterable[str]) -> Dict[str, ReconciliationJob]:
        """Load many jobs in one pass: pending and cached first, one query for the rest."""
        found: Dict[str, ReconciliationJob] = {}
        missing: List[str] = []
        for job_id in dict.fromkeys(job_ids):
            if not isinstance(job_id, str) or not JOB_ID_PATTERN.match(job_id):
                continue
            job = self._pending_jobs.get(job_id) or self._job_cache.get(job_id)
            if job is not None:
                self.cache_hits += 1
                found[job_id] = job.model_copy(deep=True)
            else:
                missing.append(job_id)

        if missing:
            self.cache_misses += len(missing)

            def load_many(session: Session) -> List[ReconciliationJob]:
                stmt = select(ReconciliationJobRecord).where(ReconciliationJobRecord.id.in_(missing))
                return [_record_to_job(rec) for rec in session.scalars(stmt)]

            for job in await self._db(load_many, description="bulk load jobs"):
                self._cache_put(self._job_cache, job.id, job)
                found[job.id] = job.model_copy(deep=True)
        return found

    async def get_jobs(
        self,
        district_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        target_month: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ReconciliationJob]:
        """Index query; pending writes are merged over the durable rows. Newest first."""
        status = JobStatus(status) if status is not None else None

        def query(session: Session) -> List[ReconciliationJob]:
            stmt = select(ReconciliationJobRecord)
            if district_id is not None:
                stmt = stmt.where(ReconciliationJobRecord.district_id == district_id)
            if status is not None:
                stmt = stmt.where(ReconciliationJobRecord.status == status)
            if target_month is not None:
                stmt = stmt.where(ReconciliationJobRecord.target_month == target_month)
            return [_record_to_job(rec) for rec in session.scalars(stmt)]

        jobs = {job.id: job for job in await self._db(query, description="query jobs")}
        for job_id, pending in list(self._pending_jobs.items()):
            if _matches(pending, district_id, status, target_month):
                jobs[job_id] = pending.model_copy(deep=True)
            else:
                jobs.pop(job_id, None)

        ordered = sorted(jobs.values(), key=lambda j: (j.metadata.created_at, j.id), reverse=True)
        return ordered[:limit] if limit is not None else ordered

    async def get_jobs_by_district(self, district_id: str) -> List[ReconciliationJob]:
        return await self.get_jobs(district_id=district_id)

    async def get_jobs_by_status(self, status: JobStatus) -> List[ReconciliationJob]:
        return await self.get_jobs(status=status)

    async def get_all_jobs(self) -> List[ReconciliationJob]:
        return await self.get_jobs()

    async def find_active_job(self, district_id: str, target_month: str) -> Optional[ReconciliationJob]:
        jobs = await self.get_jobs(district_id=district_id, status=JobStatus.ACTIVE, target_month=target_month, limit=1)
        return jobs[0] if jobs else None

    async def delete_job(self, job_id: str) -> bool:
        """Remove a job with its timeline and entries. Returns False when nothing existed."""
        validate_job_id(job_id)
        async with self._key_locks.hold(job_id), self._key_locks.hold(f"timeline:{job_id}"):
            had_pending = self._pending_jobs.pop(job_id, None) is not None

            def remove(session: Session) -> int:
                deleted = session.execute(delete(ReconciliationJobRecord).where(ReconciliationJobRecord.id == job_id)).rowcount
                session.execute(delete(ReconciliationTimelineRecord).where(ReconciliationTimelineRecord.job_id == job_id))
                session.execute(delete(ReconciliationEntryRecord).where(ReconciliationEntryRecord.job_id == job_id))
                return deleted or 0

            deleted = await self._db(remove, description="delete job")
            self._job_cache.pop(job_id, None)
            self._timeline_cache.pop(job_id, None)
        return bool(deleted) or had_pending

    # ------------------------------ timelines ----------------------------- #
    async def save_timeline(self, timeline: ReconciliationTimeline) -> None:
        """Persist the timeline header (status and latest snapshot).

        Entries are append-only and only written by ``append_timeline_entry``.
        """
        validate_job_id(timeline.job_id)
        async with self._key_locks.hold(f"timeline:{timeline.job_id}"):
            header = ReconciliationTimelineRecord(
                job_id=timeline.job_id,
                district_id=timeline.district_id,
                target_month=timeline.target_month,
                status=timeline.status.model_dump(mode="json"),
                latest_data=timeline.latest_data.model_dump(mode="json") if timeline.latest_data else None,
                updated_at=self._clock(),
            )
            def write(session: Session) -> None:
                session.merge(header)

            await self._db(write, description="save timeline")

            cached = self._timeline_cache.get(timeline.job_id)
            updated = timeline.model_copy(deep=True)
            if cached is not None:
                # the cache keeps the durable entry list
                updated.entries = cached.entries
                self._cache_put(self._timeline_cache, timeline.job_id, updated)

    async def append_timeline_entry(self, job_id: str, entry: ReconciliationEntry) -> None:
        validate_job_id(job_id)
        async with self._key_locks.hold(f"timeline:{job_id}"):
            record_entry = entry.model_copy(deep=True)

            def insert(session: Session) -> None:
                session.add(_entry_to_record(job_id, record_entry))

            await self._db(insert, description="append timeline entry")
            cached = self._timeline_cache.get(job_id)
            if cached is not None:
                cached.entries.append(record_entry)
                cached.entries.sort(key=lambda e: e.date)

    async def get_timeline(self, job_id: str) -> Optional[ReconciliationTimeline]:
        """Cached timeline, or a fresh load under the timeline lock so no append lands in between."""
        if not isinstance(job_id, str) or not JOB_ID_PATTERN.match(job_id):
            return None
        cached = self._cached_timeline(job_id)
        if cached is not None:
            return cached
        async with self._key_locks.hold(f"timeline:{job_id}"):
            # filled by another reader while this one waited
            cached = self._cached_timeline(job_id)
            if cached is not None:
                return cached
            self.cache_misses += 1

            def load(session: Session) -> Optional[ReconciliationTimeline]:
                header = session.get(ReconciliationTimelineRecord, job_id)
                if header is None:
                    return None
                stmt = (
                    select(ReconciliationEntryRecord)
                    .where(ReconciliationEntryRecord.job_id == job_id)
                    .order_by(ReconciliationEntryRecord.date, ReconciliationEntryRecord.id)
                )
                return ReconciliationTimeline(
                    job_id=header.job_id,
                    district_id=header.district_id,
                    target_month=header.target_month,
                    entries=[_record_to_entry(rec) for rec in session.scalars(stmt)],
                    status=ReconciliationStatus.model_validate(header.status),
                    latest_data=DistrictStatistics.model_validate(header.latest_data) if header.latest_data else None,
                )

            timeline = await self._db(load, description="load timeline")
            if timeline is None:
                return None
            self._cache_put(self._timeline_cache, job_id, timeline)
            return timeline.model_copy(deep=True)

    def _cached_timeline(self, job_id: str) -> Optional[ReconciliationTimeline]:
        cached = self._timeline_cache.get(job_id)
        if cached is None:
            return None
        self.cache_hits += 1
        self._timeline_cache.move_to_end(job_id)
        return cached.model_copy(deep=True)

    # ---------------------------- maintenance ----------------------------- #
    async def cleanup_old_jobs(self, retention_days: Optional[int] = None) -> int:
        """Delete terminal jobs that ended more than ``retention_days`` ago. Active jobs are kept."""
        days = int(retention_days if retention_days is not None else STORAGE_SETTINGS["job_retention_days"])
        await self.flush()
        cutoff = self._clock() - timedelta(days=days)
        terminal = [s for s in JobStatus if s.is_terminal]

        def find(session: Session) -> List[str]:
            stmt = select(ReconciliationJobRecord).where(ReconciliationJobRecord.status.in_(terminal))
            return [
                rec.id
                for rec in session.scalars(stmt)
                if ensure_utc(rec.end_date or rec.updated_at) < cutoff
            ]

        removed = 0
        for job_id in await self._db(find, description="find expired jobs"):
            if await self.delete_job(job_id):
                removed += 1
        if removed:
            logger.info("Removed expired reconciliation jobs", removed=removed, retention_days=days)
        return removed

    async def get_storage_stats(self) -> dict:
        jobs = await self.get_all_jobs()
        by_status: Dict[str, int] = {s.value: 0 for s in JobStatus}
        by_district: Dict[str, int] = {}
        approximate_size = 0
        for job in jobs:
            by_status[job.status.value] += 1
            by_district[job.district_id] = by_district.get(job.district_id, 0) + 1
            approximate_size += len(job.model_dump_json())

        def entry_stats(session: Session) -> tuple[int, int]:
            timelines = session.scalar(select(func.count()).select_from(ReconciliationTimelineRecord)) or 0
            entries = session.scalar(select(func.count()).select_from(ReconciliationEntryRecord)) or 0
            return timelines, entries

        timelines, entries = await self._db(entry_stats, description="storage stats")
        # rough per-entry JSON footprint
        approximate_size += entries * 600
        return {
            "total_jobs": len(jobs),
            "jobs_by_status": by_status,
            "jobs_by_district": by_district,
            "total_timelines": timelines,
            "total_entries": entries,
            "pending_writes": len(self._pending_jobs),
            "cache_size": len(self._job_cache) + len(self._timeline_cache),
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "flush_count": self.flush_count,
            "approximate_size_bytes": approximate_size,
        }

    def clear_cache(self) -> None:
        self._job_cache.clear()
        self._timeline_cache.clear()

    async def close(self) -> None:
        """Flush pending writes and stop the background flusher."""
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self._flush_task = None
        await self.flush()
        self.clear_cache()


__all__ = ["ReconciliationStorageManager", "JOB_ID_PATTERN", "validate_job_id"]
