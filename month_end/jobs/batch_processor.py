"""Concurrent batch execution of reconciliation cycles.

Jobs are ordered by priority label (lower numeric value first, FIFO within a
label) and admitted through an ``asyncio.Semaphore`` so at most
``max_concurrent_jobs`` cycles are in flight. Each attempt is bounded by
``timeout_seconds``; storage errors and timeouts are retried up to
``retry_attempts`` times with exponential backoff, anything else fails the
job immediately. One job failing never affects its siblings.
"""
from __future__ import annotations

import asyncio
import heapq
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional

from month_end.config import BATCH_SETTINGS
from month_end.errors import CycleTimeoutError, ReconciliationError, StorageError
from month_end.models.db.enums import TriggeredBy
from month_end.models.schemas import ReconciliationStatus
from month_end.services.orchestrator import ReconciliationOrchestrator
from month_end.services.ports import DataSource
from month_end.utils import get_logger, log_performance
from month_end.utils.backoff import compute_backoff_seconds
from month_end.utils.metrics import mean, percentage
from month_end.utils.time import utc_now

logger = get_logger(__name__)

TRANSIENT_ERRORS = (StorageError, CycleTimeoutError)


@dataclass(slots=True)
class BatchJob:
    district_id: str
    target_month: str
    priority: str = "normal"

    @classmethod
    def coerce(cls, value: "BatchJob | Mapping[str, Any]") -> "BatchJob":
        if isinstance(value, BatchJob):
            return value
        return cls(
            district_id=value.get("district_id") or value["districtId"],
            target_month=value.get("target_month") or value["targetMonth"],
            priority=value.get("priority", "normal"),
        )


@dataclass(slots=True)
class BatchResult:
    district_id: str
    target_month: str
    priority: str
    success: bool
    job_id: Optional[str] = None
    status: Optional[ReconciliationStatus] = None
    error: Optional[str] = None
    attempts: int = 0
    duration_ms: float = 0.0


class ReconciliationBatchProcessor:
    def __init__(
        self,
        orchestrator: ReconciliationOrchestrator,
        data_source: DataSource,
        *,
        max_concurrent_jobs: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.orchestrator = orchestrator
        self.data_source = data_source
        self.max_concurrent_jobs = int(max_concurrent_jobs if max_concurrent_jobs is not None else BATCH_SETTINGS["max_concurrent_jobs"])
        self.retry_attempts = int(retry_attempts if retry_attempts is not None else BATCH_SETTINGS["retry_attempts"])
        self.timeout_seconds = float(timeout_seconds if timeout_seconds is not None else BATCH_SETTINGS["timeout_seconds"])
        self._priority_map: dict[str, int] = dict(BATCH_SETTINGS["priorities"])  # type: ignore[arg-type]
        self._clock = clock

        self._total = 0
        self._active = 0
        self._queued = 0
        self._completed = 0
        self._failed = 0
        self._durations: List[float] = []
        self._succeeded_total = 0

    # ------------------------------ progress ------------------------------ #
    def get_progress(self) -> dict:
        """Live view of the current batch; completed_jobs includes failures."""
        return {
            "total_jobs": self._total,
            "active_jobs": self._active,
            "queued_jobs": self._queued,
            "completed_jobs": self._completed,
            "failed_jobs": self._failed,
        }

    def get_statistics(self) -> dict:
        """Cumulative over every batch processed by this instance. Times in ms."""
        processed = len(self._durations)
        return {
            "total_processed": processed,
            "successful": self._succeeded_total,
            "failed": processed - self._succeeded_total,
            "success_rate": percentage(self._succeeded_total, processed),
            "average_processing_time": mean(self._durations),
            "total_processing_time": sum(self._durations),
        }

    # ----------------------------- processing ----------------------------- #
    def _order(self, jobs: List[BatchJob]) -> List[tuple[int, BatchJob]]:
        heap: list[tuple[int, int, BatchJob]] = []
        for seq, job in enumerate(jobs):
            if job.priority not in self._priority_map:
                raise ValueError(f"Unknown priority '{job.priority}'")
            heapq.heappush(heap, (self._priority_map[job.priority], seq, job))
        ordered = []
        while heap:
            _, seq, job = heapq.heappop(heap)
            ordered.append((seq, job))
        return ordered

    async def process_batch(self, jobs: Iterable[BatchJob | Mapping[str, Any]]) -> List[BatchResult]:
        """Run one cycle per job. Results come back in input order."""
        batch = [BatchJob.coerce(j) for j in jobs]
        ordered = self._order(batch)
        self._total = len(batch)
        self._queued = len(batch)
        self._active = self._completed = self._failed = 0
        if not batch:
            return []

        started = time.perf_counter()
        semaphore = asyncio.Semaphore(self.max_concurrent_jobs)
        results: List[Optional[BatchResult]] = [None] * len(batch)

        async def run(seq: int, job: BatchJob) -> None:
            async with semaphore:
                self._queued -= 1
                self._active += 1
                try:
                    results[seq] = await self._process_job(job)
                finally:
                    self._active -= 1
                    self._completed += 1
                    if results[seq] is None or not results[seq].success:
                        self._failed += 1

        # semaphore waiters are admitted FIFO, so creation order is priority order
        await asyncio.gather(*(run(seq, job) for seq, job in ordered))

        log_performance(
            "reconciliation_batch",
            (time.perf_counter() - started) * 1000,
            {"jobs": len(batch), "failed": self._failed, "max_concurrent": self.max_concurrent_jobs},
        )
        return [r for r in results if r is not None]

    async def _cycle(self, job: BatchJob, result: BatchResult) -> ReconciliationStatus:
        reconciliation = await self.orchestrator.start_reconciliation(job.district_id, job.target_month, triggered_by=TriggeredBy.AUTOMATIC)
        result.job_id = reconciliation.id
        current, cached = await self.data_source.fetch(job.district_id, self._clock())
        return await self.orchestrator.process_reconciliation_cycle(reconciliation.id, current, cached)

    async def _attempt(self, job: BatchJob, result: BatchResult) -> ReconciliationStatus:
        try:
            return await asyncio.wait_for(self._cycle(job, result), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise CycleTimeoutError(f"Cycle for {job.district_id} {job.target_month} exceeded {self.timeout_seconds}s") from exc

    async def _process_job(self, job: BatchJob) -> BatchResult:
        result = BatchResult(district_id=job.district_id, target_month=job.target_month, priority=job.priority, success=False)
        started = time.perf_counter()
        max_attempts = self.retry_attempts + 1
        while True:
            result.attempts += 1
            try:
                result.status = await self._attempt(job, result)
                result.success = True
                result.error = None
                break
            except TRANSIENT_ERRORS as exc:
                result.error = str(exc)
                if result.attempts >= max_attempts:
                    break
                delay = compute_backoff_seconds(result.attempts)
                logger.warning("Retrying batch job", district_id=job.district_id, attempt=result.attempts, delay_seconds=round(delay, 3), error=str(exc))
                await asyncio.sleep(delay)
            except Exception as exc:
                result.error = str(exc)
                logger.error("Batch job failed", district_id=job.district_id, target_month=job.target_month, error=str(exc))
                break

        result.duration_ms = (time.perf_counter() - started) * 1000
        self._durations.append(result.duration_ms)
        if result.success:
            self._succeeded_total += 1
        else:
            await self._record_failure(result)
        return result

    async def _record_failure(self, result: BatchResult) -> None:
        if result.job_id is None:
            return
        try:
            await self.orchestrator.fail_reconciliation(
                result.job_id, f"Batch processing failed after {result.attempts} attempt(s): {result.error}"
            )
        except ReconciliationError as exc:
            logger.warning("Could not mark reconciliation failed", job_id=result.job_id, error=str(exc))


__all__ = ["ReconciliationBatchProcessor", "BatchJob", "BatchResult"]
