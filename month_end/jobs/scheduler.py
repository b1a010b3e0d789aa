"""Month-end reconciliation scheduler.

A single asyncio task drives everything: it processes due items, then sleeps
until the earlier of the next due time and the scan interval (or until a new
item is scheduled). Registry items live in a due-heap keyed by
``(due_at, seq)``; stale heap entries (rescheduled or removed items) are
skipped when popped.

Each due item runs one step of its reconciliation:
  1. start the job if needed (``triggered_by=scheduled``)
  2. fetch ``(current, cached)`` from the data source
  3. run a cycle; finalize when the phase reaches ``finalizing``,
     otherwise re-arm at ``now + check_frequency_hours``

Failures are retried after ``retry_delay_minutes`` up to ``max_attempts``;
one item failing never stops the rest of the scan.
"""
from __future__ import annotations

import asyncio
import heapq
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from month_end.config import SCHEDULER_SETTINGS
from month_end.errors import ReconciliationError
from month_end.models.db.enums import ReconciliationPhase, TriggeredBy
from month_end.services.orchestrator import ReconciliationOrchestrator
from month_end.services.ports import DataSource
from month_end.utils import get_logger
from month_end.utils.time import is_valid_month, previous_month, utc_now

logger = get_logger(__name__)

PENDING = "pending"
INITIATED = "initiated"
FAILED = "failed"


@dataclass(slots=True)
class ScheduledReconciliation:
    district_id: str
    target_month: str
    due_at: datetime
    status: str = PENDING
    attempts: int = 0
    last_attempt: Optional[datetime] = None
    error: Optional[str] = None
    job_id: Optional[str] = None
    seq: int = 0

    def key(self) -> str:
        return f"{self.district_id}:{self.target_month}"


class ReconciliationScheduler:
    def __init__(
        self,
        orchestrator: ReconciliationOrchestrator,
        data_source: DataSource,
        *,
        check_interval_minutes: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_delay_minutes: Optional[float] = None,
        districts: Optional[Iterable[str]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.orchestrator = orchestrator
        self.data_source = data_source
        self.check_interval_minutes = float(check_interval_minutes if check_interval_minutes is not None else SCHEDULER_SETTINGS["check_interval_minutes"])
        self.max_attempts = int(max_attempts if max_attempts is not None else SCHEDULER_SETTINGS["max_attempts"])
        self.retry_delay = timedelta(minutes=float(retry_delay_minutes if retry_delay_minutes is not None else SCHEDULER_SETTINGS["retry_delay_minutes"]))
        self.districts = list(districts if districts is not None else SCHEDULER_SETTINGS["districts"])
        self._clock = clock

        self._items: Dict[str, ScheduledReconciliation] = {}
        self._heap: list[tuple[datetime, int, str]] = []
        self._seq_counter = 0
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._stopping = False
        self.last_scan: Optional[datetime] = None

    # ----------------------------- internal helpers ----------------------------- #
    def _next_seq(self) -> int:
        self._seq_counter += 1
        return self._seq_counter

    def _push(self, item: ScheduledReconciliation) -> None:
        item.seq = self._next_seq()
        heapq.heappush(self._heap, (item.due_at, item.seq, item.key()))
        self._wakeup.set()

    def _pop_due(self, now: datetime) -> List[ScheduledReconciliation]:
        due: List[ScheduledReconciliation] = []
        while self._heap and self._heap[0][0] <= now:
            _, seq, key = heapq.heappop(self._heap)
            item = self._items.get(key)
            if item is None or item.seq != seq or item.status != PENDING:
                continue
            due.append(item)
        return due

    def _seconds_until_next_due(self, now: datetime) -> Optional[float]:
        while self._heap:
            due_at, seq, key = self._heap[0]
            item = self._items.get(key)
            if item is None or item.seq != seq or item.status != PENDING:
                heapq.heappop(self._heap)
                continue
            return max(0.0, (due_at - now).total_seconds())
        return None

    # ----------------------------- public API ----------------------------- #
    def start(self, interval_minutes: Optional[float] = None) -> None:
        if self.is_running:
            return
        if interval_minutes is not None:
            self.check_interval_minutes = float(interval_minutes)
        self._stopping = False
        self._wakeup.clear()
        self._task = asyncio.get_running_loop().create_task(self._run(), name="reconciliation-scheduler")
        logger.info("Reconciliation scheduler started", interval_minutes=self.check_interval_minutes)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping = True
        self._wakeup.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reconciliation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_scheduler_status(self) -> dict:
        now = self._clock()
        wait = self._seconds_until_next_due(now)
        statuses = [item.status for item in self._items.values()]
        return {
            "is_running": self.is_running,
            "scheduled_count": len(statuses),
            "pending_count": statuses.count(PENDING),
            "initiated_count": statuses.count(INITIATED),
            "failed_count": statuses.count(FAILED),
            "check_interval_minutes": self.check_interval_minutes,
            "next_due_at": now + timedelta(seconds=wait) if wait is not None else None,
            "last_scan": self.last_scan,
        }

    def get_scheduled_reconciliations(self) -> List[ScheduledReconciliation]:
        return sorted(self._items.values(), key=lambda i: (i.due_at, i.seq))

    def schedule_month_end_reconciliation(self, district_id: str, target_month: str, due_at: Optional[datetime] = None) -> ScheduledReconciliation:
        """Register a future reconciliation. A pending registration for the same district/month is returned as-is."""
        if not district_id:
            raise ValueError("district_id is required")
        if not is_valid_month(target_month):
            raise ValueError(f"Invalid target month {target_month!r}; expected YYYY-MM")
        key = f"{district_id}:{target_month}"
        existing = self._items.get(key)
        if existing is not None and existing.status == PENDING:
            return existing
        item = ScheduledReconciliation(district_id=district_id, target_month=target_month, due_at=due_at or self._clock())
        self._items[key] = item
        self._push(item)
        logger.info("Reconciliation scheduled", district_id=district_id, target_month=target_month, due_at=item.due_at.isoformat())
        return item

    def cancel_scheduled_reconciliation(self, district_id: str, target_month: str) -> bool:
        return self._items.pop(f"{district_id}:{target_month}", None) is not None

    async def auto_schedule_for_month_transition(
        self,
        districts: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> List[ScheduledReconciliation]:
        """During the first days of a month, schedule the previous month for every district without a job for it."""
        now = now or self._clock()
        if now.day > int(SCHEDULER_SETTINGS["auto_schedule_days"]):
            return []
        target_month = previous_month(now)
        scheduled: List[ScheduledReconciliation] = []
        for district_id in districts if districts is not None else self.districts:
            if f"{district_id}:{target_month}" in self._items:
                continue
            known = await self.orchestrator.storage.get_jobs_by_district(district_id)
            if any(job.target_month == target_month for job in known):
                continue
            scheduled.append(self.schedule_month_end_reconciliation(district_id, target_month, now))
        if scheduled:
            logger.info("Auto-scheduled month-end reconciliations", target_month=target_month, count=len(scheduled))
        return scheduled

    async def process_due_reconciliations(self) -> dict:
        now = self._clock()
        self.last_scan = now
        summary = {"processed": 0, "succeeded": 0, "failed": 0, "finalized": 0}
        for item in self._pop_due(now):
            summary["processed"] += 1
            try:
                finalized = await self._process_item(item, now)
            except Exception as exc:
                summary["failed"] += 1
                await self._handle_failure(item, exc, now)
                continue
            summary["succeeded"] += 1
            if finalized:
                summary["finalized"] += 1
        self._cleanup_registry(now)
        try:
            await self.orchestrator.storage.cleanup_old_jobs()
        except ReconciliationError as exc:
            logger.error("Storage cleanup failed during scan", error=str(exc))
        return summary

    async def _process_item(self, item: ScheduledReconciliation, now: datetime) -> bool:
        item.attempts += 1
        item.last_attempt = now
        job = await self.orchestrator.start_reconciliation(item.district_id, item.target_month, triggered_by=TriggeredBy.SCHEDULED)
        item.job_id = job.id
        current, cached = await self.data_source.fetch(item.district_id, now)
        status = await self.orchestrator.process_reconciliation_cycle(job.id, current, cached)

        if status.phase == ReconciliationPhase.FINALIZING:
            await self.orchestrator.finalize_reconciliation(job.id)
            item.status = INITIATED
            item.error = None
            logger.info("Scheduled reconciliation finalized", job_id=job.id, district_id=item.district_id)
            return True

        item.attempts = 0
        item.error = None
        item.due_at = now + timedelta(hours=job.config.check_frequency_hours)
        self._push(item)
        return False

    async def _handle_failure(self, item: ScheduledReconciliation, exc: Exception, now: datetime) -> None:
        item.error = str(exc)
        logger.error(
            "Scheduled reconciliation failed",
            district_id=item.district_id,
            target_month=item.target_month,
            attempt=item.attempts,
            max_attempts=self.max_attempts,
            error=str(exc),
        )
        if item.attempts < self.max_attempts:
            item.due_at = now + self.retry_delay
            self._push(item)
            return
        item.status = FAILED
        if item.job_id is None:
            return
        try:
            await self.orchestrator.fail_reconciliation(item.job_id, f"Scheduled processing failed after {item.attempts} attempts: {exc}")
        except ReconciliationError as fail_exc:
            logger.warning("Could not mark reconciliation failed", job_id=item.job_id, error=str(fail_exc))

    def _cleanup_registry(self, now: datetime) -> None:
        cutoff = now - timedelta(hours=float(SCHEDULER_SETTINGS["registry_retention_hours"]))
        stale = [
            key for key, item in self._items.items()
            if item.status != PENDING and (item.last_attempt or item.due_at) < cutoff
        ]
        for key in stale:
            del self._items[key]

    async def _run(self) -> None:
        while not self._stopping:
            self._wakeup.clear()
            try:
                if self.districts:
                    await self.auto_schedule_for_month_transition()
                await self.process_due_reconciliations()
            except Exception as exc:  # pragma: no cover - keeps the loop alive
                logger.error("Scheduler scan failed", error=str(exc))
            timeout = self.check_interval_minutes * 60
            until_due = self._seconds_until_next_due(self._clock())
            if until_due is not None:
                timeout = min(timeout, until_due)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=max(timeout, 0.01))
            except asyncio.TimeoutError:
                pass


__all__ = ["ReconciliationScheduler", "ScheduledReconciliation"]
