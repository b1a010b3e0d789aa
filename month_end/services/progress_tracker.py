"""Timeline bookkeeping: entry recording, stability math and completion estimates."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from month_end.errors import JobNotFoundError
from month_end.models.db.enums import JobStatus
from month_end.models.schemas import (
    DataChanges,
    FinalizationReadiness,
    ProgressStatistics,
    ReconciliationEntry,
    ReconciliationJob,
    ReconciliationStatus,
    ReconciliationTimeline,
    StabilityPeriodInfo,
)
from month_end.services.change_detection import ChangeDetectionEngine
from month_end.services.ports import JobStore
from month_end.utils import get_logger
from month_end.utils.metrics import safe_div
from month_end.utils.time import elapsed_days, utc_now

logger = get_logger(__name__)

TREND_BAND = 0.1


def sort_entries(entries: List[ReconciliationEntry]) -> List[ReconciliationEntry]:
    # stable sort: same-date entries keep recording order
    return sorted(entries, key=lambda e: e.date)


def count_stable_days(entries: List[ReconciliationEntry]) -> int:
    """Length of the newest run of non-significant entries."""
    stable = 0
    for entry in reversed(sort_entries(entries)):
        if entry.is_significant:
            break
        stable += 1
    return stable


def entry_notes(is_significant: bool, changes: DataChanges) -> str:
    if is_significant:
        return "Significant changes detected"
    if changes.has_changes:
        return "Minor changes detected"
    return "No changes detected"


class ProgressTracker:
    def __init__(
        self,
        storage: JobStore,
        change_detector: Optional[ChangeDetectionEngine] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.change_detector = change_detector or ChangeDetectionEngine(clock=clock)
        self._clock = clock

    async def _require_job(self, job_id: str) -> ReconciliationJob:
        job = await self.storage.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def record_data_update(
        self,
        job_id: str,
        date: datetime,
        changes: DataChanges,
        *,
        cache_updated: bool = False,
    ) -> ReconciliationEntry:
        """Append one entry. Never merges with an existing entry for the same date."""
        job = await self._require_job(job_id)
        is_significant = self.change_detector.is_significant_change(changes, job.config.significant_change_thresholds)
        entry = ReconciliationEntry(
            date=date,
            changes=changes,
            is_significant=is_significant,
            cache_updated=cache_updated,
            notes=entry_notes(is_significant, changes),
        )
        if await self.storage.get_timeline(job_id) is None:
            await self.storage.save_timeline(
                ReconciliationTimeline(job_id=job.id, district_id=job.district_id, target_month=job.target_month)
            )
        await self.storage.append_timeline_entry(job_id, entry)
        logger.info("Data update recorded", job_id=job_id, date=date.isoformat(), is_significant=is_significant)
        return entry

    async def get_reconciliation_timeline(self, job_id: str) -> Optional[ReconciliationTimeline]:
        """Timeline with entries sorted ascending and ``days_stable``/``days_active`` refreshed."""
        timeline = await self.storage.get_timeline(job_id)
        if timeline is None:
            job = await self.storage.get_job(job_id)
            if job is None:
                return None
            timeline = ReconciliationTimeline(
                job_id=job.id,
                district_id=job.district_id,
                target_month=job.target_month,
                status=ReconciliationStatus(message="No timeline entries yet"),
            )
        else:
            job = await self.storage.get_job(job_id)

        timeline.entries = sort_entries(timeline.entries)
        timeline.status.days_stable = count_stable_days(timeline.entries)
        if job is not None:
            timeline.status.days_active = elapsed_days(job.start_date, job.end_date or self._clock())
        return timeline

    def get_stability_period_info(self, timeline: ReconciliationTimeline, required_days: int) -> StabilityPeriodInfo:
        entries = sort_entries(timeline.entries)
        stable = count_stable_days(entries)
        significant = [e for e in entries if e.is_significant]
        return StabilityPeriodInfo(
            consecutive_stable_days=stable,
            is_in_stability_period=stable > 0,
            stability_start_date=entries[-stable].date if stable else None,
            last_significant_change_date=significant[-1].date if significant else None,
            stability_period_progress=min(safe_div(stable, required_days), 1.0) if required_days > 0 else 1.0,
        )

    async def estimate_completion(self, job_id: str) -> Optional[datetime]:
        job = await self.storage.get_job(job_id)
        if job is None:
            return None
        if job.status == JobStatus.COMPLETED:
            return job.finalized_date
        if job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
            return None
        timeline = await self.get_reconciliation_timeline(job_id)
        stable = count_stable_days(timeline.entries) if timeline else 0
        cadence = timedelta(hours=job.config.check_frequency_hours)
        now = self._clock()
        if stable >= job.config.stability_period_days:
            return now + cadence
        remaining_cycles = job.config.stability_period_days - stable
        return min(now + cadence * remaining_cycles, job.max_end_date)

    async def is_ready_for_finalization(self, job_id: str) -> FinalizationReadiness:
        job = await self.storage.get_job(job_id)
        if job is None:
            return FinalizationReadiness(is_ready=False, reason="Reconciliation job not found")
        timeline = await self.get_reconciliation_timeline(job_id)
        stable = count_stable_days(timeline.entries) if timeline else 0
        required = job.config.stability_period_days
        if stable >= required:
            return FinalizationReadiness(is_ready=True, reason=f"Stability period met ({stable} of {required} stable days)")
        if self._clock() >= job.max_end_date:
            return FinalizationReadiness(is_ready=True, reason="Maximum reconciliation period reached")
        return FinalizationReadiness(is_ready=False, reason=f"Stability period not met ({stable} of {required} stable days)")

    async def get_progress_statistics(self, job_id: str) -> Optional[ProgressStatistics]:
        job = await self.storage.get_job(job_id)
        timeline = await self.get_reconciliation_timeline(job_id)
        if job is None or timeline is None:
            return None
        entries = timeline.entries
        significant = sum(1 for e in entries if e.is_significant)
        minor = sum(1 for e in entries if e.changes.has_changes and not e.is_significant)
        no_change = sum(1 for e in entries if not e.changes.has_changes and not e.is_significant)

        average_gap = 0.0
        change_frequency = 0.0
        if len(entries) > 1:
            span = (entries[-1].date - entries[0].date).total_seconds()
            average_gap = span / (len(entries) - 1)
            span_days = span / 86400
            if span_days > 0:
                change_frequency = sum(1 for e in entries if e.changes.has_changes) / span_days

        return ProgressStatistics(
            total_entries=len(entries),
            significant_changes=significant,
            minor_changes=minor,
            no_change_entries=no_change,
            stability_period=self.get_stability_period_info(timeline, job.config.stability_period_days),
            average_time_between_entries=average_gap,
            most_recent_entry=entries[-1].date if entries else None,
            oldest_entry=entries[0].date if entries else None,
            change_frequency=change_frequency,
            stability_trend=self._stability_trend(entries),
        )

    @staticmethod
    def _stability_trend(entries: List[ReconciliationEntry]) -> str:
        """Compare the significant-change rate of the older and newer half of the timeline."""
        if len(entries) < 3:
            return "unknown"
        mid = len(entries) // 2
        older, newer = entries[:mid], entries[mid:]
        older_rate = safe_div(sum(1 for e in older if e.is_significant), len(older))
        newer_rate = safe_div(sum(1 for e in newer if e.is_significant), len(newer))
        if newer_rate < older_rate - TREND_BAND:
            return "improving"
        if newer_rate > older_rate + TREND_BAND:
            return "declining"
        return "stable"


__all__ = ["ProgressTracker", "count_stable_days", "sort_entries", "entry_notes"]
