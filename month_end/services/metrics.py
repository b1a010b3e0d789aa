"""Reconciliation performance monitor.

Keeps an in-memory, read-only projection of job lifecycle events (it never
mutates jobs) and derives aggregate statistics plus recurring patterns:

* ``frequent_failures``: a district failed >= 3 times within the failure window (HIGH, alerted)
* ``extended``: a job was extended >= 2 times (MEDIUM)
* ``timeout``: a job ran, or is still running, longer than its
  ``max_reconciliation_days`` (HIGH; alerted when a late job completes)

Rates are percentages of all recorded jobs; durations are milliseconds.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from month_end.config import METRICS_SETTINGS
from month_end.models.db.enums import AlertCategory, AlertSeverity, JobStatus
from month_end.models.schemas import (
    HealthStatus,
    JobDurationMetric,
    MetricsSummary,
    PerformancePattern,
    ReconciliationJob,
)
from month_end.services.ports import AlertSink
from month_end.utils import get_logger
from month_end.utils.metrics import mean, median, percentage
from month_end.utils.time import utc_now

logger = get_logger(__name__)


@dataclass(slots=True)
class JobMetricRecord:
    job_id: str
    district_id: str
    target_month: str
    max_reconciliation_days: int
    start_time: datetime
    status: JobStatus = JobStatus.ACTIVE
    end_time: Optional[datetime] = None
    stability_days: Optional[int] = None
    failure_reason: Optional[str] = None
    extensions: List[int] = field(default_factory=list)

    @property
    def duration_ms(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    def elapsed_ms(self, now: datetime) -> float:
        """Duration so far; active jobs are measured up to ``now``."""
        return ((self.end_time or now) - self.start_time).total_seconds() * 1000


class ReconciliationMetricsService:
    def __init__(self, alert_sink: Optional[AlertSink] = None, *, clock: Callable[[], datetime] = utc_now):
        self.alert_sink = alert_sink
        self._clock = clock
        self._jobs: Dict[str, JobMetricRecord] = {}
        self._last_cleanup: Optional[datetime] = None

    # ------------------------------ recording ----------------------------- #
    def record_job_start(self, job: ReconciliationJob) -> None:
        self._jobs[job.id] = JobMetricRecord(
            job_id=job.id,
            district_id=job.district_id,
            target_month=job.target_month,
            max_reconciliation_days=job.config.max_reconciliation_days,
            start_time=job.start_date,
        )

    def _finish(self, job: ReconciliationJob, status: JobStatus) -> JobMetricRecord:
        record = self._jobs.get(job.id)
        if record is None:
            # job started before this monitor existed
            self.record_job_start(job)
            record = self._jobs[job.id]
        record.status = status
        record.end_time = job.end_date or self._clock()
        return record

    async def record_job_completion(self, job: ReconciliationJob, final_stability_days: int) -> None:
        record = self._finish(job, JobStatus.COMPLETED)
        record.stability_days = final_stability_days
        logger.info("Job completion recorded", job_id=job.id, duration_ms=record.duration_ms, stability_days=final_stability_days)
        if self._is_timeout(record):
            await self._alert_pattern(self._timeout_pattern(record))

    async def record_job_failure(self, job: ReconciliationJob, reason: str) -> None:
        record = self._finish(job, JobStatus.FAILED)
        record.failure_reason = reason
        logger.warning("Job failure recorded", job_id=job.id, district_id=job.district_id, reason=reason)
        if self.alert_sink is not None:
            await self.alert_sink.send_alert(
                AlertSeverity.HIGH,
                AlertCategory.RECONCILIATION,
                "Reconciliation Job Failed",
                f"Reconciliation job {job.id} for district {job.district_id} ({job.target_month}) failed: {reason}",
                {"job_id": job.id, "district_id": job.district_id, "target_month": job.target_month, "reason": reason},
            )
        pattern = self._failure_pattern(job.district_id)
        if pattern is not None:
            await self._alert_pattern(pattern)

    def record_job_cancellation(self, job: ReconciliationJob) -> None:
        self._finish(job, JobStatus.CANCELLED)

    def record_job_extension(self, job_id: str, days: int) -> None:
        record = self._jobs.get(job_id)
        if record is None:
            logger.debug("Extension for untracked job ignored", job_id=job_id)
            return
        record.extensions.append(days)

    async def _alert_pattern(self, pattern: PerformancePattern) -> None:
        logger.warning("Performance pattern detected", pattern_type=pattern.pattern_type, district_id=pattern.district_id)
        if self.alert_sink is None:
            return
        await self.alert_sink.send_alert(
            pattern.severity,
            AlertCategory.RECONCILIATION,
            f"Performance Pattern Detected: {pattern.pattern_type}",
            pattern.description,
            {"pattern_type": pattern.pattern_type, "district_id": pattern.district_id, "affected_jobs": pattern.affected_jobs},
        )

    # ------------------------------ patterns ------------------------------ #
    def _is_timeout(self, record: JobMetricRecord) -> bool:
        return record.elapsed_ms(self._clock()) > record.max_reconciliation_days * 86_400_000

    def _timeout_pattern(self, record: JobMetricRecord) -> PerformancePattern:
        days = record.elapsed_ms(self._clock()) / 86_400_000
        verb = "has been running" if record.end_time is None else "ran"
        return PerformancePattern(
            pattern_type="timeout",
            severity=AlertSeverity.HIGH,
            description=f"Job {record.job_id} {verb} {days:.1f} days, beyond its {record.max_reconciliation_days}-day limit",
            district_id=record.district_id,
            affected_jobs=[record.job_id],
            occurrences=1,
            detected_at=self._clock(),
        )

    def _failure_pattern(self, district_id: str) -> Optional[PerformancePattern]:
        window_days = int(METRICS_SETTINGS["failure_window_days"])
        cutoff = self._clock() - timedelta(days=window_days)
        failures = [
            r for r in self._jobs.values()
            if r.district_id == district_id and r.status == JobStatus.FAILED and r.end_time is not None and r.end_time >= cutoff
        ]
        if len(failures) < int(METRICS_SETTINGS["frequent_failure_threshold"]):
            return None
        return PerformancePattern(
            pattern_type="frequent_failures",
            severity=AlertSeverity.HIGH,
            description=f"District {district_id} has {len(failures)} reconciliation failures in the last {window_days} days",
            district_id=district_id,
            affected_jobs=[r.job_id for r in failures],
            occurrences=len(failures),
            detected_at=self._clock(),
        )

    def get_performance_patterns(self) -> List[PerformancePattern]:
        patterns: List[PerformancePattern] = []
        for district_id in sorted({r.district_id for r in self._jobs.values()}):
            failure = self._failure_pattern(district_id)
            if failure is not None:
                patterns.append(failure)

        threshold = int(METRICS_SETTINGS["extension_pattern_threshold"])
        extended = [r for r in self._jobs.values() if len(r.extensions) >= threshold]
        if extended:
            patterns.append(PerformancePattern(
                pattern_type="extended",
                severity=AlertSeverity.MEDIUM,
                description=f"{len(extended)} reconciliation job(s) needed {threshold} or more extensions",
                affected_jobs=[r.job_id for r in extended],
                occurrences=sum(len(r.extensions) for r in extended),
                detected_at=self._clock(),
            ))

        patterns.extend(self._timeout_pattern(r) for r in self._jobs.values() if self._is_timeout(r))
        return patterns

    # ------------------------------ summaries ----------------------------- #
    def _summarize(self, records: Iterable[JobMetricRecord]) -> MetricsSummary:
        records = list(records)
        total = len(records)
        successful = sum(1 for r in records if r.status == JobStatus.COMPLETED)
        failed = sum(1 for r in records if r.status == JobStatus.FAILED)
        durations = [r.duration_ms for r in records if r.duration_ms is not None]
        stability = [float(r.stability_days) for r in records if r.stability_days is not None]
        return MetricsSummary(
            total_jobs=total,
            successful_jobs=successful,
            failed_jobs=failed,
            cancelled_jobs=sum(1 for r in records if r.status == JobStatus.CANCELLED),
            active_jobs=sum(1 for r in records if r.status == JobStatus.ACTIVE),
            success_rate=percentage(successful, total),
            failure_rate=percentage(failed, total),
            average_duration=mean(durations),
            median_duration=median(durations),
            average_stability_days=mean(stability),
            total_extensions=sum(len(r.extensions) for r in records),
        )

    def get_metrics(self) -> MetricsSummary:
        return self._summarize(self._jobs.values())

    def get_district_metrics(self, district_id: str) -> MetricsSummary:
        return self._summarize(r for r in self._jobs.values() if r.district_id == district_id)

    def get_job_duration_metrics(self) -> List[JobDurationMetric]:
        return [
            JobDurationMetric(
                job_id=r.job_id,
                district_id=r.district_id,
                target_month=r.target_month,
                status=r.status.value,
                duration_ms=r.duration_ms,
                stability_days=r.stability_days,
                extension_count=len(r.extensions),
                extension_days=sum(r.extensions),
            )
            for r in self._jobs.values()
        ]

    # ----------------------------- maintenance ---------------------------- #
    def cleanup_old_metrics(self, retention_days: Optional[int] = None) -> int:
        """Forget terminal jobs that ended before the retention window. Active jobs are always kept."""
        days = int(retention_days if retention_days is not None else METRICS_SETTINGS["retention_days"])
        now = self._clock()
        cutoff = now - timedelta(days=days)
        expired = [
            job_id for job_id, r in self._jobs.items()
            if r.status.is_terminal and (r.end_time or r.start_time) < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        self._last_cleanup = now
        if expired:
            logger.info("Cleaned up old reconciliation metrics", removed=len(expired), retention_days=days)
        return len(expired)

    def get_health_status(self) -> HealthStatus:
        patterns = self.get_performance_patterns()
        high = sum(1 for p in patterns if p.severity in (AlertSeverity.HIGH, AlertSeverity.CRITICAL))
        return HealthStatus(
            is_healthy=high == 0,
            total_jobs=len(self._jobs),
            active_jobs=sum(1 for r in self._jobs.values() if r.status == JobStatus.ACTIVE),
            performance_patterns=len(patterns),
            high_severity_patterns=high,
            last_cleanup=self._last_cleanup,
        )

    def reset_metrics(self) -> None:
        self._jobs.clear()
        self._last_cleanup = None


__all__ = ["ReconciliationMetricsService", "JobMetricRecord"]
