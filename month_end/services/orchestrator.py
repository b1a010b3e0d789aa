"""Reconciliation job state machine.

Phases::

    monitoring (0 stable days) -> stabilizing (0 < stable < required)
        -> finalizing (stable >= required, or deadline reached) -> completed

Any non-terminal job can be cancelled (status ``cancelled``) or failed
(status ``failed``); both put the timeline in phase ``failed``.

Per-job operations are serialized with one lock per job id and starts with one
lock per ``(district_id, target_month)``; different jobs never wait on each
other, and a key's lock is dropped once it is idle. Storage access inside a
cycle goes through a circuit breaker with backoff retries.
"""
from __future__ import annotations

import re
import time
import uuid
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, TypeVar

from month_end.config import AUTO_EXTENSION_SETTINGS
from month_end.errors import CacheUpdateError, JobNotFoundError, StateError, StorageError
from month_end.models.db.enums import (
    AlertCategory,
    AlertSeverity,
    JobStatus,
    ReconciliationPhase,
    TriggeredBy,
)
from month_end.models.schemas import (
    ConfigValidationResult,
    DataChanges,
    DistrictStatistics,
    ExtensionInfo,
    JobMetadata,
    JobProgress,
    ReconciliationConfig,
    ReconciliationJob,
    ReconciliationStatus,
    ReconciliationTimeline,
)
from month_end.services.change_detection import ChangeDetectionEngine, StatisticsInput, coerce_statistics
from month_end.services.config_service import ReconciliationConfigService
from month_end.services.metrics import ReconciliationMetricsService
from month_end.services.ports import AlertSink, CacheUpdater, JobStore
from month_end.services.progress_tracker import ProgressTracker, count_stable_days
from month_end.utils import get_logger, log_business_event, log_performance
from month_end.utils.backoff import retry_async
from month_end.utils.circuit_breaker import CircuitBreaker
from month_end.utils.locks import KeyedLocks
from month_end.utils.time import elapsed_days, is_valid_month, month_end_date, utc_now

logger = get_logger(__name__)

T = TypeVar("T")

STORAGE_RESOURCE = "storage"
_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def build_job_id(district_id: str, target_month: str) -> str:
    district = _UNSAFE_ID_CHARS.sub("_", district_id)
    return f"reconciliation-{district}-{target_month}-{uuid.uuid4().hex[:8]}"


def calculate_status(job: ReconciliationJob, days_stable: int, now: datetime) -> ReconciliationStatus:
    """Phase and message for an active job given its current stable run."""
    required = job.config.stability_period_days
    cadence = timedelta(hours=job.config.check_frequency_hours)
    status = ReconciliationStatus(
        days_active=elapsed_days(job.start_date, now),
        days_stable=days_stable,
        next_check_date=now + cadence,
    )
    if now >= job.max_end_date:
        status.phase = ReconciliationPhase.FINALIZING
        status.message = "Maximum reconciliation period reached - finalizing with current data"
    elif days_stable >= required:
        status.phase = ReconciliationPhase.FINALIZING
        status.message = f"Stability period met ({days_stable} days) - ready for finalization"
    elif days_stable > 0:
        status.phase = ReconciliationPhase.STABILIZING
        status.message = f"Stabilizing - {days_stable}/{required} stable days"
    else:
        status.phase = ReconciliationPhase.MONITORING
        status.message = "Monitoring for changes"
    return status


def completion_percentage(job: ReconciliationJob, status: ReconciliationStatus) -> float:
    if status.phase in (ReconciliationPhase.FINALIZING, ReconciliationPhase.COMPLETED):
        return 100.0
    return round(min(status.days_stable / job.config.stability_period_days, 1.0) * 100, 2)


class ReconciliationOrchestrator:
    def __init__(
        self,
        storage: JobStore,
        config_service: ReconciliationConfigService,
        *,
        change_detector: Optional[ChangeDetectionEngine] = None,
        progress_tracker: Optional[ProgressTracker] = None,
        cache_updater: Optional[CacheUpdater] = None,
        alert_sink: Optional[AlertSink] = None,
        metrics: Optional[ReconciliationMetricsService] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.config_service = config_service
        self.change_detector = change_detector or ChangeDetectionEngine(clock=clock)
        self.progress_tracker = progress_tracker or ProgressTracker(storage, self.change_detector, clock=clock)
        self.cache_updater = cache_updater
        self.alert_sink = alert_sink
        self.metrics = metrics
        self.circuit_breaker = circuit_breaker or CircuitBreaker(clock=clock)
        self._clock = clock
        self._start_locks = KeyedLocks()
        self._job_locks = KeyedLocks()

    # ------------------------------ helpers ------------------------------- #
    async def _require_job(self, job_id: str) -> ReconciliationJob:
        job = await self.storage.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _guarded(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        allowed, reason = self.circuit_breaker.allow_call(STORAGE_RESOURCE)
        if not allowed:
            raise StorageError(f"{description} rejected: {reason}")
        try:
            result = await retry_async(operation, retry_on=(StorageError,), description=description)
        except StorageError:
            self.circuit_breaker.record_failure(STORAGE_RESOURCE)
            raise
        self.circuit_breaker.record_success(STORAGE_RESOURCE)
        return result

    async def _alert(self, severity: AlertSeverity, category: AlertCategory, title: str, message: str, context: Dict[str, Any]) -> None:
        if self.alert_sink is None:
            return
        await self.alert_sink.send_alert(severity, category, title, message, context)

    def _touch(self, job: ReconciliationJob, now: datetime) -> None:
        job.metadata.updated_at = now

    # ------------------------------- start -------------------------------- #
    async def start_reconciliation(
        self,
        district_id: str,
        target_month: str,
        config_overrides: Optional[Mapping[str, Any]] = None,
        triggered_by: TriggeredBy = TriggeredBy.MANUAL,
    ) -> ReconciliationJob:
        """Create a job, or return the active one for the same district and month unchanged."""
        if not district_id:
            raise ValueError("district_id is required")
        if not is_valid_month(target_month):
            raise ValueError(f"Invalid target month {target_month!r}; expected YYYY-MM")

        async with self._start_locks.hold((district_id, target_month)):
            existing = await self.storage.find_active_job(district_id, target_month)
            if existing is not None:
                logger.info("Active reconciliation already exists", job_id=existing.id, district_id=district_id, target_month=target_month)
                return existing

            base = await self.config_service.get_config()
            config = self.config_service.merge_config(base, config_overrides)

            now = self._clock()
            triggered_by = TriggeredBy(triggered_by)
            job = ReconciliationJob(
                id=build_job_id(district_id, target_month),
                district_id=district_id,
                target_month=target_month,
                status=JobStatus.ACTIVE,
                start_date=now,
                max_end_date=now + timedelta(days=config.max_reconciliation_days),
                config=config,
                triggered_by=triggered_by,
                progress=JobProgress(),
                metadata=JobMetadata(created_at=now, updated_at=now, triggered_by=triggered_by),
            )
            timeline = ReconciliationTimeline(
                job_id=job.id,
                district_id=district_id,
                target_month=target_month,
                status=ReconciliationStatus(
                    phase=ReconciliationPhase.MONITORING,
                    next_check_date=now + timedelta(hours=config.check_frequency_hours),
                    message="Reconciliation started - monitoring for changes",
                ),
            )
            await self.storage.save_job(job)
            await self.storage.save_timeline(timeline)

        if self.metrics is not None:
            self.metrics.record_job_start(job)
        log_business_event(
            "reconciliation_started",
            {"target_month": target_month, "triggered_by": triggered_by.value, "max_end_date": job.max_end_date.isoformat()},
            job_id=job.id,
            district_id=district_id,
        )
        return job

    # ------------------------------- cycle -------------------------------- #
    async def process_reconciliation_cycle(
        self,
        job_id: str,
        current_data: StatisticsInput,
        cached_data: StatisticsInput,
    ) -> ReconciliationStatus:
        """Compare fresh data with the cached baseline, record the entry and advance the phase."""
        started = time.perf_counter()
        async with self._job_locks.hold(job_id):
            job = await self._guarded(lambda: self.storage.get_job(job_id), "load job")
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status != JobStatus.ACTIVE:
                raise StateError(f"Cannot process cycle for {job.status.value} reconciliation job {job_id}")

            current = coerce_statistics(current_data, "current")
            changes = self.change_detector.detect_changes(job.district_id, cached_data, current)

            cache_updated = False
            if changes.has_changes and self.cache_updater is not None:
                cache_updated = await self._update_cache_for_cycle(job, current, changes)

            now = self._clock()
            entry = await self._guarded(
                lambda: self.progress_tracker.record_data_update(job_id, now, changes, cache_updated=cache_updated),
                "record timeline entry",
            )

            if entry.is_significant and job.config.auto_extension_enabled:
                await self._auto_extend(job)

            timeline = await self._guarded(lambda: self.progress_tracker.get_reconciliation_timeline(job_id), "load timeline")
            # a significant change always breaks the stable run
            days_stable = 0 if entry.is_significant else count_stable_days(timeline.entries)
            status = calculate_status(job, days_stable, now)

            job.current_data_date = datetime.combine(current.as_of_date, dt_time.min, tzinfo=timezone.utc)
            job.progress = JobProgress(phase=status.phase, completion_percentage=completion_percentage(job, status))
            self._touch(job, now)
            await self._guarded(lambda: self.storage.save_job(job), "save job")

            status.estimated_completion = await self.progress_tracker.estimate_completion(job_id)
            timeline.status = status
            timeline.latest_data = current
            await self._guarded(lambda: self.storage.save_timeline(timeline), "save timeline")

        log_performance(
            "reconciliation_cycle",
            (time.perf_counter() - started) * 1000,
            {"job_id": job_id, "phase": status.phase.value, "days_stable": days_stable, "is_significant": entry.is_significant},
        )
        return status

    async def _update_cache_for_cycle(self, job: ReconciliationJob, current: DistrictStatistics, changes: DataChanges) -> bool:
        """Failures are logged and alerted; the cycle carries on with ``cache_updated=False``."""
        try:
            ok = await self.cache_updater.update_cache(job.district_id, month_end_date(job.target_month), current, changes)
            if ok is False:
                raise CacheUpdateError("cache updater reported failure")
            return True
        except Exception as exc:
            logger.error("Cache update failed during reconciliation cycle", job_id=job.id, district_id=job.district_id, error=str(exc))
            await self._alert(
                AlertSeverity.MEDIUM,
                AlertCategory.DATA_QUALITY,
                "Reconciliation cache update failed",
                f"Cache update for district {job.district_id} ({job.target_month}) failed: {exc}",
                {"job_id": job.id, "district_id": job.district_id, "target_month": job.target_month},
            )
            return False

    async def _auto_extend(self, job: ReconciliationJob) -> None:
        remaining = job.config.max_extension_days - job.extension_days
        if remaining <= 0:
            logger.warning("Auto-extension skipped; extension allowance used up", job_id=job.id, max_extension_days=job.config.max_extension_days)
            await self._alert(
                AlertSeverity.MEDIUM,
                AlertCategory.RECONCILIATION,
                "Reconciliation extension limit reached",
                f"Job {job.id} saw a significant change but has no extension days left",
                {"job_id": job.id, "district_id": job.district_id, "max_extension_days": job.config.max_extension_days},
            )
            return
        days = min(int(AUTO_EXTENSION_SETTINGS["increment_days"]), remaining)
        job.max_end_date += timedelta(days=days)
        job.extension_days += days
        if self.metrics is not None:
            self.metrics.record_job_extension(job.id, days)
        log_business_event(
            "reconciliation_auto_extended",
            {"days": days, "extension_days": job.extension_days, "max_end_date": job.max_end_date.isoformat()},
            job_id=job.id,
            district_id=job.district_id,
        )

    # ------------------------------ extension ----------------------------- #
    async def extend_reconciliation(self, job_id: str, days: int, reason: Optional[str] = None) -> ReconciliationJob:
        if days <= 0:
            raise ValueError("Extension days must be positive")
        async with self._job_locks.hold(job_id):
            job = await self._require_job(job_id)
            if job.status != JobStatus.ACTIVE:
                raise StateError(f"Cannot extend {job.status.value} reconciliation job {job_id}")
            limit = job.config.max_extension_days
            if job.extension_days + days > limit:
                raise StateError(
                    f"Cannot extend reconciliation - maximum extension limit of {limit} days would be exceeded "
                    f"(already extended {job.extension_days} days, requested {days})"
                )
            job.max_end_date += timedelta(days=days)
            job.extension_days += days
            self._touch(job, self._clock())
            await self.storage.save_job(job, flush=True)

        if self.metrics is not None:
            self.metrics.record_job_extension(job_id, days)
        log_business_event(
            "reconciliation_extended",
            {"days": days, "extension_days": job.extension_days, "reason": reason},
            job_id=job_id,
            district_id=job.district_id,
        )
        return job

    async def get_extension_info(self, job_id: str) -> Optional[ExtensionInfo]:
        job = await self.storage.get_job(job_id)
        if job is None:
            return None
        remaining = max(0, job.config.max_extension_days - job.extension_days)
        return ExtensionInfo(
            current_extension_days=job.extension_days,
            max_extension_days=job.config.max_extension_days,
            remaining_extension_days=remaining,
            can_extend=job.status == JobStatus.ACTIVE and remaining > 0,
            auto_extension_enabled=job.config.auto_extension_enabled,
        )

    # ------------------------------ terminal ------------------------------ #
    async def finalize_reconciliation(self, job_id: str) -> ReconciliationJob:
        async with self._job_locks.hold(job_id):
            job = await self._require_job(job_id)
            if job.status != JobStatus.ACTIVE:
                raise StateError(f"Cannot finalize {job.status.value} reconciliation job {job_id}")
            readiness = await self.progress_tracker.is_ready_for_finalization(job_id)
            if not readiness.is_ready:
                raise StateError("Stability period not met - cannot finalize reconciliation")

            timeline = await self.progress_tracker.get_reconciliation_timeline(job_id)
            if self.cache_updater is not None and timeline.latest_data is not None:
                try:
                    ok = await self.cache_updater.update_cache(job.district_id, month_end_date(job.target_month), timeline.latest_data, None)
                except Exception as exc:
                    logger.error("Final cache update failed; job stays active", job_id=job_id, error=str(exc))
                    raise CacheUpdateError(f"Final cache update failed for {job_id}: {exc}") from exc
                if ok is False:
                    raise CacheUpdateError(f"Final cache update failed for {job_id}")

            now = self._clock()
            job.status = JobStatus.COMPLETED
            job.end_date = now
            job.finalized_date = now
            job.progress = JobProgress(phase=ReconciliationPhase.COMPLETED, completion_percentage=100.0)
            self._touch(job, now)
            await self.storage.save_job(job, flush=True)

            timeline.status = ReconciliationStatus(
                phase=ReconciliationPhase.COMPLETED,
                days_active=elapsed_days(job.start_date, now),
                days_stable=timeline.status.days_stable,
                message=f"Reconciliation completed - {readiness.reason}",
                estimated_completion=now,
            )
            await self.storage.save_timeline(timeline)

        if self.metrics is not None:
            await self.metrics.record_job_completion(job, timeline.status.days_stable)
        log_business_event(
            "reconciliation_finalized",
            {"target_month": job.target_month, "reason": readiness.reason, "days_stable": timeline.status.days_stable},
            job_id=job_id,
            district_id=job.district_id,
        )
        return job

    async def _terminate(self, job_id: str, status: JobStatus, message: str) -> Tuple[ReconciliationJob, ReconciliationTimeline]:
        async with self._job_locks.hold(job_id):
            job = await self._require_job(job_id)
            if job.status != JobStatus.ACTIVE:
                raise StateError(f"Reconciliation job {job_id} is already {job.status.value}")
            now = self._clock()
            job.status = status
            job.end_date = now
            job.progress = JobProgress(phase=ReconciliationPhase.FAILED, completion_percentage=job.progress.completion_percentage)
            self._touch(job, now)
            await self.storage.save_job(job, flush=True)

            timeline = await self.progress_tracker.get_reconciliation_timeline(job_id)
            timeline.status = ReconciliationStatus(
                phase=ReconciliationPhase.FAILED,
                days_active=elapsed_days(job.start_date, now),
                days_stable=timeline.status.days_stable,
                message=message,
            )
            await self.storage.save_timeline(timeline)
            return job, timeline

    async def cancel_reconciliation(self, job_id: str, reason: Optional[str] = None) -> ReconciliationJob:
        message = "Reconciliation cancelled by user" + (f": {reason}" if reason else "")
        job, _ = await self._terminate(job_id, JobStatus.CANCELLED, message)
        if self.metrics is not None:
            self.metrics.record_job_cancellation(job)
        log_business_event("reconciliation_cancelled", {"reason": reason}, job_id=job_id, district_id=job.district_id)
        return job

    async def fail_reconciliation(self, job_id: str, reason: str) -> ReconciliationJob:
        job, _ = await self._terminate(job_id, JobStatus.FAILED, f"Reconciliation failed: {reason}")
        if self.metrics is not None:
            await self.metrics.record_job_failure(job, reason)
        else:
            await self._alert(
                AlertSeverity.HIGH,
                AlertCategory.RECONCILIATION,
                "Reconciliation Job Failed",
                f"Reconciliation job {job_id} failed: {reason}",
                {"job_id": job_id, "district_id": job.district_id, "target_month": job.target_month},
            )
        log_business_event("reconciliation_failed", {"reason": reason}, job_id=job_id, district_id=job.district_id)
        return job

    # -------------------------------- reads ------------------------------- #
    async def get_job(self, job_id: str) -> Optional[ReconciliationJob]:
        return await self.storage.get_job(job_id)

    async def get_job_status(self, job_id: str) -> Optional[ReconciliationStatus]:
        """Current timeline status; active jobs get their phase recomputed against the clock."""
        job = await self.storage.get_job(job_id)
        if job is None:
            return None
        timeline = await self.progress_tracker.get_reconciliation_timeline(job_id)
        if job.status != JobStatus.ACTIVE:
            return timeline.status
        status = calculate_status(job, timeline.status.days_stable, self._clock())
        status.estimated_completion = await self.progress_tracker.estimate_completion(job_id)
        return status

    # ---------------------------- configuration --------------------------- #
    async def get_default_configuration(self) -> ReconciliationConfig:
        return await self.config_service.get_config()

    async def update_configuration(self, updates: Mapping[str, Any]) -> ReconciliationConfig:
        return await self.config_service.update_config(updates)

    async def validate_configuration(self, updates: Mapping[str, Any]) -> ConfigValidationResult:
        """Validate a partial update against the current configuration without saving it."""
        return await self.config_service.validate_update(updates)


__all__ = ["ReconciliationOrchestrator", "calculate_status", "build_job_id"]
