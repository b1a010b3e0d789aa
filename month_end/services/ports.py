"""Capability interfaces for the reconciliation core's collaborators.

Production implementations (``ReconciliationStorageManager``, the alert sinks
in ``month_end.services.alerting``) and the test fakes both satisfy these.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple, runtime_checkable

from month_end.models.db.enums import AlertCategory, AlertSeverity, JobStatus
from month_end.models.schemas import (
    DataChanges,
    DistrictStatistics,
    ReconciliationEntry,
    ReconciliationJob,
    ReconciliationTimeline,
)


@runtime_checkable
class JobStore(Protocol):
    async def save_job(self, job: ReconciliationJob, *, flush: bool = False) -> None: ...
    async def get_job(self, job_id: str) -> Optional[ReconciliationJob]: ...
    async def get_jobs_bulk(self, job_ids: Iterable[str]) -> Dict[str, ReconciliationJob]: ...
    async def get_jobs_by_district(self, district_id: str) -> List[ReconciliationJob]: ...
    async def get_jobs_by_status(self, status: JobStatus) -> List[ReconciliationJob]: ...
    async def find_active_job(self, district_id: str, target_month: str) -> Optional[ReconciliationJob]: ...
    async def save_timeline(self, timeline: ReconciliationTimeline) -> None: ...
    async def append_timeline_entry(self, job_id: str, entry: ReconciliationEntry) -> None: ...
    async def get_timeline(self, job_id: str) -> Optional[ReconciliationTimeline]: ...
    async def flush(self) -> int: ...


class DataSource(Protocol):
    async def fetch(self, district_id: str, as_of: datetime) -> Tuple[DistrictStatistics, DistrictStatistics]:
        """Return ``(current, cached)`` snapshots for the district."""
        ...


class CacheUpdater(Protocol):
    async def update_cache(
        self,
        district_id: str,
        target_date: date,
        data: DistrictStatistics,
        changes: Optional[DataChanges] = None,
    ) -> bool:
        """Commit ``data`` as authoritative for ``target_date``. Raise or return False on failure."""
        ...


class AlertSink(Protocol):
    async def send_alert(
        self,
        severity: AlertSeverity,
        category: AlertCategory,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None: ...


__all__ = ["JobStore", "DataSource", "CacheUpdater", "AlertSink"]
