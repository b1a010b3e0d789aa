"""Controllable clock, recording collaborators and snapshot factory shared by the tests."""
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from month_end.config import RECONCILIATION_DEFAULTS
from month_end.models.db.enums import JobStatus, TriggeredBy
from month_end.models.schemas import (
    DataChanges,
    DistrictStatistics,
    JobMetadata,
    ReconciliationConfig,
    ReconciliationJob,
)


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingAlertSink:
    def __init__(self):
        self.alerts: List[Tuple[Any, Any, str, str, Dict[str, Any]]] = []

    async def send_alert(self, severity, category, title, message, context=None):
        self.alerts.append((severity, category, title, message, context or {}))


class RecordingCacheUpdater:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[Tuple[str, date, DistrictStatistics, Optional[DataChanges]]] = []

    async def update_cache(self, district_id, target_date, data, changes=None):
        self.calls.append((district_id, target_date, data, changes))
        if self.fail:
            raise RuntimeError("cache backend unavailable")
        return True


class StaticDataSource:
    """Returns queued ``(current, cached)`` pairs per district, repeating the last one."""

    def __init__(self):
        self.responses: Dict[str, List[Tuple[DistrictStatistics, DistrictStatistics]]] = {}
        self.errors: Dict[str, Exception] = {}
        self.calls: List[str] = []

    def set(self, district_id: str, *pairs):
        self.responses[district_id] = list(pairs)

    async def fetch(self, district_id, as_of):
        self.calls.append(district_id)
        if district_id in self.errors:
            raise self.errors[district_id]
        pairs = self.responses[district_id]
        return pairs.pop(0) if len(pairs) > 1 else pairs[0]


def make_stats(
    district_id: str = "42",
    membership: int = 1000,
    clubs: int = 50,
    distinguished: int = 20,
    as_of: date = date(2024, 1, 31),
    **clubs_extra,
) -> DistrictStatistics:
    return DistrictStatistics(
        district_id=district_id,
        as_of_date=as_of,
        membership={"total": membership},
        clubs={"total": clubs, "distinguished": distinguished, **clubs_extra},
    )




def build_job(
    clock: FakeClock,
    job_id: str = "reconciliation-42-2024-01-aaaa",
    district_id: str = "42",
    target_month: str = "2024-01",
    status: JobStatus = JobStatus.ACTIVE,
    age_days: int = 0,
    duration_days: float = 0,
    **config_overrides,
) -> ReconciliationJob:
    """Job created ``age_days`` ago; terminal jobs end ``duration_days`` after they started."""
    created = clock.now - timedelta(days=age_days)
    ended = created + timedelta(days=duration_days) if status != JobStatus.ACTIVE else None
    return ReconciliationJob(
        id=job_id,
        district_id=district_id,
        target_month=target_month,
        status=status,
        start_date=created,
        end_date=ended,
        max_end_date=created + timedelta(days=15),
        finalized_date=ended if status == JobStatus.COMPLETED else None,
        config=ReconciliationConfig.model_validate({**RECONCILIATION_DEFAULTS, **config_overrides}),
        triggered_by=TriggeredBy.MANUAL,
        metadata=JobMetadata(created_at=created, updated_at=created, triggered_by=TriggeredBy.MANUAL),
    )
