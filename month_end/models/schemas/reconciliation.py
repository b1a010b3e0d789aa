"""
Pydantic schemas for reconciliation jobs, detected changes and timelines.
"""
from datetime import date, datetime
from typing import List, Optional
from pydantic import Field

from month_end.models.db.enums import ChangedField, JobStatus, ReconciliationPhase, TriggeredBy
from .base import CamelModel
from .config import ReconciliationConfig
from .statistics import DistrictStatistics


# ------------------------------- Changes -------------------------------- #

class DistinguishedCounts(CamelModel):
    distinguished: int = 0
    select: int = 0
    presidents: int = 0


class MembershipChange(CamelModel):
    previous: int
    current: int
    percent_change: float


class ClubCountChange(CamelModel):
    previous: int
    current: int
    absolute_change: int


class DistinguishedChange(CamelModel):
    previous: DistinguishedCounts
    current: DistinguishedCounts
    percent_change: float


class DataChanges(CamelModel):
    """Diff between two snapshots. Embedded in a timeline entry, never stored alone."""
    has_changes: bool
    changed_fields: List[ChangedField] = Field(default_factory=list, description="Unique fields whose raw value differs")
    membership_change: Optional[MembershipChange] = None
    club_count_change: Optional[ClubCountChange] = None
    distinguished_change: Optional[DistinguishedChange] = None
    timestamp: datetime
    source_data_date: date


class ChangeMetrics(CamelModel):
    total_changes: int = 0
    significant_changes: int = 0
    membership_impact: float = 0.0
    club_count_impact: float = 0.0
    distinguished_impact: float = 0.0
    overall_significance: float = 0.0


# ------------------------------- Timeline ------------------------------- #

class ReconciliationEntry(CamelModel):
    date: datetime
    changes: DataChanges
    is_significant: bool
    cache_updated: bool = False
    notes: Optional[str] = None


class ReconciliationStatus(CamelModel):
    phase: ReconciliationPhase = ReconciliationPhase.MONITORING
    days_active: int = 0
    days_stable: int = 0
    next_check_date: Optional[datetime] = None
    message: str = ""
    estimated_completion: Optional[datetime] = None


class ReconciliationTimeline(CamelModel):
    job_id: str
    district_id: str
    target_month: str
    entries: List[ReconciliationEntry] = Field(default_factory=list, description="Always ascending by date")
    status: ReconciliationStatus = Field(default_factory=ReconciliationStatus)
    latest_data: Optional[DistrictStatistics] = Field(None, description="Most recent current snapshot, handed over at finalization")


# --------------------------------- Job ---------------------------------- #

class JobProgress(CamelModel):
    phase: ReconciliationPhase = ReconciliationPhase.MONITORING
    completion_percentage: float = Field(0.0, ge=0, le=100)


class JobMetadata(CamelModel):
    created_at: datetime
    updated_at: datetime
    triggered_by: TriggeredBy


class ReconciliationJob(CamelModel):
    id: str
    district_id: str
    target_month: str = Field(pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    status: JobStatus = JobStatus.ACTIVE
    start_date: datetime
    end_date: Optional[datetime] = Field(None, description="Set iff status is not active")
    max_end_date: datetime = Field(description="Grows on extension")
    current_data_date: Optional[datetime] = None
    finalized_date: Optional[datetime] = Field(None, description="Set iff status is completed")
    config: ReconciliationConfig
    triggered_by: TriggeredBy = TriggeredBy.MANUAL
    extension_days: int = Field(0, ge=0, description="Days added to max_end_date by extensions so far")
    progress: JobProgress = Field(default_factory=JobProgress)
    metadata: JobMetadata


# ------------------------------ Read models ----------------------------- #

class StabilityPeriodInfo(CamelModel):
    consecutive_stable_days: int
    is_in_stability_period: bool
    stability_start_date: Optional[datetime] = None
    last_significant_change_date: Optional[datetime] = None
    stability_period_progress: float = Field(ge=0, le=1)


class FinalizationReadiness(CamelModel):
    is_ready: bool
    reason: str


class ProgressStatistics(CamelModel):
    total_entries: int
    significant_changes: int
    minor_changes: int
    no_change_entries: int
    stability_period: StabilityPeriodInfo
    average_time_between_entries: float = Field(0.0, description="Seconds")
    most_recent_entry: Optional[datetime] = None
    oldest_entry: Optional[datetime] = None
    change_frequency: float = Field(0.0, description="Entries with changes per day")
    stability_trend: str = Field("unknown", description="improving|stable|declining|unknown")


class ExtensionInfo(CamelModel):
    current_extension_days: int
    max_extension_days: int
    remaining_extension_days: int
    can_extend: bool
    auto_extension_enabled: bool
