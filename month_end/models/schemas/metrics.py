"""
Read models produced by the reconciliation performance monitor.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import Field

from month_end.models.db.enums import AlertSeverity
from .base import CamelModel


class MetricsSummary(CamelModel):
    total_jobs: int = 0
    successful_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    active_jobs: int = 0
    success_rate: float = Field(0.0, description="Percent of recorded jobs that completed")
    failure_rate: float = Field(0.0, description="Percent of recorded jobs that failed")
    average_duration: float = Field(0.0, description="Milliseconds, finished jobs only")
    median_duration: float = Field(0.0, description="Milliseconds, finished jobs only")
    average_stability_days: float = 0.0
    total_extensions: int = 0


class JobDurationMetric(CamelModel):
    job_id: str
    district_id: str
    target_month: str
    status: str
    duration_ms: Optional[float] = None
    stability_days: Optional[int] = None
    extension_count: int = 0
    extension_days: int = 0


class PerformancePattern(CamelModel):
    pattern_type: str = Field(description="frequent_failures|extended|timeout")
    severity: AlertSeverity
    description: str
    district_id: Optional[str] = None
    affected_jobs: List[str] = Field(default_factory=list)
    occurrences: int = 0
    detected_at: datetime


class HealthStatus(CamelModel):
    is_healthy: bool
    total_jobs: int
    active_jobs: int
    performance_patterns: int
    high_severity_patterns: int
    last_cleanup: Optional[datetime] = None
