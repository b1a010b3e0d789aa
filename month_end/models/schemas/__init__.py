from .base import CamelModel
from .config import ReconciliationConfig, SignificantChangeThresholds, ConfigValidationResult
from .statistics import DistrictStatistics, MembershipStatistics, ClubStatistics
from .reconciliation import (
    DistinguishedCounts,
    MembershipChange,
    ClubCountChange,
    DistinguishedChange,
    DataChanges,
    ChangeMetrics,
    ReconciliationEntry,
    ReconciliationStatus,
    ReconciliationTimeline,
    JobProgress,
    JobMetadata,
    ReconciliationJob,
    StabilityPeriodInfo,
    FinalizationReadiness,
    ProgressStatistics,
    ExtensionInfo,
)
from .metrics import MetricsSummary, JobDurationMetric, PerformancePattern, HealthStatus

__all__ = [
    "CamelModel",
    # Configuration
    "ReconciliationConfig",
    "SignificantChangeThresholds",
    "ConfigValidationResult",
    # Input snapshots
    "DistrictStatistics",
    "MembershipStatistics",
    "ClubStatistics",
    # Changes
    "DistinguishedCounts",
    "MembershipChange",
    "ClubCountChange",
    "DistinguishedChange",
    "DataChanges",
    "ChangeMetrics",
    # Timeline & jobs
    "ReconciliationEntry",
    "ReconciliationStatus",
    "ReconciliationTimeline",
    "JobProgress",
    "JobMetadata",
    "ReconciliationJob",
    # Read models
    "StabilityPeriodInfo",
    "FinalizationReadiness",
    "ProgressStatistics",
    "ExtensionInfo",
    # Metrics
    "MetricsSummary",
    "JobDurationMetric",
    "PerformancePattern",
    "HealthStatus",
]
