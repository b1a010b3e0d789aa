"""Central Enum definitions for reconciliation states.

Shared by the DB models, the pydantic schemas and the services so status
strings never drift between layers.
"""
from __future__ import annotations
import enum


class JobStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.ACTIVE


class ReconciliationPhase(str, enum.Enum):
    MONITORING = "monitoring"
    STABILIZING = "stabilizing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggeredBy(str, enum.Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    SCHEDULED = "scheduled"


class ChangedField(str, enum.Enum):
    MEMBERSHIP = "membership"
    CLUB_COUNT = "clubCount"
    DISTINGUISHED = "distinguished"

# ------------------------------ Alerting -------------------------------- #

class AlertSeverity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

class AlertCategory(str, enum.Enum):
    RECONCILIATION = "RECONCILIATION"
    DATA_QUALITY = "DATA_QUALITY"
    SYSTEM_HEALTH = "SYSTEM_HEALTH"

__all__ = [
    "JobStatus",
    "ReconciliationPhase",
    "TriggeredBy",
    "ChangedField",
    "AlertSeverity",
    "AlertCategory",
]
