from .enums import JobStatus, ReconciliationPhase, TriggeredBy, ChangedField, AlertSeverity, AlertCategory
from .jobs import ReconciliationJobRecord
from .timelines import ReconciliationTimelineRecord, ReconciliationEntryRecord
from .alerts import Alert, AlertStatus

__all__ = [
    "JobStatus",
    "ReconciliationPhase",
    "TriggeredBy",
    "ChangedField",
    "AlertSeverity",
    "AlertCategory",
    "ReconciliationJobRecord",
    "ReconciliationTimelineRecord",
    "ReconciliationEntryRecord",
    "Alert",
    "AlertStatus",
]
