"""Change detection between two district statistics snapshots.

Pure computation: no I/O, no clock beyond the ``timestamp`` stamped on each
diff. Percent changes are signed; significance compares absolute values so
equal-magnitude increases and decreases get the same verdict.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError

from month_end.config import RECONCILIATION_DEFAULTS
from month_end.errors import DetectionError
from month_end.models.db.enums import ChangedField
from month_end.models.schemas import (
    ChangeMetrics,
    ClubCountChange,
    DataChanges,
    DistinguishedChange,
    DistinguishedCounts,
    DistrictStatistics,
    MembershipChange,
    SignificantChangeThresholds,
)
from month_end.utils import get_logger
from month_end.utils.metrics import percent_change
from month_end.utils.time import utc_now

logger = get_logger(__name__)

# Weights for overall_significance; they sum to 1.0
IMPACT_WEIGHTS = {
    ChangedField.MEMBERSHIP: 0.5,
    ChangedField.DISTINGUISHED: 0.3,
    ChangedField.CLUB_COUNT: 0.2,
}

StatisticsInput = DistrictStatistics | Mapping[str, Any]


def coerce_statistics(snapshot: StatisticsInput, label: str = "input") -> DistrictStatistics:
    if isinstance(snapshot, DistrictStatistics):
        return snapshot
    try:
        return DistrictStatistics.model_validate(snapshot)
    except (ValidationError, TypeError) as exc:
        raise DetectionError(f"Malformed {label} snapshot: {exc}") from exc


def _distinguished_counts(stats: DistrictStatistics) -> DistinguishedCounts:
    return DistinguishedCounts(
        distinguished=stats.clubs.distinguished,
        select=stats.clubs.select_distinguished or 0,
        presidents=stats.clubs.presidents_distinguished or 0,
    )


class ChangeDetectionEngine:
    def __init__(
        self,
        default_thresholds: Optional[SignificantChangeThresholds] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.default_thresholds = default_thresholds or SignificantChangeThresholds.model_validate(
            RECONCILIATION_DEFAULTS["significantChangeThresholds"]
        )
        self._clock = clock

    def detect_changes(self, district_id: str, previous: StatisticsInput, current: StatisticsInput) -> DataChanges:
        prev = coerce_statistics(previous, "previous")
        curr = coerce_statistics(current, "current")

        changed: list[ChangedField] = []
        membership_change = club_count_change = distinguished_change = None

        if prev.membership.total != curr.membership.total:
            changed.append(ChangedField.MEMBERSHIP)
            membership_change = MembershipChange(
                previous=prev.membership.total,
                current=curr.membership.total,
                percent_change=percent_change(prev.membership.total, curr.membership.total),
            )

        if prev.clubs.total != curr.clubs.total:
            changed.append(ChangedField.CLUB_COUNT)
            club_count_change = ClubCountChange(
                previous=prev.clubs.total,
                current=curr.clubs.total,
                absolute_change=curr.clubs.total - prev.clubs.total,
            )

        if prev.clubs.distinguished != curr.clubs.distinguished:
            changed.append(ChangedField.DISTINGUISHED)
            distinguished_change = DistinguishedChange(
                previous=_distinguished_counts(prev),
                current=_distinguished_counts(curr),
                percent_change=percent_change(prev.clubs.distinguished, curr.clubs.distinguished),
            )

        changes = DataChanges(
            has_changes=bool(changed),
            changed_fields=changed,
            membership_change=membership_change,
            club_count_change=club_count_change,
            distinguished_change=distinguished_change,
            timestamp=self._clock(),
            source_data_date=curr.as_of_date,
        )
        if changes.has_changes:
            logger.debug("Changes detected", district_id=district_id, changed_fields=[f.value for f in changed])
        return changes

    def is_significant_change(self, changes: DataChanges, thresholds: Optional[SignificantChangeThresholds] = None) -> bool:
        if not changes.has_changes:
            return False
        thresholds = thresholds or self.default_thresholds
        if changes.membership_change and abs(changes.membership_change.percent_change) >= thresholds.membership_percent:
            return True
        if changes.club_count_change and abs(changes.club_count_change.absolute_change) >= thresholds.club_count_absolute:
            return True
        if changes.distinguished_change and abs(changes.distinguished_change.percent_change) >= thresholds.distinguished_percent:
            return True
        return False

    def calculate_change_metrics(self, changes: DataChanges) -> ChangeMetrics:
        if not changes.has_changes:
            return ChangeMetrics()
        thresholds = self.default_thresholds

        membership_impact = abs(changes.membership_change.percent_change) if changes.membership_change else 0.0
        club_count_impact = float(abs(changes.club_count_change.absolute_change)) if changes.club_count_change else 0.0
        distinguished_impact = abs(changes.distinguished_change.percent_change) if changes.distinguished_change else 0.0

        significant = 0
        if changes.membership_change and membership_impact >= thresholds.membership_percent:
            significant += 1
        if changes.club_count_change and club_count_impact >= thresholds.club_count_absolute:
            significant += 1
        if changes.distinguished_change and distinguished_impact >= thresholds.distinguished_percent:
            significant += 1

        overall = (
            membership_impact * IMPACT_WEIGHTS[ChangedField.MEMBERSHIP]
            + distinguished_impact * IMPACT_WEIGHTS[ChangedField.DISTINGUISHED]
            + club_count_impact * IMPACT_WEIGHTS[ChangedField.CLUB_COUNT]
        )
        return ChangeMetrics(
            total_changes=len(changes.changed_fields),
            significant_changes=significant,
            membership_impact=membership_impact,
            club_count_impact=club_count_impact,
            distinguished_impact=distinguished_impact,
            overall_significance=overall,
        )


__all__ = ["ChangeDetectionEngine", "IMPACT_WEIGHTS", "coerce_statistics"]
