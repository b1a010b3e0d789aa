"""
Pydantic schemas for the reconciliation configuration document.
"""
from typing import List
from pydantic import ConfigDict, Field, model_validator

from .base import CamelModel


class SignificantChangeThresholds(CamelModel):
    model_config = ConfigDict(frozen=True)

    membership_percent: float = Field(ge=0, le=100, description="Membership change (%) at or above which a change is significant")
    club_count_absolute: int = Field(ge=0, description="Absolute club count change at or above which a change is significant")
    distinguished_percent: float = Field(ge=0, le=100, description="Distinguished club change (%) at or above which a change is significant")


class ReconciliationConfig(CamelModel):
    """Immutable snapshot attached to a job at creation."""
    model_config = ConfigDict(frozen=True)

    max_reconciliation_days: int = Field(ge=1, le=60, description="Hard deadline after which the job is finalized with current data")
    stability_period_days: int = Field(ge=1, le=60, description="Consecutive non-significant cycles required before finalization")
    check_frequency_hours: int = Field(ge=1, le=168, description="Cadence of data checks")
    significant_change_thresholds: SignificantChangeThresholds
    auto_extension_enabled: bool = Field(description="Extend the deadline automatically on significant changes")
    max_extension_days: int = Field(ge=0, le=30, description="Total days extensions may add to the deadline")

    @model_validator(mode="after")
    def _stability_within_window(self):
        if self.stability_period_days > self.max_reconciliation_days:
            raise ValueError("stability_period_days must not exceed max_reconciliation_days")
        return self


class ConfigValidationResult(CamelModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list, description="Each message starts with the offending field name")
    warnings: List[str] = Field(default_factory=list)
