from __future__ import annotations
"""SQLAlchemy model for reconciliation jobs (one row per job id)."""
from datetime import datetime
from sqlalchemy import Integer, String, DateTime, Enum, JSON, Float, Index
from sqlalchemy.orm import Mapped, mapped_column

from month_end.database import Base
from .enums import JobStatus, ReconciliationPhase, TriggeredBy


class ReconciliationJobRecord(Base):
    __tablename__ = "reconciliation_jobs"
    __table_args__ = (
        Index("ix_reconciliation_jobs_identity", "district_id", "target_month", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    district_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    target_month: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    status: Mapped[JobStatus] = mapped_column(Enum(JobStatus), nullable=False, index=True)
    triggered_by: Mapped[TriggeredBy] = mapped_column(Enum(TriggeredBy), nullable=False)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # Set iff status != active
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    max_end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_data_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set iff status == completed
    finalized_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Frozen camelCase config document captured at job creation
    config: Mapped[dict] = mapped_column(JSON, nullable=False)
    extension_days: Mapped[int] = mapped_column(Integer, default=0)

    phase: Mapped[ReconciliationPhase] = mapped_column(Enum(ReconciliationPhase), default=ReconciliationPhase.MONITORING)
    completion_percentage: Mapped[float] = mapped_column(Float, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
