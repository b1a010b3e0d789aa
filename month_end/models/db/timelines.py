from __future__ import annotations
"""SQLAlchemy models for reconciliation timelines and their append-only entries."""
from datetime import datetime
from sqlalchemy import Integer, String, DateTime, Boolean, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from month_end.database import Base


class ReconciliationTimelineRecord(Base):
    """Timeline header: current status plus the latest observed snapshot."""
    __tablename__ = "reconciliation_timelines"
    job_id: Mapped[str] = mapped_column(String, primary_key=True)
    district_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    target_month: Mapped[str] = mapped_column(String(7), nullable=False)
    status: Mapped[dict] = mapped_column(JSON, nullable=False)
    latest_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ReconciliationEntryRecord(Base):
    """One row per recorded cycle. Rows are only ever inserted."""
    __tablename__ = "reconciliation_entries"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    changes: Mapped[dict] = mapped_column(JSON, nullable=False)
    is_significant: Mapped[bool] = mapped_column(Boolean, default=False)
    cache_updated: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
