from __future__ import annotations
"""SQLAlchemy model for alerts raised by reconciliation failures and performance patterns."""
import enum
from datetime import datetime
from sqlalchemy import Integer, String, DateTime, Enum, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from month_end.database import Base
from .enums import AlertSeverity, AlertCategory

class AlertStatus(str, enum.Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"

class Alert(Base):
    __tablename__ = "alerts"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # Denormalised from context for filtering
    job_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    district_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    category: Mapped[AlertCategory] = mapped_column(Enum(AlertCategory), default=AlertCategory.RECONCILIATION, index=True)
    severity: Mapped[AlertSeverity] = mapped_column(Enum(AlertSeverity), default=AlertSeverity.LOW, index=True)
    status: Mapped[AlertStatus] = mapped_column(Enum(AlertStatus), default=AlertStatus.OPEN, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
