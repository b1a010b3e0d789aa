"""Alert sinks for reconciliation failures and performance patterns.

``LoggingAlertSink`` only writes structured log lines; ``DatabaseAlertSink``
also persists an ``Alert`` row so open alerts can be listed and resolved later.
Severity mapping used by callers:

1. Job failure -> HIGH, category RECONCILIATION.
2. frequent_failures / timeout pattern -> HIGH; extended pattern -> MEDIUM.
3. Cache update failure during a cycle -> MEDIUM, category DATA_QUALITY.
"""
from __future__ import annotations

import asyncio
import threading
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from month_end.models.db.alerts import Alert, AlertStatus
from month_end.models.db.enums import AlertCategory, AlertSeverity
from month_end.utils import get_logger

logger = get_logger(__name__)


class LoggingAlertSink:
    async def send_alert(
        self,
        severity: AlertSeverity,
        category: AlertCategory,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        log = logger.error if severity in (AlertSeverity.HIGH, AlertSeverity.CRITICAL) else logger.warning
        log(
            title,
            alert_message=message,
            severity=AlertSeverity(severity).value,
            category=AlertCategory(category).value,
            **(context or {}),
        )


class DatabaseAlertSink(LoggingAlertSink):
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._db_lock = threading.Lock()

    def _insert(self, severity: AlertSeverity, category: AlertCategory, title: str, message: str, context: Dict[str, Any]) -> int:
        with self._db_lock, self._session_factory() as session:
            alert = Alert(
                job_id=context.get("job_id"),
                district_id=context.get("district_id"),
                title=title,
                message=message,
                context=context,
                category=AlertCategory(category),
                severity=AlertSeverity(severity),
            )
            session.add(alert)
            session.commit()
            return alert.id

    async def send_alert(
        self,
        severity: AlertSeverity,
        category: AlertCategory,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        await super().send_alert(severity, category, title, message, context)
        payload = dict(context or {})
        alert_id = await asyncio.to_thread(self._insert, severity, category, title, message, payload)
        logger.info("Created alert", alert_id=alert_id, severity=AlertSeverity(severity).value)

    def list_open_alerts(self, session: Session | None = None) -> List[Alert]:
        own_session = session is None
        session = session or self._session_factory()
        try:
            stmt = select(Alert).where(Alert.status == AlertStatus.OPEN).order_by(Alert.id)
            return list(session.scalars(stmt))
        finally:
            if own_session:
                session.close()


__all__ = ["LoggingAlertSink", "DatabaseAlertSink"]
