from month_end.models.db.alerts import AlertStatus
from month_end.models.db.enums import AlertCategory, AlertSeverity
from month_end.services.alerting import DatabaseAlertSink, LoggingAlertSink


async def test_database_sink_persists_open_alert(session_factory):
    sink = DatabaseAlertSink(session_factory)
    await sink.send_alert(
        AlertSeverity.HIGH,
        AlertCategory.RECONCILIATION,
        "Reconciliation Job Failed",
        "Reconciliation job reconciliation-42-2024-01-aaaa failed: boom",
        {"job_id": "reconciliation-42-2024-01-aaaa", "district_id": "42"},
    )

    (alert,) = sink.list_open_alerts()
    assert alert.status == AlertStatus.OPEN
    assert alert.severity == AlertSeverity.HIGH
    assert alert.job_id == "reconciliation-42-2024-01-aaaa"
    assert alert.district_id == "42"
    assert alert.context["district_id"] == "42"


async def test_database_sink_without_context(session_factory):
    sink = DatabaseAlertSink(session_factory)
    await sink.send_alert(AlertSeverity.LOW, AlertCategory.SYSTEM_HEALTH, "Scan slow", "Scheduler scan took 40s")
    (alert,) = sink.list_open_alerts()
    assert alert.job_id is None
    assert alert.context == {}


async def test_logging_sink_logs(caplog):
    with caplog.at_level("WARNING", logger="month_end"):
        await LoggingAlertSink().send_alert(AlertSeverity.MEDIUM, AlertCategory.DATA_QUALITY, "Cache update failed", "district 42")
    assert any(r.getMessage() == "Cache update failed" for r in caplog.records)
