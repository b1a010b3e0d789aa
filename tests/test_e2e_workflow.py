"""End-to-end month-end flow: scheduled start, data churn, stabilization, finalization."""
from datetime import timedelta

from month_end.jobs.scheduler import ReconciliationScheduler
from month_end.models.db.enums import JobStatus, ReconciliationPhase
from month_end.services.alerting import DatabaseAlertSink
from month_end.services.metrics import ReconciliationMetricsService
from month_end.services.orchestrator import ReconciliationOrchestrator

from fakes import make_stats


async def test_month_end_reconciliation_flow(storage, config_service, cache_updater, data_source, session_factory, clock):
    alerts = DatabaseAlertSink(session_factory)
    metrics = ReconciliationMetricsService(alerts, clock=clock)
    orchestrator = ReconciliationOrchestrator(
        storage,
        config_service,
        cache_updater=cache_updater,
        alert_sink=alerts,
        metrics=metrics,
        clock=clock,
    )
    await orchestrator.update_configuration({"stability_period_days": 2})
    scheduler = ReconciliationScheduler(orchestrator, data_source, districts=["42"], clock=clock)

    # late club reports keep changing membership for two days, then the data settles
    baseline = make_stats(membership=1000)
    data_source.set(
        "42",
        (make_stats(membership=1030), baseline),
        (make_stats(membership=1031), make_stats(membership=1030)),
        (make_stats(membership=1031), make_stats(membership=1031)),
        (make_stats(membership=1031), make_stats(membership=1031)),
    )

    (item,) = await scheduler.auto_schedule_for_month_transition()
    assert item.target_month == "2024-01"

    phases = []
    for _ in range(4):
        await scheduler.process_due_reconciliations()
        job = await orchestrator.get_job(item.job_id)
        phases.append(job.progress.phase)
        clock.advance(hours=24)

    assert phases == [
        ReconciliationPhase.MONITORING,
        ReconciliationPhase.STABILIZING,
        ReconciliationPhase.COMPLETED,
        ReconciliationPhase.COMPLETED,
    ]
    job = await orchestrator.get_job(item.job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.config.stability_period_days == 2
    assert job.extension_days == 3
    assert job.max_end_date == job.start_date + timedelta(days=18)

    timeline = await orchestrator.progress_tracker.get_reconciliation_timeline(job.id)
    assert [e.is_significant for e in timeline.entries] == [True, False, False]
    assert timeline.status.phase == ReconciliationPhase.COMPLETED
    assert timeline.latest_data.membership.total == 1031

    # one update per changed cycle plus the final hand-over
    assert [call[2].membership.total for call in cache_updater.calls] == [1030, 1031, 1031]

    summary = metrics.get_metrics()
    assert summary.successful_jobs == 1
    assert summary.total_extensions == 1
    assert alerts.list_open_alerts() == []

    stats = await storage.get_storage_stats()
    assert stats["jobs_by_status"]["completed"] == 1
    assert stats["total_entries"] == 3
