from datetime import datetime, timedelta, timezone

import pytest

from month_end.jobs.scheduler import ReconciliationScheduler
from month_end.models.db.enums import JobStatus, TriggeredBy

from fakes import make_stats


@pytest.fixture()
def scheduler(orchestrator, data_source, clock):
    return ReconciliationScheduler(
        orchestrator,
        data_source,
        check_interval_minutes=60,
        max_attempts=3,
        retry_delay_minutes=60,
        districts=["42", "61"],
        clock=clock,
    )


def test_schedule_is_idempotent_while_pending(scheduler, clock):
    first = scheduler.schedule_month_end_reconciliation("42", "2024-01")
    second = scheduler.schedule_month_end_reconciliation("42", "2024-01", clock.now + timedelta(days=1))
    assert second is first
    assert first.due_at == clock.now
    assert len(scheduler.get_scheduled_reconciliations()) == 1


def test_schedule_rejects_bad_month(scheduler):
    with pytest.raises(ValueError):
        scheduler.schedule_month_end_reconciliation("42", "January")


def test_cancel_scheduled(scheduler):
    scheduler.schedule_month_end_reconciliation("42", "2024-01")
    assert scheduler.cancel_scheduled_reconciliation("42", "2024-01") is True
    assert scheduler.cancel_scheduled_reconciliation("42", "2024-01") is False
    assert scheduler.get_scheduled_reconciliations() == []


async def test_items_not_yet_due_are_left_alone(scheduler, data_source, clock):
    scheduler.schedule_month_end_reconciliation("42", "2024-01", clock.now + timedelta(hours=2))
    summary = await scheduler.process_due_reconciliations()
    assert summary["processed"] == 0
    assert data_source.calls == []
    assert scheduler.get_scheduler_status()["next_due_at"] == clock.now + timedelta(hours=2)


async def test_due_item_runs_a_cycle_and_is_rearmed(scheduler, orchestrator, data_source, clock):
    data_source.set("42", (make_stats(), make_stats()))
    item = scheduler.schedule_month_end_reconciliation("42", "2024-01")

    summary = await scheduler.process_due_reconciliations()
    assert summary == {"processed": 1, "succeeded": 1, "failed": 0, "finalized": 0}
    assert item.status == "pending"
    assert item.due_at == clock.now + timedelta(hours=24)

    job = await orchestrator.get_job(item.job_id)
    assert job.triggered_by == TriggeredBy.SCHEDULED
    assert job.status == JobStatus.ACTIVE


async def test_scheduled_job_is_finalized_once_stable(scheduler, orchestrator, data_source, cache_updater, clock):
    data_source.set("42", (make_stats(), make_stats()))
    item = scheduler.schedule_month_end_reconciliation("42", "2024-01")

    finalized = 0
    for _ in range(3):
        summary = await scheduler.process_due_reconciliations()
        finalized += summary["finalized"]
        clock.advance(hours=24)

    assert finalized == 1
    assert item.status == "initiated"
    assert (await orchestrator.get_job(item.job_id)).status == JobStatus.COMPLETED
    assert len(cache_updater.calls) == 1


async def test_failures_are_retried_then_marked_failed(scheduler, orchestrator, data_source, clock):
    data_source.errors["42"] = RuntimeError("district API down")
    item = scheduler.schedule_month_end_reconciliation("42", "2024-01")

    summary = await scheduler.process_due_reconciliations()
    assert summary["failed"] == 1
    assert item.status == "pending"
    assert item.error == "district API down"
    assert item.due_at == clock.now + timedelta(minutes=60)

    for _ in range(2):
        clock.advance(minutes=60)
        await scheduler.process_due_reconciliations()

    assert item.status == "failed"
    assert item.attempts == 3
    assert (await orchestrator.get_job(item.job_id)).status == JobStatus.FAILED
    assert scheduler.get_scheduler_status()["failed_count"] == 1


async def test_one_failure_does_not_block_others(scheduler, data_source):
    data_source.errors["42"] = RuntimeError("district API down")
    data_source.set("61", (make_stats("61"), make_stats("61")))
    scheduler.schedule_month_end_reconciliation("42", "2024-01")
    scheduler.schedule_month_end_reconciliation("61", "2024-01")

    summary = await scheduler.process_due_reconciliations()
    assert summary["processed"] == 2
    assert summary["succeeded"] == 1
    assert summary["failed"] == 1


async def test_month_transition_schedules_previous_month(scheduler, orchestrator):
    await orchestrator.start_reconciliation("61", "2024-01")

    scheduled = await scheduler.auto_schedule_for_month_transition()
    assert [(s.district_id, s.target_month) for s in scheduled] == [("42", "2024-01")]

    again = await scheduler.auto_schedule_for_month_transition()
    assert again == []


async def test_month_transition_only_in_first_days(scheduler):
    late = datetime(2024, 2, 12, tzinfo=timezone.utc)
    assert await scheduler.auto_schedule_for_month_transition(now=late) == []


async def test_start_and_stop(orchestrator, data_source, clock):
    scheduler = ReconciliationScheduler(orchestrator, data_source, districts=[], clock=clock)
    scheduler.start(interval_minutes=30)
    assert scheduler.is_running
    status = scheduler.get_scheduler_status()
    assert status["is_running"] is True
    assert status["check_interval_minutes"] == 30

    await scheduler.stop()
    assert not scheduler.is_running
