from datetime import datetime, timedelta, timezone

import pytest

from month_end.errors import JobNotFoundError
from month_end.services.progress_tracker import count_stable_days

from fakes import make_stats

DAY0 = datetime(2024, 2, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def tracker(orchestrator):
    return orchestrator.progress_tracker


@pytest.fixture()
async def job(orchestrator):
    return await orchestrator.start_reconciliation("42", "2024-01")


@pytest.fixture()
def significant(orchestrator):
    return orchestrator.change_detector.detect_changes("42", make_stats(membership=1000), make_stats(membership=1050))


@pytest.fixture()
def minor(orchestrator):
    return orchestrator.change_detector.detect_changes("42", make_stats(membership=10000), make_stats(membership=10001))


@pytest.fixture()
def unchanged(orchestrator):
    return orchestrator.change_detector.detect_changes("42", make_stats(), make_stats())


async def test_record_for_unknown_job_raises(tracker, unchanged):
    with pytest.raises(JobNotFoundError):
        await tracker.record_data_update("reconciliation-missing", DAY0, unchanged)


async def test_same_date_recordings_are_kept_separately(tracker, job, unchanged):
    for _ in range(3):
        await tracker.record_data_update(job.id, DAY0, unchanged)

    timeline = await tracker.get_reconciliation_timeline(job.id)
    assert len(timeline.entries) == 3
    assert timeline.status.days_stable == 3


async def test_entries_are_returned_in_date_order(tracker, job, unchanged, significant):
    await tracker.record_data_update(job.id, DAY0 + timedelta(days=2), unchanged)
    await tracker.record_data_update(job.id, DAY0, significant)
    await tracker.record_data_update(job.id, DAY0 + timedelta(days=1), unchanged)

    timeline = await tracker.get_reconciliation_timeline(job.id)
    dates = [e.date for e in timeline.entries]
    assert dates == sorted(dates)
    assert timeline.entries[0].is_significant
    assert timeline.status.days_stable == 2


async def test_entry_notes_and_significance(tracker, job, significant, minor, unchanged):
    sig = await tracker.record_data_update(job.id, DAY0, significant)
    small = await tracker.record_data_update(job.id, DAY0 + timedelta(days=1), minor)
    none = await tracker.record_data_update(job.id, DAY0 + timedelta(days=2), unchanged, cache_updated=True)

    assert (sig.is_significant, sig.notes) == (True, "Significant changes detected")
    assert (small.is_significant, small.notes) == (False, "Minor changes detected")
    assert (none.is_significant, none.notes) == (False, "No changes detected")
    assert none.cache_updated is True


async def test_unknown_job_has_no_timeline(tracker):
    assert await tracker.get_reconciliation_timeline("reconciliation-missing") is None
    assert await tracker.estimate_completion("reconciliation-missing") is None
    assert await tracker.get_progress_statistics("reconciliation-missing") is None
    readiness = await tracker.is_ready_for_finalization("reconciliation-missing")
    assert readiness.is_ready is False


async def test_stability_period_info(tracker, job, significant, unchanged):
    await tracker.record_data_update(job.id, DAY0, significant)
    await tracker.record_data_update(job.id, DAY0 + timedelta(days=1), unchanged)
    await tracker.record_data_update(job.id, DAY0 + timedelta(days=2), unchanged)

    timeline = await tracker.get_reconciliation_timeline(job.id)
    info = tracker.get_stability_period_info(timeline, 3)
    assert info.consecutive_stable_days == 2
    assert info.is_in_stability_period is True
    assert info.stability_start_date == DAY0 + timedelta(days=1)
    assert info.last_significant_change_date == DAY0
    assert info.stability_period_progress == pytest.approx(2 / 3)


async def test_stability_progress_is_capped(tracker, job, unchanged):
    for day in range(5):
        await tracker.record_data_update(job.id, DAY0 + timedelta(days=day), unchanged)
    timeline = await tracker.get_reconciliation_timeline(job.id)
    info = tracker.get_stability_period_info(timeline, 3)
    assert info.consecutive_stable_days == 5
    assert info.stability_period_progress == 1.0
    assert info.last_significant_change_date is None


async def test_estimate_completion_while_stabilizing(tracker, job, clock, unchanged):
    await tracker.record_data_update(job.id, DAY0, unchanged)
    # default cadence is 24h and 3 stable days are required
    assert await tracker.estimate_completion(job.id) == clock.now + timedelta(hours=48)


async def test_estimate_completion_once_stable(tracker, job, clock, unchanged):
    for day in range(3):
        await tracker.record_data_update(job.id, DAY0 + timedelta(days=day), unchanged)
    assert await tracker.estimate_completion(job.id) == clock.now + timedelta(hours=24)


async def test_estimate_completion_is_capped_by_deadline(orchestrator, tracker, clock):
    job = await orchestrator.start_reconciliation("7", "2024-01", {"maxReconciliationDays": 2, "stabilityPeriodDays": 2, "checkFrequencyHours": 72})
    assert await tracker.estimate_completion(job.id) == job.max_end_date


async def test_estimate_completion_for_terminal_jobs(orchestrator, tracker, job):
    await orchestrator.cancel_reconciliation(job.id)
    assert await tracker.estimate_completion(job.id) is None


async def test_readiness_reasons(tracker, job, clock, unchanged):
    not_ready = await tracker.is_ready_for_finalization(job.id)
    assert not_ready.is_ready is False
    assert "Stability period not met" in not_ready.reason

    clock.now = job.max_end_date
    deadline = await tracker.is_ready_for_finalization(job.id)
    assert deadline.is_ready is True
    assert deadline.reason == "Maximum reconciliation period reached"

    for day in range(3):
        await tracker.record_data_update(job.id, DAY0 + timedelta(days=day), unchanged)
    stable = await tracker.is_ready_for_finalization(job.id)
    assert stable.is_ready is True
    assert stable.reason.startswith("Stability period met")


async def test_progress_statistics(tracker, job, significant, minor, unchanged):
    await tracker.record_data_update(job.id, DAY0, significant)
    await tracker.record_data_update(job.id, DAY0 + timedelta(days=1), significant)
    await tracker.record_data_update(job.id, DAY0 + timedelta(days=2), minor)
    await tracker.record_data_update(job.id, DAY0 + timedelta(days=3), unchanged)

    stats = await tracker.get_progress_statistics(job.id)
    assert stats.total_entries == 4
    assert stats.significant_changes == 2
    assert stats.minor_changes == 1
    assert stats.no_change_entries == 1
    assert stats.oldest_entry == DAY0
    assert stats.most_recent_entry == DAY0 + timedelta(days=3)
    assert stats.average_time_between_entries == pytest.approx(86400.0)
    assert stats.change_frequency == pytest.approx(1.0)
    assert stats.stability_trend == "improving"
    assert stats.stability_period.consecutive_stable_days == 2


async def test_trend_declining_and_unknown(tracker, job, significant, unchanged):
    await tracker.record_data_update(job.id, DAY0, unchanged)
    await tracker.record_data_update(job.id, DAY0 + timedelta(days=1), unchanged)
    assert (await tracker.get_progress_statistics(job.id)).stability_trend == "unknown"

    await tracker.record_data_update(job.id, DAY0 + timedelta(days=2), significant)
    await tracker.record_data_update(job.id, DAY0 + timedelta(days=3), significant)
    assert (await tracker.get_progress_statistics(job.id)).stability_trend == "declining"


def test_count_stable_days_on_empty_timeline():
    assert count_stable_days([]) == 0
