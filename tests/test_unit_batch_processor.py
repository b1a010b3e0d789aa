import asyncio

import pytest

from month_end.errors import StorageError
from month_end.jobs.batch_processor import BatchJob, ReconciliationBatchProcessor
from month_end.models.db.enums import JobStatus, ReconciliationPhase, TriggeredBy

from fakes import StaticDataSource, make_stats


class SlowDataSource(StaticDataSource):
    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def fetch(self, district_id, as_of):
        await asyncio.sleep(self.delay)
        return await super().fetch(district_id, as_of)


class FlakyDataSource(StaticDataSource):
    """Raises a storage error for the first ``failures`` fetches."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    async def fetch(self, district_id, as_of):
        if self.failures > 0:
            self.failures -= 1
            self.calls.append(district_id)
            raise StorageError("database is locked")
        return await super().fetch(district_id, as_of)


class GatedDataSource(StaticDataSource):
    """Holds every fetch until ``release`` is set; tracks how many run at once."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()
        self.in_flight = 0
        self.peak = 0

    async def fetch(self, district_id, as_of):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await self.release.wait()
            return await super().fetch(district_id, as_of)
        finally:
            self.in_flight -= 1


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached"
        await asyncio.sleep(0.01)


def stable_source(source, *districts):
    for district_id in districts:
        source.set(district_id, (make_stats(district_id), make_stats(district_id)))
    return source


@pytest.fixture()
def processor(orchestrator, data_source, clock):
    stable_source(data_source, "42", "61", "77")
    return ReconciliationBatchProcessor(orchestrator, data_source, max_concurrent_jobs=2, retry_attempts=2, timeout_seconds=5, clock=clock)


async def test_batch_runs_one_cycle_per_job(processor, orchestrator):
    results = await processor.process_batch([BatchJob("42", "2024-01"), BatchJob("61", "2024-01"), BatchJob("77", "2024-01")])

    assert [r.district_id for r in results] == ["42", "61", "77"]
    assert all(r.success and r.attempts == 1 for r in results)
    assert all(r.status.phase == ReconciliationPhase.STABILIZING for r in results)
    job = await orchestrator.get_job(results[0].job_id)
    assert job.triggered_by == TriggeredBy.AUTOMATIC
    assert processor.get_progress() == {"total_jobs": 3, "active_jobs": 0, "queued_jobs": 0, "completed_jobs": 3, "failed_jobs": 0}


async def test_higher_priority_runs_first(orchestrator, data_source, clock):
    stable_source(data_source, "42", "61", "77")
    processor = ReconciliationBatchProcessor(orchestrator, data_source, max_concurrent_jobs=1, clock=clock)

    results = await processor.process_batch([
        BatchJob("42", "2024-01", "low"),
        BatchJob("61", "2024-01", "high"),
        BatchJob("77", "2024-01", "normal"),
    ])
    assert data_source.calls == ["61", "77", "42"]
    assert [r.district_id for r in results] == ["42", "61", "77"]


async def test_dict_jobs_are_accepted(processor):
    results = await processor.process_batch([{"districtId": "42", "targetMonth": "2024-01", "priority": "high"}])
    assert results[0].success
    assert results[0].priority == "high"


async def test_unknown_priority_is_rejected(processor):
    with pytest.raises(ValueError):
        await processor.process_batch([BatchJob("42", "2024-01", "urgent")])


async def test_empty_batch(processor):
    assert await processor.process_batch([]) == []
    assert processor.get_progress()["total_jobs"] == 0


async def test_failure_is_isolated_and_not_retried(processor, orchestrator, data_source):
    data_source.errors["61"] = RuntimeError("unexpected payload")

    results = await processor.process_batch([BatchJob("42", "2024-01"), BatchJob("61", "2024-01")])
    ok, failed = results
    assert ok.success
    assert failed.success is False
    assert failed.attempts == 1
    assert failed.error == "unexpected payload"
    assert (await orchestrator.get_job(failed.job_id)).status == JobStatus.FAILED
    assert processor.get_progress()["failed_jobs"] == 1


async def test_storage_errors_are_retried(orchestrator, clock):
    source = stable_source(FlakyDataSource(failures=1), "42")
    processor = ReconciliationBatchProcessor(orchestrator, source, retry_attempts=2, clock=clock)

    (result,) = await processor.process_batch([BatchJob("42", "2024-01")])
    assert result.success
    assert result.attempts == 2


async def test_timeouts_are_retried_then_fail(orchestrator, clock):
    await orchestrator.start_reconciliation("42", "2024-01")
    source = stable_source(SlowDataSource(delay=5.0), "42")
    processor = ReconciliationBatchProcessor(orchestrator, source, retry_attempts=1, timeout_seconds=0.3, clock=clock)

    (result,) = await processor.process_batch([BatchJob("42", "2024-01")])
    assert result.success is False
    assert result.attempts == 2
    assert "exceeded" in result.error
    assert (await orchestrator.get_job(result.job_id)).status == JobStatus.FAILED


async def test_statistics_accumulate_across_batches(processor, data_source):
    await processor.process_batch([BatchJob("42", "2024-01"), BatchJob("61", "2024-01")])
    data_source.errors["77"] = RuntimeError("boom")
    await processor.process_batch([BatchJob("77", "2024-01")])

    stats = processor.get_statistics()
    assert stats["total_processed"] == 3
    assert stats["successful"] == 2
    assert stats["failed"] == 1
    assert stats["success_rate"] == pytest.approx(200 / 3)
    assert stats["total_processing_time"] >= stats["average_processing_time"] > 0


async def test_in_flight_cycles_never_exceed_the_limit(orchestrator, clock):
    districts = ("42", "61", "77", "88", "95")
    source = stable_source(GatedDataSource(), *districts)
    processor = ReconciliationBatchProcessor(orchestrator, source, max_concurrent_jobs=2, timeout_seconds=5, clock=clock)

    batch = asyncio.create_task(processor.process_batch([BatchJob(d, "2024-01") for d in districts]))
    await wait_until(lambda: source.in_flight == 2)
    await asyncio.sleep(0.05)
    assert source.in_flight == 2
    assert processor.get_progress() == {"total_jobs": 5, "active_jobs": 2, "queued_jobs": 3, "completed_jobs": 0, "failed_jobs": 0}

    source.release.set()
    results = await batch
    assert all(r.success for r in results)
    assert source.peak == 2
    assert processor.get_progress() == {"total_jobs": 5, "active_jobs": 0, "queued_jobs": 0, "completed_jobs": 5, "failed_jobs": 0}
