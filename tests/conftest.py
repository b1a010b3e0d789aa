"""Pytest fixtures and factories.

Every test gets its own file-based SQLite database under ``tmp_path`` (storage
calls run in worker threads, so an in-memory single connection is not an
option), a controllable clock, and recording fakes for the external
collaborators.
"""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from month_end.config import BACKOFF_POLICY
from month_end.database import create_session_factory
from month_end.services.config_service import ReconciliationConfigService
from month_end.services.metrics import ReconciliationMetricsService
from month_end.services.orchestrator import ReconciliationOrchestrator
from month_end.services.storage_manager import ReconciliationStorageManager

from fakes import FakeClock, RecordingAlertSink, RecordingCacheUpdater, StaticDataSource, make_stats


@pytest.fixture(autouse=True)
def _no_backoff_delay(monkeypatch):
    """Retries run back to back in tests."""
    monkeypatch.setitem(BACKOFF_POLICY, "base_seconds", 0)
    monkeypatch.setitem(BACKOFF_POLICY, "jitter_pct", 0.0)


@pytest.fixture()
def clock():
    return FakeClock(datetime(2024, 2, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture()
def session_factory(tmp_path):
    engine, factory = create_session_factory(f"sqlite+pysqlite:///{tmp_path / 'reconciliation.db'}")
    yield factory
    engine.dispose()


@pytest.fixture()
async def storage(session_factory, clock):
    manager = ReconciliationStorageManager(session_factory, batch_size=10, flush_interval_seconds=0.05, clock=clock)
    yield manager
    await manager.close()


@pytest.fixture()
def config_service(tmp_path):
    return ReconciliationConfigService(tmp_path / "config" / "reconciliation.json")


@pytest.fixture()
def alert_sink():
    return RecordingAlertSink()


@pytest.fixture()
def cache_updater():
    return RecordingCacheUpdater()


@pytest.fixture()
def data_source():
    return StaticDataSource()


@pytest.fixture()
def metrics(alert_sink, clock):
    return ReconciliationMetricsService(alert_sink, clock=clock)


@pytest.fixture()
def orchestrator(storage, config_service, cache_updater, alert_sink, metrics, clock):
    return ReconciliationOrchestrator(
        storage,
        config_service,
        cache_updater=cache_updater,
        alert_sink=alert_sink,
        metrics=metrics,
        clock=clock,
    )


@pytest.fixture()
def stats_factory():
    return make_stats
