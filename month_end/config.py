"""Core configuration & tunable reconciliation rules.

Everything that may need tuning (default reconciliation windows, warning
limits, auto-extension increments, storage batching, retry/circuit thresholds,
batch concurrency, scheduler cadence, metrics retention) is centralized here so
it can be adjusted without diving into service logic. Values are module
constants overridable through environment variables; tests monkeypatch the
dicts directly where needed.

The per-run reconciliation configuration itself (the JSON document managed by
``ReconciliationConfigService``) starts from ``RECONCILIATION_DEFAULTS``.
"""
from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
	raw = os.getenv(name)
	return int(raw) if raw and raw.strip() else default


def _env_float(name: str, default: float) -> float:
	raw = os.getenv(name)
	return float(raw) if raw and raw.strip() else default


# ------------------------------- Persistence ------------------------------ #
DATABASE_URL: str = os.getenv("RECONCILIATION_DATABASE_URL", "sqlite+pysqlite:///./reconciliation.db")
RECONCILIATION_CONFIG_PATH: str = os.getenv("RECONCILIATION_CONFIG_PATH", "./cache/reconciliation/config.json")

# ------------------------- Reconciliation defaults ------------------------ #
# Keys mirror the camelCase JSON configuration document.
RECONCILIATION_DEFAULTS: dict[str, int | bool | dict[str, float | int]] = {
	"maxReconciliationDays": 15,
	"stabilityPeriodDays": 3,
	"checkFrequencyHours": 24,
	"significantChangeThresholds": {
		"membershipPercent": 1.0,
		"clubCountAbsolute": 1,
		"distinguishedPercent": 2.0,
	},
	"autoExtensionEnabled": True,
	"maxExtensionDays": 5,
}

# Values above/below these are accepted but reported as warnings.
CONFIG_WARNING_LIMITS: dict[str, float | int] = {
	"max_reconciliation_days": 30,
	"min_check_frequency_hours": 6,
	"max_check_frequency_hours": 48,
	"max_extension_days": 15,
	"membership_percent": 10.0,
	"distinguished_percent": 20.0,
}

# ----------------------------- Auto extension ----------------------------- #
AUTO_EXTENSION_SETTINGS: dict[str, int] = {
	# Days added per significant change (clamped to the remaining allowance)
	"increment_days": _env_int("AUTO_EXTENSION_INCREMENT_DAYS", 3),
}

# --------------------------------- Storage -------------------------------- #
STORAGE_SETTINGS: dict[str, int | float] = {
	"cache_max_size": _env_int("STORAGE_CACHE_MAX_SIZE", 256),
	"batch_size": _env_int("STORAGE_BATCH_SIZE", 10),
	"flush_interval_seconds": _env_float("STORAGE_FLUSH_INTERVAL_SECONDS", 0.5),
	"max_write_attempts": 3,
	# Terminal jobs older than this are removed by cleanup_old_jobs()
	"job_retention_days": 90,
}

# --------------------------------- Backoff -------------------------------- #
BACKOFF_POLICY: dict[str, int | float] = {
	"base_seconds": 0.2,
	"factor": 2,          # Exponential factor
	"max_seconds": 10,
	"max_attempts": 3,
	"jitter_pct": 0.10,   # +/-10% jitter
}

# ----------------------------- Circuit Breaker ---------------------------- #
CIRCUIT_BREAKER: dict[str, int | float] = {
	"failure_threshold": 3,          # Consecutive failures before OPEN
	"open_cooldown_seconds": 30,
	"half_open_probe_count": 3,      # Probes allowed in HALF_OPEN
}

# ------------------------------ Batch processor --------------------------- #
BATCH_SETTINGS: dict[str, int | float | dict[str, int]] = {
	"max_concurrent_jobs": _env_int("BATCH_MAX_CONCURRENT_JOBS", 5),
	"retry_attempts": 2,
	"timeout_seconds": _env_float("BATCH_TIMEOUT_SECONDS", 30.0),
	"priorities": {  # Lower number = higher priority
		"high": 0,
		"normal": 5,
		"low": 10,
	},
}

# -------------------------------- Scheduler ------------------------------- #
_districts_raw = os.getenv("RECONCILIATION_DISTRICTS", "").strip()
SCHEDULER_SETTINGS: dict[str, int | float | list[str]] = {
	"check_interval_minutes": _env_int("SCHEDULER_CHECK_INTERVAL_MINUTES", 60),
	"max_attempts": 3,
	"retry_delay_minutes": 60,
	# Month transition auto-scheduling only happens during the first N days.
	"auto_schedule_days": 5,
	"registry_retention_hours": 24,
	"districts": [d.strip() for d in _districts_raw.split(",") if d.strip()],
}

# --------------------------------- Metrics -------------------------------- #
METRICS_SETTINGS: dict[str, int] = {
	"retention_days": 90,
	"failure_window_days": 7,
	"frequent_failure_threshold": 3,
	"extension_pattern_threshold": 2,
}

__all__ = [
	"DATABASE_URL",
	"RECONCILIATION_CONFIG_PATH",
	"RECONCILIATION_DEFAULTS",
	"CONFIG_WARNING_LIMITS",
	"AUTO_EXTENSION_SETTINGS",
	"STORAGE_SETTINGS",
	"BACKOFF_POLICY",
	"CIRCUIT_BREAKER",
	"BATCH_SETTINGS",
	"SCHEDULER_SETTINGS",
	"METRICS_SETTINGS",
]
