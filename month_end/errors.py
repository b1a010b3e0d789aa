"""Reconciliation error definitions."""

from __future__ import annotations

from typing import Sequence


class ReconciliationError(Exception):
    """Base class for every error raised by the reconciliation core."""


class ConfigValidationError(ReconciliationError, ValueError):
    """Configuration failed validation; ``errors`` holds one message per violation."""

    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__("Invalid reconciliation configuration: " + "; ".join(self.errors))


class JobNotFoundError(ReconciliationError, LookupError):
    """Mutating operation targeted an unknown job id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Reconciliation job not found: {job_id}")


class StateError(ReconciliationError):
    """Operation not allowed in the job's current state (finalize too early, extension cap, ...)."""


class StorageError(ReconciliationError):
    """Durable I/O failed after bounded retries."""


class CycleTimeoutError(ReconciliationError, TimeoutError):
    """A reconciliation cycle exceeded its allotted time."""


class DetectionError(ReconciliationError):
    """Change computation failed; the input snapshots are malformed."""


class CacheUpdateError(ReconciliationError):
    """The cache-update collaborator failed to commit reconciled data."""


__all__ = [
    "ReconciliationError",
    "ConfigValidationError",
    "JobNotFoundError",
    "StateError",
    "StorageError",
    "CycleTimeoutError",
    "DetectionError",
    "CacheUpdateError",
]
