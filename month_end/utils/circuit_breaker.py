"""Process-local circuit breaker for the orchestrator's storage calls.

CLOSED counts consecutive failures; at ``failure_threshold`` the circuit
OPENs and rejects calls for ``cooldown_seconds``. After the cooldown it goes
HALF_OPEN and lets ``half_open_probes`` calls through: a success closes it, a
failure reopens it.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from month_end.config import CIRCUIT_BREAKER
from month_end.utils.logger import get_logger
from month_end.utils.time import utc_now

logger = get_logger(__name__)

REJECT_OPEN = "circuit_open"
REJECT_PROBES_EXHAUSTED = "half_open_probe_exhausted"


class CircuitState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(slots=True)
class BreakerState:
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    opened_at: Optional[datetime] = None
    probes_used: int = 0

    def trip(self, now: datetime) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = now
        self.probes_used = 0

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.opened_at = None
        self.probes_used = 0


class CircuitBreaker:
    """One breaker state per resource name (e.g. ``"storage"``)."""

    def __init__(
        self,
        *,
        failure_threshold: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
        half_open_probes: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.failure_threshold = int(failure_threshold if failure_threshold is not None else CIRCUIT_BREAKER["failure_threshold"])
        self.cooldown = timedelta(seconds=float(cooldown_seconds if cooldown_seconds is not None else CIRCUIT_BREAKER["open_cooldown_seconds"]))
        self.probe_limit = int(half_open_probes if half_open_probes is not None else CIRCUIT_BREAKER["half_open_probe_count"])
        self._clock = clock
        self._states: Dict[str, BreakerState] = {}

    def _state(self, resource: str) -> BreakerState:
        state = self._states.get(resource)
        if state is None:
            state = self._states[resource] = BreakerState()
        return state

    def allow_call(self, resource: str) -> Tuple[bool, Optional[str]]:
        """``(allowed, reject_reason)``; a HALF_OPEN admission consumes one probe."""
        st = self._state(resource)
        if st.state is CircuitState.OPEN:
            if st.opened_at is None or self._clock() - st.opened_at < self.cooldown:
                return False, REJECT_OPEN
            st.state = CircuitState.HALF_OPEN
            st.probes_used = 0
            logger.info("Circuit half-open", resource=resource)
        if st.state is CircuitState.HALF_OPEN:
            if st.probes_used >= self.probe_limit:
                return False, REJECT_PROBES_EXHAUSTED
            st.probes_used += 1
        return True, None

    def record_success(self, resource: str) -> None:
        st = self._state(resource)
        if st.state is not CircuitState.CLOSED:
            logger.info("Circuit closed", resource=resource)
        st.reset()

    def record_failure(self, resource: str) -> None:
        st = self._state(resource)
        st.failures += 1
        if st.state is CircuitState.HALF_OPEN or (st.state is CircuitState.CLOSED and st.failures >= self.failure_threshold):
            st.trip(self._clock())
            logger.warning("Circuit opened", resource=resource, failures=st.failures)

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        return {
            resource: {
                "state": st.state.value,
                "failures": st.failures,
                "opened_at": st.opened_at.isoformat() if st.opened_at else None,
                "probes_used": st.probes_used,
            }
            for resource, st in self._states.items()
        }


__all__ = ["BreakerState", "CircuitBreaker", "CircuitState"]
