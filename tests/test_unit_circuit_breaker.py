from datetime import datetime, timedelta, timezone

from month_end.utils.circuit_breaker import CircuitBreaker
from fakes import FakeClock


def test_circuit_opens_after_threshold_and_recovers_through_half_open():
    clock = FakeClock(datetime(2024, 2, 1, tzinfo=timezone.utc))
    cb = CircuitBreaker(failure_threshold=3, cooldown_seconds=30, half_open_probes=1, clock=clock)
    for _ in range(3):
        cb.record_failure("storage")
    allowed, reason = cb.allow_call("storage")
    assert allowed is False and reason == "circuit_open"
    assert cb.snapshot()["storage"]["state"] == "OPEN"

    clock.advance(seconds=31)
    allowed, reason = cb.allow_call("storage")
    assert allowed is True and reason is None
    # only one probe while half open
    assert cb.allow_call("storage") == (False, "half_open_probe_exhausted")

    cb.record_success("storage")
    assert cb.snapshot()["storage"]["state"] == "CLOSED"
    assert cb.allow_call("storage") == (True, None)


def test_failure_while_half_open_reopens():
    clock = FakeClock(datetime(2024, 2, 1, tzinfo=timezone.utc))
    cb = CircuitBreaker(failure_threshold=1, cooldown_seconds=10, clock=clock)
    cb.record_failure("storage")
    clock.advance(seconds=11)
    assert cb.allow_call("storage")[0] is True
    cb.record_failure("storage")
    st = cb._states["storage"]
    assert st.state == "OPEN"
    assert st.opened_at == clock.now
    assert clock.now - timedelta(seconds=1) < st.opened_at


def test_resources_are_isolated():
    cb = CircuitBreaker(failure_threshold=1)
    cb.record_failure("storage")
    assert cb.allow_call("storage")[0] is False
    assert cb.allow_call("alerts") == (True, None)
