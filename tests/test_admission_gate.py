from __future__ import annotations

import pytest

from agentflow.core.admission import AdmissionGate, AdmissionRegistry
from agentflow.core.config import AdmissionSettings
from agentflow.core.errors import AdmissionRejected


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_gate_rejects_sixth_submission_within_window() -> None:
    gate = AdmissionGate(limit=5, window_seconds=10.0)

    assert all(gate.check_and_record(float(second)) for second in range(5))
    assert gate.check_and_record(9.0) is False


def test_gate_accepts_once_oldest_entry_expires() -> None:
    gate = AdmissionGate(limit=5, window_seconds=10.0)
    for second in range(5):
        assert gate.check_and_record(float(second))

    assert gate.check_and_record(10.001) is True
    assert gate.pending(10.001) == 5


def test_entry_aged_exactly_one_window_has_expired() -> None:
    gate = AdmissionGate(limit=1, window_seconds=10.0)
    assert gate.check_and_record(0.0)

    assert gate.check_and_record(9.999) is False
    assert gate.check_and_record(10.0) is True


def test_rejected_submission_is_not_recorded() -> None:
    gate = AdmissionGate(limit=2, window_seconds=10.0)
    gate.check_and_record(0.0)
    gate.check_and_record(1.0)

    for _ in range(10):
        assert gate.check_and_record(5.0) is False

    assert gate.pending(5.0) == 2
    assert gate.last_seen() == 1.0
    # Only the first entry has aged out.
    assert gate.check_and_record(10.0) is True
    assert gate.check_and_record(10.5) is False


def test_empty_window_admits_and_reports_no_wait() -> None:
    gate = AdmissionGate(limit=5, window_seconds=10.0)

    assert gate.pending(100.0) == 0
    assert gate.retry_after(100.0) == 0.0
    assert gate.last_seen() is None
    assert gate.check_and_record(100.0) is True


def test_retry_after_counts_down_from_oldest_entry() -> None:
    gate = AdmissionGate(limit=2, window_seconds=10.0)
    gate.check_and_record(2.0)
    gate.check_and_record(3.0)

    assert gate.retry_after(5.0) == pytest.approx(7.0)


@pytest.mark.parametrize("limit, window", [(0, 10.0), (5, 0.0), (5, -1.0)])
def test_gate_validates_configuration(limit: int, window: float) -> None:
    with pytest.raises(ValueError):
        AdmissionGate(limit=limit, window_seconds=window)


def test_registry_tracks_callers_independently() -> None:
    clock = FakeClock()
    registry = AdmissionRegistry(limit=2, window_seconds=10.0, clock=clock)

    assert registry.admit("alpha") == (True, 0.0)
    assert registry.admit("alpha") == (True, 0.0)
    allowed, retry_after = registry.admit("alpha")
    assert allowed is False
    assert retry_after == pytest.approx(10.0)

    assert registry.admit("beta") == (True, 0.0)
    assert registry.tracked_callers() == 2

    clock.advance(10.0)
    assert registry.admit("alpha") == (True, 0.0)


def test_registry_enforce_raises_with_retry_after() -> None:
    clock = FakeClock()
    registry = AdmissionRegistry(limit=1, window_seconds=10.0, clock=clock)
    registry.enforce("caller")
    clock.advance(4.0)

    with pytest.raises(AdmissionRejected) as excinfo:
        registry.enforce("caller")

    assert excinfo.value.retry_after == pytest.approx(6.0)


def test_registry_prunes_idle_callers_when_full() -> None:
    clock = FakeClock()
    registry = AdmissionRegistry(limit=1, window_seconds=10.0, max_tracked_callers=2, clock=clock)
    registry.admit("first")
    registry.admit("second")

    clock.advance(11.0)
    registry.admit("third")

    assert registry.tracked_callers() == 1


def test_registry_evicts_least_recently_seen_active_caller_when_full() -> None:
    clock = FakeClock()
    registry = AdmissionRegistry(limit=1, window_seconds=10.0, max_tracked_callers=2, clock=clock)
    registry.admit("first")
    clock.advance(1.0)
    registry.admit("second")
    clock.advance(1.0)

    assert registry.admit("third") == (True, 0.0)
    assert registry.tracked_callers() == 2

    allowed, retry_after = registry.admit("second")
    assert allowed is False
    assert retry_after == pytest.approx(9.0)

    clock.advance(1.0)
    assert registry.admit("first") == (True, 0.0)
    assert registry.tracked_callers() == 2


def test_registry_from_settings() -> None:
    registry = AdmissionRegistry.from_settings(AdmissionSettings(limit=3, window_seconds=2.5))

    assert registry.limit == 3
    assert registry.window_seconds == 2.5
    registry.reset()
    assert registry.tracked_callers() == 0
