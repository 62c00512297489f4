"""Tests for the scheduling gate (backoff, pause and run bookkeeping)."""

from __future__ import annotations

import random
from datetime import timedelta

import pytest

from pos_sync.config import GateConfig
from pos_sync.exceptions import ConfigError, StoreError, ValidationError
from pos_sync.gate import (
    MAX_ERROR_LENGTH,
    REASON_BACKOFF,
    REASON_PAUSED,
    SchedulingGate,
    compute_backoff_seconds,
)
from pos_sync.models import RunStatus
from pos_sync.store.memory import MemoryStore
from support import START, FakeClock


class FixedRng:
    """Jitter source that always returns the same factor."""

    def __init__(self, factor: float = 1.0) -> None:
        self.factor = factor

    def uniform(self, a: float, b: float) -> float:
        return self.factor


@pytest.fixture
def gate(store: MemoryStore, clock: FakeClock) -> SchedulingGate:
    return SchedulingGate(store, GateConfig(), clock=clock, rng=FixedRng(1.0))


def _fail(gate: SchedulingGate, n: int = 1, error: str = "boom") -> dict:
    result = {}
    for _ in range(n):
        run_id = gate.start_sync("loc-1", "fudo", "client-1")
        result = gate.log_error(run_id, error, 10)
    return result


# =============================================================================
# Backoff formula
# =============================================================================


@pytest.mark.parametrize(
    "failures,expected",
    [(0, 60.0), (1, 120.0), (2, 240.0), (4, 960.0), (5, 1800.0), (30, 1800.0)],
)
def test_backoff_without_jitter(failures: int, expected: float) -> None:
    assert compute_backoff_seconds(failures, GateConfig(), FixedRng(1.0)) == expected


def test_backoff_jitter_is_applied_before_cap() -> None:
    config = GateConfig()
    assert compute_backoff_seconds(1, config, FixedRng(0.9)) == pytest.approx(108.0)
    assert compute_backoff_seconds(1, config, FixedRng(1.1)) == pytest.approx(132.0)
    assert compute_backoff_seconds(10, config, FixedRng(0.9)) == 1800.0


def test_backoff_is_monotone_under_any_jitter() -> None:
    config = GateConfig()
    rng = random.Random(1234)
    for failures in range(1, 12):
        worst_next = compute_backoff_seconds(failures + 1, config, FixedRng(config.jitter_low))
        best_now = compute_backoff_seconds(failures, config, FixedRng(config.jitter_high))
        assert worst_next >= best_now
        # and with real random jitter, always within [base*2^n*low, cap]
        delay = compute_backoff_seconds(failures, config, rng)
        assert min(config.backoff_cap_seconds, 60 * 2**failures * 0.9) <= delay <= 1800.0


def test_gate_config_rejects_non_monotone_jitter() -> None:
    with pytest.raises(ConfigError):
        GateConfig(jitter_low=0.5, jitter_high=1.5)
    with pytest.raises(ConfigError):
        GateConfig(pause_threshold=0)


# =============================================================================
# can_sync
# =============================================================================


def test_new_location_is_allowed(gate: SchedulingGate) -> None:
    decision = gate.can_sync("loc-1", "fudo")
    assert decision.ok
    assert decision.reason is None
    assert decision.wait_ms == 0


def test_failure_sets_backoff_window(gate: SchedulingGate, clock: FakeClock) -> None:
    result = _fail(gate)
    assert result["failures"] == 1
    assert result["paused_until"] is None
    assert result["next_attempt_at"] == "2025-01-15T12:02:00Z"

    decision = gate.can_sync("loc-1", "fudo")
    assert not decision.ok
    assert decision.reason == REASON_BACKOFF
    assert decision.wait_ms == 120_000

    clock.advance(60)
    assert gate.can_sync("loc-1", "fudo").wait_ms == 60_000

    clock.advance(60)
    assert gate.can_sync("loc-1", "fudo").ok


def test_other_keys_are_unaffected(gate: SchedulingGate) -> None:
    _fail(gate)
    assert gate.can_sync("loc-2", "fudo").ok
    assert gate.can_sync("loc-1", "bistrosoft").ok


def test_pause_after_threshold(gate: SchedulingGate, clock: FakeClock) -> None:
    for _ in range(4):
        result = _fail(gate)
        assert result["paused_until"] is None
        clock.advance(3600)

    result = _fail(gate)
    assert result["failures"] == 5
    assert result["paused_until"] == "2025-01-15T18:00:00Z"

    decision = gate.can_sync("loc-1", "fudo")
    assert decision.reason == REASON_PAUSED
    assert decision.wait_ms == 2 * 60 * 60 * 1000


def test_pause_reported_even_when_backoff_also_pending(
    store: MemoryStore, clock: FakeClock
) -> None:
    gate = SchedulingGate(
        store, GateConfig(pause_threshold=1, pause_seconds=30), clock=clock, rng=FixedRng(1.0)
    )
    _fail(gate)
    decision = gate.can_sync("loc-1", "fudo")
    assert decision.reason == REASON_PAUSED
    assert decision.wait_ms == 30_000

    clock.advance(31)
    decision = gate.can_sync("loc-1", "fudo")
    assert decision.reason == REASON_BACKOFF


def test_success_resets_failures(gate: SchedulingGate, clock: FakeClock) -> None:
    _fail(gate, 3)
    clock.advance(3600)
    run_id = gate.start_sync("loc-1", "fudo", "client-1")
    result = gate.log_success(run_id, count=12, duration_ms=450)

    assert result == {"failures": 0, "last_run_at": "2025-01-15T13:00:00Z"}
    status = gate.status("loc-1", "fudo")
    assert status.failures == 0
    assert status.next_attempt_at is None
    assert status.paused_until is None
    assert status.last_error is None
    assert gate.can_sync("loc-1", "fudo").ok


def test_error_keeps_last_run_at(gate: SchedulingGate, clock: FakeClock) -> None:
    run_id = gate.start_sync("loc-1", "fudo")
    gate.log_success(run_id, 1, 1)
    clock.advance(600)
    _fail(gate)
    assert gate.status("loc-1", "fudo").last_run_at == START


def test_store_read_failure_fails_open(clock: FakeClock) -> None:
    class BrokenStore(MemoryStore):
        def get_sync_status(self, location_id, provider):
            raise StoreError("disk on fire")

    gate = SchedulingGate(BrokenStore(), clock=clock)
    assert gate.can_sync("loc-1", "fudo").ok


# =============================================================================
# Runs
# =============================================================================


def test_start_sync_records_attempt_number(gate: SchedulingGate, store: MemoryStore) -> None:
    _fail(gate, 2)
    run_id = gate.start_sync("loc-1", "fudo", "client-1", meta={"correlation_id": "abc"})
    run = store.get_run(run_id)
    assert run.status == RunStatus.RUNNING
    assert run.attempt == 3
    assert run.client_id == "client-1"
    assert run.meta == {"correlation_id": "abc"}


def test_run_is_closed_exactly_once(gate: SchedulingGate, store: MemoryStore) -> None:
    run_id = gate.start_sync("loc-1", "fudo")
    gate.log_success(run_id, count=5, duration_ms=100)
    with pytest.raises(ValidationError, match="already closed"):
        gate.log_success(run_id, count=5, duration_ms=100)
    with pytest.raises(ValidationError, match="already closed"):
        gate.log_error(run_id, "late", 1)

    run = store.get_run(run_id)
    assert run.status == RunStatus.SUCCESS
    assert run.count == 5
    assert gate.status("loc-1", "fudo").failures == 0


def test_unknown_run_id(gate: SchedulingGate) -> None:
    with pytest.raises(ValidationError, match="Unknown sync run"):
        gate.log_error("nope", "boom", 1)


def test_error_message_is_truncated(gate: SchedulingGate, store: MemoryStore) -> None:
    run_id = gate.start_sync("loc-1", "fudo")
    gate.log_error(run_id, "x" * 2000, 5)
    assert len(store.get_run(run_id).error) == MAX_ERROR_LENGTH
    assert len(gate.status("loc-1", "fudo").last_error) == MAX_ERROR_LENGTH


def test_recent_runs_newest_first(gate: SchedulingGate, clock: FakeClock) -> None:
    first = gate.start_sync("loc-1", "fudo")
    clock.advance(1)
    second = gate.start_sync("loc-1", "fudo")
    clock.advance(1)
    gate.start_sync("loc-2", "fudo")

    runs = gate.recent_runs(location_id="loc-1")
    assert [r.run_id for r in runs] == [second, first]
    assert len(gate.recent_runs(limit=1)) == 1


def test_next_attempt_is_relative_to_failure_time(gate: SchedulingGate, clock: FakeClock) -> None:
    run_id = gate.start_sync("loc-1", "fudo")
    clock.advance(30)
    gate.log_error(run_id, "boom", 30_000)
    status = gate.status("loc-1", "fudo")
    assert status.next_attempt_at == START + timedelta(seconds=30 + 120)
