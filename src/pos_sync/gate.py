"""Scheduling gate: per location x provider backoff and pause.

The gate decides whether a sync may start and records how each run ended:

- ``can_sync`` is checked before any network call. A location that is
  paused, or still inside its backoff window, is skipped.
- ``start_sync`` opens a run; ``log_success`` / ``log_error`` close it
  exactly once and update the gate row.
- Each failure pushes ``next_attempt_at`` further out with a capped,
  jittered exponential delay. At ``pause_threshold`` consecutive failures
  the row is paused for a fixed cool-down instead.
- Only a success resets the failure count.

Reading the gate row can fail (store outage). That is treated as "allowed":
a missed sync costs more than an extra call to a struggling provider.
"""

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from pos_sync.config import GateConfig
from pos_sync.exceptions import StoreError, ValidationError
from pos_sync.models import RunStatus, SyncRun, SyncStatus
from pos_sync.store.base import StateStore
from pos_sync.utils import Clock, millis_between, to_iso, utc_now

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500

REASON_PAUSED = "paused_until"
REASON_BACKOFF = "backoff"


@dataclass(frozen=True)
class GateDecision:
    """Outcome of :meth:`SchedulingGate.can_sync`.

    Attributes:
        ok: Whether a sync may start now.
        reason: ``"paused_until"`` or ``"backoff"`` when not ok.
        wait_ms: Milliseconds until the gate reopens (0 when ok).
    """

    ok: bool
    reason: Optional[str] = None
    wait_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "reason": self.reason, "wait_ms": self.wait_ms}


def compute_backoff_seconds(
    failures: int, config: Optional[GateConfig] = None, rng: Optional[random.Random] = None
) -> float:
    """Delay before the next attempt after ``failures`` consecutive failures.

    ``min(cap, base * 2**failures * jitter)`` with jitter drawn from
    ``[jitter_low, jitter_high)``. Jitter is applied before the cap, and
    the config guarantees ``2 * jitter_low >= jitter_high``, so the delay
    never decreases as failures grow.

    Args:
        failures: Consecutive failure count (>= 0).
        config: Gate tunables; defaults to :class:`GateConfig`.
        rng: Random source; pass a seeded one for reproducible delays.

    Returns:
        Delay in seconds.

    Examples:
        >>> compute_backoff_seconds(20) == GateConfig().backoff_cap_seconds
        True
    """
    config = config or GateConfig()
    rng = rng or random
    # Past this exponent every jittered value exceeds the cap anyway.
    exponent = min(max(failures, 0), 32)
    jitter = rng.uniform(config.jitter_low, config.jitter_high)
    return min(config.backoff_cap_seconds, config.backoff_base_seconds * (2**exponent) * jitter)


class SchedulingGate:
    """Persisted backoff/pause state machine guarding sync starts.

    Args:
        store: State store holding gate rows and runs.
        config: Backoff and pause tunables.
        clock: Returns the current aware UTC time.
        rng: Random source for jitter.
    """

    def __init__(
        self,
        store: StateStore,
        config: Optional[GateConfig] = None,
        clock: Clock = utc_now,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.config = config or GateConfig()
        self.clock = clock
        self.rng = rng or random.Random()

    def can_sync(
        self, location_id: str, provider: str, now: Optional[datetime] = None
    ) -> GateDecision:
        """Check whether a sync may start.

        Pause is checked before backoff, so a paused row always reports
        ``"paused_until"``.
        """
        now = now or self.clock()
        try:
            status = self.store.get_sync_status(location_id, provider)
        except StoreError as e:
            logger.warning(
                "Gate read failed for %s/%s, allowing sync: %s", location_id, provider, e
            )
            return GateDecision(ok=True)

        if status is None:
            return GateDecision(ok=True)
        if status.paused_until is not None and status.paused_until > now:
            return GateDecision(
                ok=False, reason=REASON_PAUSED, wait_ms=millis_between(status.paused_until, now)
            )
        if status.next_attempt_at is not None and status.next_attempt_at > now:
            return GateDecision(
                ok=False, reason=REASON_BACKOFF, wait_ms=millis_between(status.next_attempt_at, now)
            )
        return GateDecision(ok=True)

    def start_sync(
        self,
        location_id: str,
        provider: str,
        client_id: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> str:
        """Open a run in ``running`` state and return its id."""
        status = self.store.update_sync_status(location_id, provider, lambda s: s)
        run = SyncRun(
            run_id=str(uuid.uuid4()),
            client_id=client_id,
            location_id=location_id,
            provider=provider,
            attempt=status.failures + 1,
            started_at=self.clock(),
            meta=dict(meta or {}),
        )
        self.store.insert_run(run)
        logger.info(
            "Sync run %s started for %s/%s (attempt %d)",
            run.run_id, location_id, provider, run.attempt,
        )
        return run.run_id

    def _close_run(
        self,
        run_id: str,
        status: RunStatus,
        count: int,
        duration_ms: int,
        error: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> SyncRun:
        ended_at = self.clock()

        def close(run: SyncRun) -> SyncRun:
            if run.status != RunStatus.RUNNING:
                raise ValidationError(f"Sync run {run_id} is already closed ({run.status.value})")
            run.status = status
            run.ended_at = ended_at
            run.count = max(0, int(count))
            run.duration_ms = max(0, int(duration_ms))
            run.error = error
            if meta:
                run.meta.update(meta)
            return run

        try:
            return self.store.update_run(run_id, close)
        except StoreError as e:
            if str(e) == "not_found":
                raise ValidationError(f"Unknown sync run: {run_id}") from e
            raise

    def log_success(
        self,
        run_id: str,
        count: int,
        duration_ms: int,
        meta: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Close the run as ``success`` and reset the gate row.

        Returns:
            ``{"failures": 0, "last_run_at": <iso>}``
        """
        run = self._close_run(run_id, RunStatus.SUCCESS, count, duration_ms, meta=meta)
        finished = run.ended_at or self.clock()

        def reset(s: SyncStatus) -> SyncStatus:
            s.failures = 0
            s.next_attempt_at = None
            s.paused_until = None
            s.last_run_at = finished
            s.last_error = None
            return s

        self.store.update_sync_status(run.location_id, run.provider, reset)
        logger.info("Sync run %s succeeded: %d sales in %d ms", run_id, run.count, run.duration_ms)
        return {"failures": 0, "last_run_at": to_iso(finished)}

    def log_error(self, run_id: str, error: str, duration_ms: int) -> dict[str, Any]:
        """Close the run as ``error``, bump failures and schedule the retry.

        Returns:
            ``{"failures": n, "next_attempt_at": <iso>, "paused_until": <iso or None>}``
        """
        message = (error or "unknown error")[:MAX_ERROR_LENGTH]
        run = self._close_run(run_id, RunStatus.ERROR, 0, duration_ms, error=message)
        now = self.clock()

        def bump(s: SyncStatus) -> SyncStatus:
            s.failures += 1
            delay = compute_backoff_seconds(s.failures, self.config, self.rng)
            s.next_attempt_at = now + timedelta(seconds=delay)
            if s.failures >= self.config.pause_threshold:
                s.paused_until = now + timedelta(seconds=self.config.pause_seconds)
            s.last_error = message
            return s

        status = self.store.update_sync_status(run.location_id, run.provider, bump)
        if status.failures >= self.config.pause_threshold:
            logger.warning(
                "Sync for %s/%s paused until %s after %d failures",
                run.location_id, run.provider, to_iso(status.paused_until), status.failures,
            )
        else:
            logger.warning(
                "Sync run %s failed (%d consecutive), next attempt at %s: %s",
                run_id, status.failures, to_iso(status.next_attempt_at), message,
            )
        return {
            "failures": status.failures,
            "next_attempt_at": to_iso(status.next_attempt_at),
            "paused_until": to_iso(status.paused_until),
        }

    def status(self, location_id: str, provider: str) -> Optional[SyncStatus]:
        return self.store.get_sync_status(location_id, provider)

    def recent_runs(
        self, location_id: Optional[str] = None, provider: Optional[str] = None, limit: int = 20
    ) -> list[SyncRun]:
        return self.store.list_runs(location_id=location_id, provider=provider, limit=limit)
