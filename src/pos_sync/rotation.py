"""Credential rotation job and its circuit breaker.

Providers such as Fudo hand out short-lived access tokens. A scheduled
batch re-issues them before they expire. The batch is guarded by a
circuit breaker that is separate from the per-sync scheduling gate:

    closed --(N counted failures)--> open --(resume_at passes)--> half_open
    half_open --(trial succeeds)--> closed
    half_open --(trial fails)--> open, for twice as long (capped)

Breakers are scoped: one global scope per provider (``"fudo"``) blocks the
whole batch, and one per location (``"fudo:<location_id>"``) skips a
single credential. Only failures that say something about provider
health count toward them: network errors, 429 and 5xx. A rejected key
is the customer's problem, not the provider's.

Each credential is rotated in a fixed order: decrypt the current bundle,
request a new token, validate it against the provider, and only then
swap the stored bundle in one atomic write. A token that fails
validation is never persisted.
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pos_sync import vault
from pos_sync.config import RotationConfig, Settings
from pos_sync.exceptions import (
    AuthenticationFailed,
    CircuitOpen,
    PosSyncError,
    ProviderError,
    StoreError,
    TransientProviderError,
    ValidationError,
)
from pos_sync.models import (
    BreakerState,
    CredentialRecord,
    CredentialStatus,
    RotationBreakerState,
    RotationMetric,
)
from pos_sync.providers.base import ProviderAdapter, TokenIssuer
from pos_sync.providers.registry import get_adapter, list_providers
from pos_sync.store.base import StateStore
from pos_sync.utils import Clock, to_iso, utc_now

logger = logging.getLogger(__name__)

LEASE_NAME = "credential-rotation"

AdapterFactory = Callable[[str, dict[str, Any]], ProviderAdapter]


@dataclass(frozen=True)
class BreakerDecision:
    """Outcome of :meth:`RotationBreaker.check`.

    Attributes:
        allowed: Whether rotations may run.
        state: Current state after any open -> half_open transition.
        test_mode: True in half-open state: run exactly one trial.
        resume_at: When an open breaker allows its trial.
    """

    allowed: bool
    state: BreakerState
    test_mode: bool = False
    resume_at: Optional[datetime] = None


class RotationBreaker:
    """Persisted closed/open/half-open breaker for one scope.

    Args:
        store: State store holding breaker rows.
        scope: Breaker key, e.g. ``"fudo"`` or ``"fudo:<location_id>"``.
        config: Thresholds and open durations.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        store: StateStore,
        scope: str,
        config: Optional[RotationConfig] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.scope = scope
        self.config = config or RotationConfig()
        self.clock = clock

    @staticmethod
    def _resume_passed(s: RotationBreakerState, now: datetime) -> bool:
        return s.state == BreakerState.OPEN and (s.resume_at is None or s.resume_at <= now)

    def state(self) -> RotationBreakerState:
        return self.store.get_breaker(self.scope) or RotationBreakerState(scope=self.scope)

    def check(self, now: Optional[datetime] = None) -> BreakerDecision:
        """Report whether rotations may run, moving open -> half_open when due."""
        now = now or self.clock()
        current = self.state()
        if self._resume_passed(current, now):

            def to_half_open(s: RotationBreakerState) -> RotationBreakerState:
                if self._resume_passed(s, now):
                    s.state = BreakerState.HALF_OPEN
                return s

            current = self.store.update_breaker(self.scope, to_half_open)
            logger.info("Rotation breaker %s is half-open", self.scope)

        if current.state == BreakerState.OPEN:
            return BreakerDecision(allowed=False, state=current.state, resume_at=current.resume_at)
        if current.state == BreakerState.HALF_OPEN:
            return BreakerDecision(allowed=True, state=current.state, test_mode=True)
        return BreakerDecision(allowed=True, state=current.state)

    def record_success(self, now: Optional[datetime] = None) -> RotationBreakerState:
        """A rotation succeeded: close the breaker and forget past failures."""

        def succeed(s: RotationBreakerState) -> RotationBreakerState:
            if s.state != BreakerState.CLOSED:
                logger.info("Rotation breaker %s closed after successful trial", self.scope)
            s.state = BreakerState.CLOSED
            s.failure_count = 0
            s.resume_at = None
            s.open_seconds = 0.0
            s.opened_at = None
            return s

        return self.store.update_breaker(self.scope, succeed)

    def record_failure(self, now: Optional[datetime] = None) -> RotationBreakerState:
        """A counted rotation failure happened; open the breaker if due."""
        now = now or self.clock()
        cfg = self.config

        def fail(s: RotationBreakerState) -> RotationBreakerState:
            s.failure_count += 1
            trial_failed = s.state == BreakerState.HALF_OPEN or self._resume_passed(s, now)
            if trial_failed:
                s.open_seconds = min(cfg.max_open_seconds, max(s.open_seconds, cfg.open_seconds) * 2)
            elif s.state == BreakerState.CLOSED and s.failure_count >= cfg.breaker_threshold:
                s.open_seconds = cfg.open_seconds
            else:
                return s
            s.state = BreakerState.OPEN
            s.opened_at = now
            s.resume_at = now + timedelta(seconds=s.open_seconds)
            return s

        updated = self.store.update_breaker(self.scope, fail)
        if updated.state == BreakerState.OPEN and updated.opened_at == now:
            logger.warning(
                "Rotation breaker %s opened after %d failures, resuming at %s",
                self.scope, updated.failure_count, to_iso(updated.resume_at),
            )
        return updated


@dataclass
class RotationAttempt:
    location_id: str
    provider: str
    rotation_id: str
    status: str = "pending"
    error: Optional[str] = None
    category: Optional[str] = None
    fingerprint: Optional[str] = None
    expires_at: Optional[str] = None


@dataclass
class RotationSummary:
    """Result of one rotation batch."""

    status: str = "ok"
    message: str = ""
    total_candidates: int = 0
    processed: int = 0
    successes: int = 0
    failures: int = 0
    idempotent_hits: int = 0
    circuit_breaker_blocked: int = 0
    breaker_state: str = BreakerState.CLOSED.value
    attempts: list[RotationAttempt] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class _SwapAborted(Exception):
    """Internal: the stored credential moved on while we were rotating it."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def rotation_id_for(record: CredentialRecord) -> str:
    """Deterministic id for rotating *this* version of a credential.

    Two workers rotating the same stored bundle derive the same id, so the
    second one sees its rotation already applied.
    """
    raw = f"{record.location_id}|{record.provider}|{record.cipher_bundle.iv}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


class CredentialRotator:
    """Batch job re-issuing provider tokens before they expire.

    Args:
        store: State store holding credentials, breakers and leases.
        key_hex: Vault key for the cipher bundles.
        config: Rotation tunables.
        settings: Used by the default adapter factory (timeouts, URLs).
        adapter_factory: ``(provider, credentials) -> adapter``; the adapter
            must implement :class:`TokenIssuer`.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        store: StateStore,
        key_hex: str,
        config: Optional[RotationConfig] = None,
        settings: Optional[Settings] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        clock: Clock = utc_now,
    ) -> None:
        vault.load_key(key_hex)
        self.store = store
        self.key_hex = key_hex
        self.config = config or (settings.rotation if settings else RotationConfig())
        self.settings = settings
        self.adapter_factory = adapter_factory or self._default_factory
        self.clock = clock

    def _default_factory(self, provider: str, credentials: dict[str, Any]) -> ProviderAdapter:
        api_key = credentials.get("apiKey") or credentials.get("token") or ""
        return get_adapter(provider, api_key=api_key, settings=self.settings, credentials=credentials)

    def breaker(self, scope: str) -> RotationBreaker:
        return RotationBreaker(self.store, scope, self.config, self.clock)

    def candidates(self, now: datetime) -> list[CredentialRecord]:
        """Connected credentials due for rotation, soonest expiry first."""
        rotating = {m.id for m in list_providers() if m.supports_rotation}
        horizon = now + timedelta(days=self.config.expiry_window_days)
        cooldown_cutoff = now - timedelta(seconds=self.config.cooldown_seconds)

        due = []
        for record in self.store.list_credentials(status=CredentialStatus.CONNECTED):
            if record.provider not in rotating:
                continue
            if record.expires_at is not None and record.expires_at > horizon:
                continue
            if record.last_rotation_at is not None and record.last_rotation_at > cooldown_cutoff:
                continue
            due.append(record)

        oldest = datetime.min.replace(tzinfo=timezone.utc)
        due.sort(key=lambda r: (r.expires_at or oldest, r.location_id))
        return due[: self.config.batch_limit]

    def run_batch(self, now: Optional[datetime] = None, provider: str = "fudo") -> RotationSummary:
        """Rotate every due credential of ``provider``.

        Returns:
            Summary with per-credential attempts. ``status`` is ``"skipped"``
            when another worker holds the job lease.

        Raises:
            CircuitOpen: If the provider's global breaker is open.
        """
        now = now or self.clock()
        holder = str(uuid.uuid4())
        if not self.store.claim_lease(LEASE_NAME, holder, self.config.lease_seconds, now):
            logger.info("Rotation job already running elsewhere, skipping")
            return RotationSummary(status="skipped", message="rotation job already running")
        try:
            started = time.monotonic()
            summary = self._run_batch(now, provider)
            self._record_metrics(summary, provider, int((time.monotonic() - started) * 1000))
            return summary
        finally:
            self.store.release_lease(LEASE_NAME, holder)

    def _record_metrics(self, summary: RotationSummary, provider: str, duration_ms: int) -> None:
        """Log the batch summary and persist it with one row per attempt."""
        job_run_id = str(uuid.uuid4())
        recorded_at = self.clock()
        counts = {
            "total_candidates": summary.total_candidates,
            "successes": summary.successes,
            "failures": summary.failures,
            "idempotent_hits": summary.idempotent_hits,
            "circuit_breaker_blocked": summary.circuit_breaker_blocked,
            "breaker_state": summary.breaker_state,
        }
        logger.info(
            "Rotation metrics for %s batch %s: processed=%d duration_ms=%d %s",
            provider, job_run_id, summary.processed, duration_ms, counts,
        )
        metrics = [
            RotationMetric(
                metric_id=str(uuid.uuid4()),
                job_run_id=job_run_id,
                provider=provider,
                metric_type="job_summary",
                recorded_at=recorded_at,
                value=summary.processed,
                duration_ms=duration_ms,
                meta=counts,
            )
        ]
        # Idempotent hits were already counted by the worker that applied them.
        for attempt in summary.attempts:
            if attempt.status == "idempotent":
                continue
            metrics.append(
                RotationMetric(
                    metric_id=str(uuid.uuid4()),
                    job_run_id=job_run_id,
                    provider=provider,
                    metric_type="rotation_attempt",
                    recorded_at=recorded_at,
                    value=1 if attempt.status == "completed" else 0,
                    location_id=attempt.location_id,
                    meta={
                        "rotation_id": attempt.rotation_id,
                        "status": attempt.status,
                        "error": attempt.error,
                        "category": attempt.category,
                    },
                )
            )
        try:
            for metric in metrics:
                self.store.record_rotation_metric(metric)
        except StoreError as e:
            logger.error("Could not record rotation metrics for batch %s: %s", job_run_id, e)

    def _run_batch(self, now: datetime, provider: str) -> RotationSummary:
        global_breaker = self.breaker(provider)
        decision = global_breaker.check(now)
        if not decision.allowed:
            raise CircuitOpen(provider, decision.resume_at)

        candidates = [c for c in self.candidates(now) if c.provider == provider]
        summary = RotationSummary(total_candidates=len(candidates), breaker_state=decision.state.value)
        if decision.test_mode:
            logger.info("Rotation breaker %s half-open: trying a single credential", provider)
            candidates = candidates[:1]
        if not candidates:
            summary.message = "no credentials need rotation"
            return summary

        for index, record in enumerate(candidates):
            local = self.breaker(f"{provider}:{record.location_id}")
            local_decision = local.check(now)
            if not local_decision.allowed:
                summary.circuit_breaker_blocked += 1
                summary.attempts.append(
                    RotationAttempt(
                        location_id=record.location_id,
                        provider=record.provider,
                        rotation_id=rotation_id_for(record),
                        status="blocked",
                    )
                )
                continue

            attempt = self.rotate_one(record, now)
            summary.attempts.append(attempt)
            summary.processed += 1
            if attempt.status == "completed":
                summary.successes += 1
                local.record_success(now)
                global_breaker.record_success(now)
            elif attempt.status == "idempotent":
                summary.idempotent_hits += 1
            elif attempt.status == "failed":
                summary.failures += 1
                if attempt.category in ("network", "rate_limited", "5xx"):
                    local.record_failure(now)
                    state = global_breaker.record_failure(now)
                    if state.state == BreakerState.OPEN:
                        logger.warning("Global rotation breaker opened, stopping batch")
                        summary.circuit_breaker_blocked += len(candidates) - index - 1
                        summary.breaker_state = state.state.value
                        break

        summary.breaker_state = global_breaker.state().state.value
        summary.message = f"{summary.successes}/{summary.processed} rotations succeeded"
        logger.info(
            "Rotation batch finished: %d candidates, %d processed, %d ok, %d failed",
            summary.total_candidates, summary.processed, summary.successes, summary.failures,
        )
        return summary

    def rotate_one(self, record: CredentialRecord, now: Optional[datetime] = None) -> RotationAttempt:
        """Rotate one credential: decrypt, issue, validate, swap.

        Domain errors are captured in the returned attempt; anything else
        propagates.
        """
        now = now or self.clock()
        rotation_id = rotation_id_for(record)
        attempt = RotationAttempt(
            location_id=record.location_id, provider=record.provider, rotation_id=rotation_id
        )
        staged_from = record.cipher_bundle
        try:
            credentials = vault.decrypt(self.key_hex, record.cipher_bundle)
            adapter = self.adapter_factory(record.provider, credentials)
            if not isinstance(adapter, TokenIssuer):
                raise ValidationError(f"Provider {record.provider} does not support token rotation")

            issued = adapter.request_token(credentials)
            if not adapter.validate_token(issued.access_token, credentials):
                raise AuthenticationFailed("Provider rejected the newly issued token")

            expires_at = issued.expires_at(now)
            new_payload = dict(credentials)
            new_payload["token"] = issued.access_token
            new_payload["tokenExpiresAt"] = to_iso(expires_at)
            new_bundle = vault.encrypt(self.key_hex, new_payload)
            attempt.fingerprint = vault.token_fingerprint(issued.access_token)
            attempt.expires_at = to_iso(expires_at)

            def swap(current: CredentialRecord) -> CredentialRecord:
                if current.last_rotation_id == rotation_id:
                    raise _SwapAborted("idempotent")
                if current.cipher_bundle != staged_from:
                    raise _SwapAborted("concurrent")
                current.cipher_bundle = new_bundle
                current.expires_at = expires_at
                current.last_rotation_at = now
                current.last_rotation_id = rotation_id
                current.rotation_attempts = 0
                current.masked_hints = vault.masked_hints(new_payload)
                current.status = CredentialStatus.CONNECTED
                return current

            self.store.swap_credential(record.location_id, record.provider, swap)
            attempt.status = "completed"
            logger.info(
                "Rotated %s token for %s, fingerprint %s",
                record.provider, record.location_id, attempt.fingerprint,
            )
        except _SwapAborted as e:
            # Another worker already rotated this version of the credential.
            attempt.status = "idempotent"
            attempt.category = e.reason
            logger.info("Rotation %s for %s already applied (%s)", rotation_id, record.location_id, e.reason)
        except PosSyncError as e:
            attempt.status = "failed"
            attempt.error = str(e)
            attempt.category = _categorize(e)
            logger.error("Rotation failed for %s (%s): %s", record.location_id, attempt.category, e)
            self._note_failed_attempt(record)
        return attempt

    def _note_failed_attempt(self, record: CredentialRecord) -> None:
        def bump(current: CredentialRecord) -> CredentialRecord:
            current.rotation_attempts += 1
            return current

        self.store.swap_credential(record.location_id, record.provider, bump)


def _categorize(error: PosSyncError) -> str:
    if isinstance(error, TransientProviderError):
        return error.category
    if isinstance(error, AuthenticationFailed):
        return "invalid_credentials"
    if isinstance(error, ProviderError):
        return error.category
    return "client_error"


ROTATION_FAILURE_ALERT_THRESHOLD = 3


@dataclass
class RotationFailureAlert:
    location_id: str
    provider: str
    consecutive_failures: int
    last_rotation_id: Optional[str] = None
    last_rotation_at: Optional[str] = None


def find_rotation_failures(
    store: StateStore,
    threshold: int = ROTATION_FAILURE_ALERT_THRESHOLD,
    provider: Optional[str] = None,
) -> list[RotationFailureAlert]:
    """Credentials whose last ``threshold`` or more rotations all failed.

    ``rotation_attempts`` counts failures since the last successful swap,
    so it doubles as the consecutive failure count. Each match is logged
    at WARNING for whatever watches the logs.

    Args:
        store: State store holding credentials.
        threshold: Minimum consecutive failures to report.
        provider: Only check this provider when given.

    Returns:
        Alerts, worst first.

    Raises:
        ValidationError: If ``threshold`` is below 1.
    """
    if threshold < 1:
        raise ValidationError("threshold must be >= 1")
    alerts = [
        RotationFailureAlert(
            location_id=record.location_id,
            provider=record.provider,
            consecutive_failures=record.rotation_attempts,
            last_rotation_id=record.last_rotation_id,
            last_rotation_at=to_iso(record.last_rotation_at),
        )
        for record in store.list_credentials(provider=provider)
        if record.rotation_attempts >= threshold
    ]
    alerts.sort(key=lambda a: (-a.consecutive_failures, a.provider, a.location_id))
    for alert in alerts:
        logger.warning(
            "Rotation failing for %s/%s: %d consecutive failures",
            alert.provider, alert.location_id, alert.consecutive_failures,
        )
    logger.info("Rotation monitor found %d failing credentials", len(alerts))
    return alerts
