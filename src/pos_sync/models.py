"""Core record types.

Every persisted record has ``to_dict`` / ``from_dict`` helpers producing
JSON-safe dicts: datetimes as ISO-8601 ``Z`` strings and decimals as
strings, so nothing is lost to float rounding.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from pos_sync.exceptions import ValidationError
from pos_sync.utils import from_iso, parse_date, to_iso, yesterday_utc


def to_decimal(value: Any) -> Decimal:
    """Coerce a vendor number into a Decimal.

    Floats go through ``str`` so ``0.1`` stays ``Decimal("0.1")``.

    Raises:
        ValueError: If the value is not numeric.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Not a number: {value!r}")
    try:
        result = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Not a number: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return result


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class CredentialStatus(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    INVALID = "invalid"


class BreakerState(str, Enum):
    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SaleItem:
    sku: Optional[str]
    name: Optional[str]
    qty: Decimal
    price: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "sku": self.sku,
            "name": self.name,
            "qty": str(self.qty),
            "price": str(self.price),
        }


@dataclass(frozen=True)
class CanonicalSale:
    """Vendor-agnostic sale produced by a provider mapper.

    Attributes:
        external_id: Sale id in the vendor system.
        occurred_at: Aware UTC timestamp of the sale.
        total: Sale total.
        status: Vendor status string, passed through unchanged.
        items: Line items (may be empty).
        meta: Extra vendor data; always carries ``provider``.
    """

    external_id: str
    occurred_at: datetime
    total: Decimal
    status: Optional[str] = None
    items: tuple[SaleItem, ...] = ()
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def provider(self) -> str:
        return str(self.meta.get("provider", ""))

    def to_dict(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "occurred_at": to_iso(self.occurred_at),
            "total": str(self.total),
            "status": self.status,
            "items": [item.to_dict() for item in self.items],
            "meta": dict(self.meta),
        }


# ---------------------------------------------------------------------------
# Date window
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar window for a sync."""

    date_from: date
    date_to: date

    @classmethod
    def parse(
        cls,
        date_from: str | None = None,
        date_to: str | None = None,
        max_days: int = 31,
        now: datetime | None = None,
    ) -> DateRange:
        """Build a validated range from ``YYYY-MM-DD`` strings.

        Missing ``date_from`` means yesterday (UTC); missing ``date_to``
        means the same day as ``date_from``.

        Raises:
            ValidationError: On a malformed date, an inverted range, or a
                range longer than ``max_days``.

        Examples:
            >>> DateRange.parse("2025-01-01", "2025-01-07").days
            7
        """
        start = parse_date(date_from) if date_from else yesterday_utc(now)
        end = parse_date(date_to) if date_to else start
        if start > end:
            raise ValidationError(f"from ({start}) must be <= to ({end})")
        span = (end - start).days + 1
        if span > max_days:
            raise ValidationError(f"Range too large: {span} days (max {max_days})")
        return cls(date_from=start, date_to=end)

    @property
    def days(self) -> int:
        return (self.date_to - self.date_from).days + 1

    def to_dict(self) -> dict[str, str]:
        return {"from": self.date_from.isoformat(), "to": self.date_to.isoformat()}


# ---------------------------------------------------------------------------
# Persisted rows
# ---------------------------------------------------------------------------


@dataclass
class ConsumptionRecord:
    """Daily consumption snapshot for one location x provider x date."""

    client_id: str
    location_id: str
    provider: str
    date: str
    total: Decimal = Decimal("0")
    orders: int = 0
    items: Decimal = Decimal("0")
    discounts: Decimal = Decimal("0")
    taxes: Decimal = Decimal("0")
    meta: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.location_id, self.provider, self.date)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "location_id": self.location_id,
            "provider": self.provider,
            "date": self.date,
            "total": str(self.total),
            "orders": self.orders,
            "items": str(self.items),
            "discounts": str(self.discounts),
            "taxes": str(self.taxes),
            "meta": dict(self.meta),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConsumptionRecord:
        return cls(
            id=data.get("id") or None,
            client_id=str(data["client_id"]),
            location_id=str(data["location_id"]),
            provider=str(data["provider"]),
            date=str(data["date"]),
            total=to_decimal(data.get("total", 0)),
            orders=int(data.get("orders", 0)),
            items=to_decimal(data.get("items", 0)),
            discounts=to_decimal(data.get("discounts", 0)),
            taxes=to_decimal(data.get("taxes", 0)),
            meta=dict(data.get("meta") or {}),
            updated_at=from_iso(data.get("updated_at")),
        )


@dataclass
class SyncRun:
    """One sync attempt; closed exactly once by the gate."""

    run_id: str
    location_id: str
    provider: str
    started_at: datetime
    client_id: Optional[str] = None
    attempt: int = 1
    status: RunStatus = RunStatus.RUNNING
    ended_at: Optional[datetime] = None
    count: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "client_id": self.client_id,
            "location_id": self.location_id,
            "provider": self.provider,
            "attempt": self.attempt,
            "status": self.status.value,
            "started_at": to_iso(self.started_at),
            "ended_at": to_iso(self.ended_at),
            "count": self.count,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "meta": dict(self.meta),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncRun:
        started = from_iso(data["started_at"])
        assert started is not None
        return cls(
            run_id=data["run_id"],
            client_id=data.get("client_id"),
            location_id=data["location_id"],
            provider=data["provider"],
            attempt=int(data.get("attempt", 1)),
            status=RunStatus(data.get("status", "running")),
            started_at=started,
            ended_at=from_iso(data.get("ended_at")),
            count=int(data.get("count", 0)),
            duration_ms=int(data.get("duration_ms", 0)),
            error=data.get("error"),
            meta=dict(data.get("meta") or {}),
        )


@dataclass
class SyncStatus:
    """Gate row for one location x provider.

    ``failures`` only resets on success; ``paused_until`` is only set once
    ``failures`` reaches the pause threshold.
    """

    location_id: str
    provider: str
    failures: int = 0
    next_attempt_at: Optional[datetime] = None
    paused_until: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "location_id": self.location_id,
            "provider": self.provider,
            "failures": self.failures,
            "next_attempt_at": to_iso(self.next_attempt_at),
            "paused_until": to_iso(self.paused_until),
            "last_run_at": to_iso(self.last_run_at),
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncStatus:
        return cls(
            location_id=data["location_id"],
            provider=data["provider"],
            failures=int(data.get("failures", 0)),
            next_attempt_at=from_iso(data.get("next_attempt_at")),
            paused_until=from_iso(data.get("paused_until")),
            last_run_at=from_iso(data.get("last_run_at")),
            last_error=data.get("last_error"),
        )


@dataclass(frozen=True)
class CipherBundle:
    """AES-GCM output: base64 ``iv`` (12 bytes), ``tag`` (16 bytes), ``data``."""

    iv: str
    tag: str
    data: str

    def to_dict(self) -> dict[str, str]:
        return {"iv": self.iv, "tag": self.tag, "data": self.data}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CipherBundle:
        try:
            return cls(iv=str(data["iv"]), tag=str(data["tag"]), data=str(data["data"]))
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Malformed cipher bundle: {e}") from e


@dataclass
class CredentialRecord:
    """Encrypted provider credential for one location x provider."""

    location_id: str
    provider: str
    cipher_bundle: CipherBundle
    client_id: Optional[str] = None
    status: CredentialStatus = CredentialStatus.PENDING
    masked_hints: dict[str, str] = field(default_factory=dict)
    expires_at: Optional[datetime] = None
    last_verified_at: Optional[datetime] = None
    last_rotation_at: Optional[datetime] = None
    last_rotation_id: Optional[str] = None
    rotation_attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "location_id": self.location_id,
            "provider": self.provider,
            "client_id": self.client_id,
            "cipher_bundle": self.cipher_bundle.to_dict(),
            "status": self.status.value,
            "masked_hints": dict(self.masked_hints),
            "expires_at": to_iso(self.expires_at),
            "last_verified_at": to_iso(self.last_verified_at),
            "last_rotation_at": to_iso(self.last_rotation_at),
            "last_rotation_id": self.last_rotation_id,
            "rotation_attempts": self.rotation_attempts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CredentialRecord:
        return cls(
            location_id=data["location_id"],
            provider=data["provider"],
            client_id=data.get("client_id"),
            cipher_bundle=CipherBundle.from_dict(data["cipher_bundle"]),
            status=CredentialStatus(data.get("status", "pending")),
            masked_hints=dict(data.get("masked_hints") or {}),
            expires_at=from_iso(data.get("expires_at")),
            last_verified_at=from_iso(data.get("last_verified_at")),
            last_rotation_at=from_iso(data.get("last_rotation_at")),
            last_rotation_id=data.get("last_rotation_id"),
            rotation_attempts=int(data.get("rotation_attempts", 0)),
        )


@dataclass
class RotationBreakerState:
    """Persisted state of one rotation circuit breaker scope."""

    scope: str
    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    resume_at: Optional[datetime] = None
    open_seconds: float = 0.0
    opened_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "resume_at": to_iso(self.resume_at),
            "open_seconds": self.open_seconds,
            "opened_at": to_iso(self.opened_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RotationBreakerState:
        return cls(
            scope=data["scope"],
            state=BreakerState(data.get("state", "closed")),
            failure_count=int(data.get("failure_count", 0)),
            resume_at=from_iso(data.get("resume_at")),
            open_seconds=float(data.get("open_seconds", 0.0)),
            opened_at=from_iso(data.get("opened_at")),
        )


@dataclass
class RotationMetric:
    """One observability row written by a rotation batch.

    A batch writes one ``"job_summary"`` row, whose ``value`` is the number
    of credentials processed, plus one ``"rotation_attempt"`` row per
    non-idempotent attempt, whose ``value`` is 1 on success and 0 otherwise.
    """

    metric_id: str
    job_run_id: str
    provider: str
    metric_type: str
    recorded_at: datetime
    value: int = 0
    location_id: Optional[str] = None
    duration_ms: Optional[int] = None
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric_id": self.metric_id,
            "job_run_id": self.job_run_id,
            "provider": self.provider,
            "metric_type": self.metric_type,
            "recorded_at": to_iso(self.recorded_at),
            "value": self.value,
            "location_id": self.location_id,
            "duration_ms": self.duration_ms,
            "meta": dict(self.meta),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RotationMetric:
        recorded = from_iso(data["recorded_at"])
        assert recorded is not None
        duration = data.get("duration_ms")
        return cls(
            metric_id=data["metric_id"],
            job_run_id=data["job_run_id"],
            provider=data["provider"],
            metric_type=data["metric_type"],
            recorded_at=recorded,
            value=int(data.get("value", 0)),
            location_id=data.get("location_id"),
            duration_ms=int(duration) if duration is not None else None,
            meta=dict(data.get("meta") or {}),
        )
