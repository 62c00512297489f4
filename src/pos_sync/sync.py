"""Sync orchestration: gate check, paged fetch, aggregation, upsert.

``run_pos_sync`` drives one location x provider through the scheduling
gate. It either returns a :class:`SyncSkipped` before any I/O, or opens a
run, fetches every page, writes one consumption snapshot for the window,
and reports the outcome back to the gate. Failures are logged to the gate
and then re-raised unchanged, so the caller sees both the original error
and the updated backoff state.

``run_daily`` fans out over every connected credential with a bounded
thread pool; one location failing never stops the others.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Optional, TypeVar, Union

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_none,
)

from pos_sync import vault
from pos_sync.consumption import aggregate_sales, upsert_consumption
from pos_sync.context import SyncContext
from pos_sync.credentials import load_credentials
from pos_sync.exceptions import (
    AuthenticationFailed,
    ProviderRequestError,
    StoreError,
    TransientProviderError,
    ValidationError,
)
from pos_sync.models import ConsumptionRecord, CredentialRecord, CredentialStatus, DateRange
from pos_sync.providers.base import ProviderAdapter
from pos_sync.providers.registry import is_supported, provider_meta

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SYNC_RETRIES = 2
MAX_PAGES = 1000


class BaseSync:
    """Immediate retry wrapper for one fetch operation.

    Only :class:`TransientProviderError` is retried; everything else
    propagates on the first attempt. Retries are immediate: waiting
    between attempts is the gate's job, across runs.

    Args:
        retries: Extra attempts after the first one; 0 disables retrying.
        retry_on: Exception types worth retrying.

    Examples:
        >>> sync = BaseSync(retries=0)
        >>> sync.run(lambda: 42), sync.attempts
        (42, 1)
    """

    def __init__(
        self,
        retries: int = DEFAULT_SYNC_RETRIES,
        retry_on: tuple[type[BaseException], ...] = (TransientProviderError,),
    ) -> None:
        if retries < 0:
            raise ValidationError("retries must be >= 0")
        self.retries = retries
        self.retry_on = retry_on
        self.attempts = 0

    def run(self, operation: Callable[[], T]) -> T:
        self.attempts = 0
        retrying = Retrying(
            stop=stop_after_attempt(self.retries + 1),
            retry=retry_if_exception_type(self.retry_on),
            wait=wait_none(),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    self.attempts = attempt.retry_state.attempt_number
                    return operation()
        except self.retry_on as e:
            logger.warning("Giving up after %d attempts: %s", self.attempts, e)
            raise
        # Retrying either returns or re-raises.
        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info("Attempt %d failed, retrying: %s", retry_state.attempt_number, error)


def fetch_all_sales(
    adapter: ProviderAdapter, window: DateRange, max_pages: int = MAX_PAGES
) -> list[Any]:
    """Fetch every page for ``window``, strictly in order.

    Args:
        adapter: Provider adapter.
        window: Date range to fetch.
        max_pages: Safety limit for runaway pagination.

    Returns:
        Raw records from all pages, concatenated in page order.

    Raises:
        ProviderRequestError: If the provider repeats a cursor or exceeds
            ``max_pages``.
    """
    records: list[Any] = []
    seen: set[str] = set()
    cursor: Optional[str] = None
    pages = 0
    while True:
        page = adapter.fetch_sales(window, cursor)
        pages += 1
        records.extend(page.data)
        logger.debug("Page %d: %d records (next=%s)", pages, len(page.data), page.next)
        if not page.next:
            return records
        if page.next in seen:
            raise ProviderRequestError(f"Provider repeated pagination cursor {page.next!r}")
        if pages >= max_pages:
            raise ProviderRequestError(f"Pagination exceeded {max_pages} pages")
        seen.add(page.next)
        cursor = page.next


@dataclass(frozen=True)
class SyncSkipped:
    """The gate refused the sync; nothing was fetched or recorded."""

    reason: str
    wait_ms: int
    skipped: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"skipped": True, "reason": self.reason, "wait_ms": self.wait_ms}


@dataclass(frozen=True)
class SyncCompleted:
    run_id: str
    count: int
    record: ConsumptionRecord
    consumption_id: Optional[str] = None
    attempts: int = 1
    dry_run: bool = False
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "skipped": False,
            "run_id": self.run_id,
            "count": self.count,
            "consumption_id": self.consumption_id,
            "attempts": self.attempts,
            "dry_run": self.dry_run,
            "record": self.record.to_dict(),
        }


SyncResult = Union[SyncSkipped, SyncCompleted]


def _validate_request(
    ctx: SyncContext, client_id: str, location_id: str, provider: str, window: DateRange
) -> None:
    for name, value in (("client_id", client_id), ("location_id", location_id)):
        if not value or not str(value).strip():
            raise ValidationError(f"{name} is required")
    provider_meta(provider)
    if not is_supported(provider):
        raise ValidationError(f"No adapter factory registered for provider: {provider}")
    if window.date_from > window.date_to:
        raise ValidationError("from must be <= to")
    if window.days > ctx.settings.max_range_days:
        raise ValidationError(
            f"Range too large: {window.days} days (max {ctx.settings.max_range_days})"
        )
    if ctx.store.get_credential(location_id, provider) is None:
        raise ValidationError(f"No {provider} credentials stored for location {location_id}")
    vault.load_key(ctx.key_hex)


def run_pos_sync(
    ctx: SyncContext,
    client_id: str,
    location_id: str,
    provider: str,
    window: Optional[DateRange] = None,
    dry_run: bool = False,
    correlation_id: Optional[str] = None,
) -> SyncResult:
    """Sync one location's sales from one provider into a consumption snapshot.

    Args:
        ctx: Operation context.
        client_id: Owning client.
        location_id: Location to sync.
        provider: Provider id.
        window: Date range; defaults to yesterday (UTC).
        dry_run: Fetch and aggregate, but do not write consumption.
        correlation_id: Id stored with the run and the snapshot.

    Returns:
        :class:`SyncSkipped` if the gate refused, else :class:`SyncCompleted`.

    Raises:
        ValidationError: Bad input, raised before any side effect.
        KmsMisconfigured: The vault key is missing or malformed, also raised
            before the gate is consulted.
        PosSyncError: Any failure after the run started. It has already
            been recorded with the gate.
    """
    if window is None:
        window = DateRange.parse(max_days=ctx.settings.max_range_days, now=ctx.clock())
    _validate_request(ctx, client_id, location_id, provider, window)

    decision = ctx.gate.can_sync(location_id, provider, now=ctx.clock())
    if not decision.ok:
        logger.info(
            "Skipping %s/%s: %s for another %d ms",
            location_id, provider, decision.reason, decision.wait_ms,
        )
        return SyncSkipped(reason=decision.reason or "blocked", wait_ms=decision.wait_ms)

    correlation_id = correlation_id or str(uuid.uuid4())
    run_meta = {"correlation_id": correlation_id, **window.to_dict()}
    run_id = ctx.gate.start_sync(location_id, provider, client_id=client_id, meta=run_meta)
    started = time.monotonic()
    retry = BaseSync(ctx.settings.sync_retries)

    try:
        credentials = load_credentials(ctx, location_id, provider)
        adapter = ctx.adapter(provider, credentials)
        raw = retry.run(lambda: fetch_all_sales(adapter, window))
        sales = adapter.to_canonical(raw)
        record = aggregate_sales(
            sales,
            client_id=client_id,
            location_id=location_id,
            provider=provider,
            date=window.date_to.isoformat(),
            meta=run_meta,
        )
        consumption_id = None
        if not dry_run:
            consumption_id = upsert_consumption(ctx.store, record)["id"]
    except Exception as e:
        duration_ms = int((time.monotonic() - started) * 1000)
        try:
            ctx.gate.log_error(run_id, error=f"{type(e).__name__}: {e}", duration_ms=duration_ms)
        except StoreError as log_exc:
            logger.error("Could not record failure of run %s: %s", run_id, log_exc)
        raise

    duration_ms = int((time.monotonic() - started) * 1000)
    try:
        ctx.gate.log_success(
            run_id,
            count=len(sales),
            duration_ms=duration_ms,
            meta={"attempts": retry.attempts, "dry_run": dry_run, "consumption_id": consumption_id},
        )
    except StoreError as log_exc:
        logger.error("Could not record success of run %s: %s", run_id, log_exc)
    return SyncCompleted(
        run_id=run_id,
        count=len(sales),
        record=record,
        consumption_id=consumption_id,
        attempts=retry.attempts,
        dry_run=dry_run,
    )


@dataclass
class DailySummary:
    """Outcome counts of a daily fan-out."""

    total: int = 0
    ok: int = 0
    skipped: int = 0
    backoff: int = 0
    invalid: int = 0
    errors: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": {
                "total": self.total,
                "ok": self.ok,
                "skipped": self.skipped,
                "backoff": self.backoff,
                "invalid": self.invalid,
                "errors": self.errors,
            },
            "results": list(self.results),
        }


def _sync_one(
    ctx: SyncContext, cred: CredentialRecord, window: Optional[DateRange], dry_run: bool
) -> dict[str, Any]:
    base = {"location_id": cred.location_id, "provider": cred.provider}
    if not cred.client_id:
        return {**base, "status": "invalid", "reason": "missing client_id"}
    try:
        result = run_pos_sync(
            ctx, cred.client_id, cred.location_id, cred.provider, window=window, dry_run=dry_run
        )
    except (ValidationError, AuthenticationFailed) as e:
        return {**base, "status": "invalid", "reason": str(e)}
    except Exception as e:
        # One location failing must not stop the fan-out.
        logger.exception("Daily sync failed for %s/%s", cred.location_id, cred.provider)
        return {**base, "status": "error", "reason": f"{type(e).__name__}: {e}"}
    if isinstance(result, SyncSkipped):
        return {**base, "status": "skipped", "reason": result.reason, "wait_ms": result.wait_ms}
    return {**base, "status": "ok", "run_id": result.run_id, "count": result.count}


def run_daily(
    ctx: SyncContext,
    window: Optional[DateRange] = None,
    concurrency: Optional[int] = None,
    dry_run: bool = False,
    providers: Optional[Sequence[str]] = None,
) -> DailySummary:
    """Sync every connected credential, at most ``concurrency`` at a time.

    Args:
        ctx: Operation context.
        window: Date range; defaults to yesterday (UTC) per location.
        concurrency: Worker count; defaults to ``settings.daily_concurrency``.
        dry_run: Passed through to each sync.
        providers: Restrict to these provider ids.

    Returns:
        Counts per outcome plus one result per location x provider.
    """
    workers = concurrency or ctx.settings.daily_concurrency
    creds = ctx.store.list_credentials(status=CredentialStatus.CONNECTED)
    if providers:
        creds = [c for c in creds if c.provider in providers]

    summary = DailySummary(total=len(creds))
    if not creds:
        logger.info("No connected credentials to sync")
        return summary

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda c: _sync_one(ctx, c, window, dry_run), creds))

    for res in results:
        status = res["status"]
        if status == "ok":
            summary.ok += 1
        elif status == "invalid":
            summary.invalid += 1
        elif status == "skipped" and res.get("reason") == "backoff":
            summary.backoff += 1
        elif status == "skipped":
            summary.skipped += 1
        else:
            summary.errors += 1
    summary.results = results
    logger.info(
        "Daily sync: %d total, %d ok, %d skipped, %d backoff, %d invalid, %d errors",
        summary.total, summary.ok, summary.skipped, summary.backoff, summary.invalid, summary.errors,
    )
    return summary
