"""Test doubles shared across the suite: fake clock, HTTP session, stub adapters."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from pos_sync.context import SyncContext
from pos_sync.credentials import save_credentials
from pos_sync.models import CanonicalSale, CredentialRecord, CredentialStatus, DateRange, SaleItem
from pos_sync.providers.base import IssuedToken, ProviderAdapter, SalesPage, TokenIssuer

KEY_HEX = "0123456789abcdef" * 4
OTHER_KEY_HEX = "fedcba9876543210" * 4

START = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or START

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, text: Optional[str] = None) -> None:
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else ("" if body is None else str(body))

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body


class FakeSession:
    """Stands in for requests.Session; replays queued responses or errors."""

    def __init__(self, responses: Sequence[Any] = ()) -> None:
        self.queue = list(responses)
        self.calls: list[dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.queue:
            raise AssertionError(f"Unexpected request: {method} {url}")
        item = self.queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def make_sale(
    external_id: str,
    total: Any = "10",
    qty: Any = "1",
    occurred_at: Optional[datetime] = None,
    **meta: Any,
) -> CanonicalSale:
    return CanonicalSale(
        external_id=external_id,
        occurred_at=occurred_at or datetime(2025, 1, 14, 15, 30, tzinfo=timezone.utc),
        total=Decimal(str(total)),
        items=(SaleItem(sku="SKU", name="Item", qty=Decimal(str(qty)), price=Decimal(str(total))),),
        meta={"provider": "fudo", **meta},
    )


def raw_pages(*sizes: int) -> list[list[dict]]:
    """Pages of raw dicts with globally unique ids, e.g. raw_pages(3, 2)."""
    pages, n = [], 0
    for size in sizes:
        page = []
        for _ in range(size):
            n += 1
            page.append({"id": f"s{n}", "total": "10"})
        pages.append(page)
    return pages


class StubAdapter(ProviderAdapter[dict]):
    """Adapter serving fixed pages of raw dicts; raises queued errors first."""

    provider = "fudo"

    def __init__(
        self,
        pages: Sequence[Sequence[dict]] = (),
        errors: Sequence[BaseException] = (),
        valid: bool = True,
    ) -> None:
        super().__init__("stub-key", session=FakeSession())
        self.pages = [list(p) for p in pages]
        self.errors = list(errors)
        self.valid = valid
        self.fetch_calls: list[Optional[str]] = []

    def validate(self, api_key: Optional[str] = None) -> bool:
        if self.errors:
            raise self.errors.pop(0)
        return self.valid

    def fetch_sales(self, window: DateRange, cursor: Optional[str] = None) -> SalesPage[dict]:
        self.fetch_calls.append(cursor)
        if self.errors:
            raise self.errors.pop(0)
        index = int(cursor) if cursor else 0
        data = self.pages[index] if index < len(self.pages) else []
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return SalesPage(data=data, next=next_cursor)

    def to_canonical(self, raw: Sequence[dict]) -> list[CanonicalSale]:
        return [make_sale(r["id"], r.get("total", "10")) for r in raw]


class StubTokenAdapter(StubAdapter, TokenIssuer):
    """Stub that also issues tokens; ``token_errors`` are raised by request_token."""

    def __init__(
        self,
        token: str = "new-token-abcdef",
        token_valid: bool = True,
        token_errors: Sequence[BaseException] = (),
        expires_in: int = 3600,
    ) -> None:
        super().__init__()
        self.token = token
        self.token_valid = token_valid
        self.token_errors = list(token_errors)
        self.expires_in = expires_in
        self.events: list[str] = []

    def request_token(self, credentials: dict[str, Any]) -> IssuedToken:
        self.events.append("request_token")
        if self.token_errors:
            raise self.token_errors.pop(0)
        return IssuedToken(access_token=self.token, expires_in=self.expires_in)

    def validate_token(self, token: str, credentials: dict[str, Any]) -> bool:
        self.events.append("validate_token")
        return self.token_valid


def save_connected_credentials(
    ctx: SyncContext,
    location_id: str = "loc-1",
    provider: str = "fudo",
    client_id: Optional[str] = "client-1",
    payload: Optional[dict[str, Any]] = None,
) -> None:
    """Store credentials and mark them connected without calling the provider."""
    save_credentials(
        ctx,
        location_id,
        provider,
        payload or {"apiKey": "key-123456", "apiSecret": "secret-987", "env": "staging"},
        client_id=client_id,
    )

    def connect(record: CredentialRecord) -> CredentialRecord:
        record.status = CredentialStatus.CONNECTED
        return record

    ctx.store.swap_credential(location_id, provider, connect)
