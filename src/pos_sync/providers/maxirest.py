"""MaxiRest adapter.

MaxiRest numbers its pages; the cursor handed back to callers is simply
the next page number as a string. Keys are upper-case alphanumeric codes,
so obviously malformed keys are rejected without a network call.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from pos_sync.exceptions import AuthenticationFailed, ProviderRequestError
from pos_sync.models import CanonicalSale, DateRange, SaleItem, to_decimal
from pos_sync.providers.base import ProviderAdapter, SalesPage
from pos_sync.providers.http import request_json
from pos_sync.utils import parse_instant

DEFAULT_URL = "https://api.maxirest.com"

_KEY_RE = re.compile(r"[A-Z0-9]{8,}")


@dataclass
class MaxirestItem:
    qty: Any
    sku: Optional[str] = None
    name: Optional[str] = None
    price: Any = 0


@dataclass
class MaxirestOrder:
    externalId: str
    total: Any
    updatedAt: Any
    items: list[MaxirestItem] = field(default_factory=list)
    status: Optional[str] = None

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> MaxirestOrder:
        if not isinstance(data, Mapping) or data.get("externalId") in (None, ""):
            raise ProviderRequestError("MaxiRest order without externalId", category="invalid_response")
        return cls(
            externalId=str(data["externalId"]),
            total=data.get("total", 0),
            updatedAt=data.get("updatedAt"),
            status=data.get("status"),
            items=[
                MaxirestItem(
                    sku=it.get("sku"),
                    name=it.get("name"),
                    qty=it.get("qty", 0),
                    price=it.get("price", 0),
                )
                for it in data.get("items") or []
            ],
        )


def to_canonical(raw: Sequence[MaxirestOrder]) -> list[CanonicalSale]:
    """Map MaxiRest orders to canonical sales."""
    sales = []
    for r in raw:
        try:
            sales.append(
                CanonicalSale(
                    external_id=r.externalId,
                    occurred_at=parse_instant(r.updatedAt),
                    total=to_decimal(r.total if r.total is not None else 0),
                    status=r.status,
                    items=tuple(
                        SaleItem(
                            sku=it.sku,
                            name=it.name,
                            qty=to_decimal(it.qty),
                            price=to_decimal(it.price if it.price is not None else 0),
                        )
                        for it in r.items
                    ),
                    meta={"provider": "maxirest"},
                )
            )
        except ValueError as e:
            raise ProviderRequestError(
                f"MaxiRest order {r.externalId} is malformed: {e}", category="invalid_response"
            ) from e
    return sales


def key_looks_valid(api_key: str) -> bool:
    """MaxiRest keys contain a run of at least 8 upper-case alphanumerics."""
    return bool(_KEY_RE.search(api_key.strip()))


class MaxirestAdapter(ProviderAdapter[MaxirestOrder]):
    provider = "maxirest"
    default_base_url = DEFAULT_URL

    def _headers(self, key: str) -> dict[str, str]:
        return {"Authorization": f"Token {key}"}

    def validate(self, api_key: Optional[str] = None) -> bool:
        key = api_key if api_key is not None else self.api_key or ""
        if not key_looks_valid(key):
            return False
        try:
            request_json(
                self.session, "GET", f"{self.base_url}/validate", "MaxiRest key validation",
                headers=self._headers(key.strip()),
            )
        except AuthenticationFailed:
            return False
        return True

    def fetch_sales(
        self, window: DateRange, cursor: Optional[str] = None
    ) -> SalesPage[MaxirestOrder]:
        try:
            page = int(cursor) if cursor else 1
        except ValueError as e:
            raise ProviderRequestError(f"Invalid MaxiRest page cursor {cursor!r}") from e
        body = request_json(
            self.session, "GET", f"{self.base_url}/orders", "MaxiRest orders fetch",
            params={
                "from": window.date_from.isoformat(),
                "to": window.date_to.isoformat(),
                "page": page,
            },
            headers=self._headers(self.api_key),
        )
        if not isinstance(body, Mapping):
            raise ProviderRequestError(
                "MaxiRest orders response is not an object", category="invalid_response"
            )
        data = [MaxirestOrder.from_json(d) for d in body.get("orders") or []]
        try:
            total_pages = int(body.get("total_pages") or page)
        except (TypeError, ValueError) as e:
            raise ProviderRequestError(
                f"Invalid MaxiRest total_pages {body.get('total_pages')!r}",
                category="invalid_response",
            ) from e
        next_cursor = str(page + 1) if page < total_pages else None
        return SalesPage(data=data, next=next_cursor)

    def to_canonical(self, raw: Sequence[MaxirestOrder]) -> list[CanonicalSale]:
        return to_canonical(raw)
