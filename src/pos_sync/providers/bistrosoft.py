"""Bistrosoft adapter.

Bistrosoft pages with a ``next`` token and reports per-sale discount and
tax totals, which the mapper carries in ``meta`` for aggregation.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from pos_sync.exceptions import AuthenticationFailed, ProviderRequestError
from pos_sync.models import CanonicalSale, DateRange, SaleItem, to_decimal
from pos_sync.providers.base import ProviderAdapter, SalesPage
from pos_sync.providers.http import request_json
from pos_sync.utils import parse_instant

DEFAULT_URL = "https://api.bistrosoft.com"
PAGE_SIZE = 500


@dataclass
class BistroLine:
    quantity: Any
    unit_price: Any
    sku: Optional[str] = None
    name: Optional[str] = None


@dataclass
class BistrosoftSale:
    id: str
    datetime: Any
    total: Any
    status: Optional[str] = None
    lines: list[BistroLine] = field(default_factory=list)
    discounts_total: Any = None
    taxes_total: Any = None

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> BistrosoftSale:
        if not isinstance(data, Mapping) or data.get("id") in (None, ""):
            raise ProviderRequestError("Bistrosoft sale without id", category="invalid_response")
        lines = [
            BistroLine(
                sku=ln.get("sku"),
                name=ln.get("name"),
                quantity=ln.get("quantity", 0),
                unit_price=ln.get("unit_price", 0),
            )
            for ln in data.get("lines") or []
        ]
        return cls(
            id=str(data["id"]),
            datetime=data.get("datetime"),
            total=data.get("total", 0),
            status=data.get("status"),
            lines=lines,
            discounts_total=data.get("discounts_total"),
            taxes_total=data.get("taxes_total"),
        )


def to_canonical(raw: Sequence[BistrosoftSale]) -> list[CanonicalSale]:
    """Map Bistrosoft sales to canonical sales.

    ``discounts_total`` and ``taxes_total`` land in ``meta`` only when the
    vendor sends them.
    """
    sales = []
    for r in raw:
        try:
            meta: dict[str, Any] = {"provider": "bistrosoft"}
            if r.discounts_total is not None:
                meta["discounts_total"] = to_decimal(r.discounts_total)
            if r.taxes_total is not None:
                meta["taxes_total"] = to_decimal(r.taxes_total)
            sale = CanonicalSale(
                external_id=r.id,
                occurred_at=parse_instant(r.datetime),
                total=to_decimal(r.total if r.total is not None else 0),
                status=r.status,
                items=tuple(
                    SaleItem(
                        sku=ln.sku,
                        name=ln.name,
                        qty=to_decimal(ln.quantity),
                        price=to_decimal(ln.unit_price),
                    )
                    for ln in r.lines
                ),
                meta=meta,
            )
        except ValueError as e:
            raise ProviderRequestError(
                f"Bistrosoft sale {r.id} is malformed: {e}", category="invalid_response"
            ) from e
        sales.append(sale)
    return sales


class BistrosoftAdapter(ProviderAdapter[BistrosoftSale]):
    provider = "bistrosoft"
    default_base_url = DEFAULT_URL

    def _headers(self, key: str) -> dict[str, str]:
        return {"X-Api-Key": key}

    def validate(self, api_key: Optional[str] = None) -> bool:
        key = (api_key if api_key is not None else self.api_key or "").strip()
        if not key:
            return False
        try:
            request_json(
                self.session, "GET", f"{self.base_url}/api/v1/ping", "Bistrosoft key validation",
                headers=self._headers(key),
            )
        except AuthenticationFailed:
            return False
        return True

    def fetch_sales(
        self, window: DateRange, cursor: Optional[str] = None
    ) -> SalesPage[BistrosoftSale]:
        params: dict[str, Any] = {
            "from": window.date_from.isoformat(),
            "to": window.date_to.isoformat(),
            "limit": PAGE_SIZE,
        }
        if cursor:
            params["page_token"] = cursor
        body = request_json(
            self.session, "GET", f"{self.base_url}/api/v1/sales", "Bistrosoft sales fetch",
            params=params, headers=self._headers(self.api_key),
        )
        if not isinstance(body, Mapping):
            raise ProviderRequestError(
                "Bistrosoft sales response is not an object", category="invalid_response"
            )
        data = [BistrosoftSale.from_json(d) for d in body.get("data") or []]
        return SalesPage(data=data, next=body.get("next") or None)

    def to_canonical(self, raw: Sequence[BistrosoftSale]) -> list[CanonicalSale]:
        return to_canonical(raw)
