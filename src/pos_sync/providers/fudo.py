"""Fudo POS adapter.

Fudo paginates with an opaque cursor (``nextCursor``) and authenticates
with short-lived bearer tokens minted from an API key and secret, which
is why it is the one provider that takes part in credential rotation.

Raw sale shape::

    {"id": "s-1", "created_at": "2025-01-15T13:05:00Z", "total": 1200.5,
     "status": "closed",
     "items": [{"sku": "CAF-01", "name": "Latte", "quantity": 2, "price": 600.25}]}
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from pos_sync.exceptions import AuthenticationFailed, ProviderRequestError
from pos_sync.models import CanonicalSale, DateRange, SaleItem, to_decimal
from pos_sync.providers.base import IssuedToken, ProviderAdapter, SalesPage, TokenIssuer
from pos_sync.providers.http import request_json
from pos_sync.utils import parse_instant

logger = logging.getLogger(__name__)

PRODUCTION_URL = "https://api.fudo.com"
STAGING_URL = "https://staging-api.fudo.com"

PAGE_SIZE = 1000
MIN_KEY_LENGTH = 6


@dataclass
class FudoSaleItem:
    quantity: Any
    price: Any
    sku: Optional[str] = None
    name: Optional[str] = None


@dataclass
class FudoSale:
    id: str
    created_at: Any
    total: Any
    status: Optional[str] = None
    items: list[FudoSaleItem] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> FudoSale:
        """Parse one record from the Fudo sales endpoint."""
        if not isinstance(data, Mapping) or data.get("id") in (None, ""):
            raise ProviderRequestError("Fudo sale without id", category="invalid_response")
        items = [
            FudoSaleItem(
                sku=it.get("sku"),
                name=it.get("name"),
                quantity=it.get("quantity", 0),
                price=it.get("price", 0),
            )
            for it in data.get("items") or []
        ]
        return cls(
            id=str(data["id"]),
            created_at=data.get("created_at"),
            total=data.get("total", 0),
            status=data.get("status"),
            items=items,
        )


def to_canonical(raw: Sequence[FudoSale]) -> list[CanonicalSale]:
    """Map Fudo sales to canonical sales.

    Args:
        raw: Parsed Fudo records.

    Returns:
        Canonical sales in input order.

    Raises:
        ProviderRequestError: If a record has an unparseable timestamp or
            amount.
    """
    sales = []
    for r in raw:
        try:
            occurred = parse_instant(r.created_at)
            total = to_decimal(r.total if r.total is not None else 0)
            items = tuple(
                SaleItem(
                    sku=it.sku,
                    name=it.name,
                    qty=to_decimal(it.quantity),
                    price=to_decimal(it.price),
                )
                for it in r.items
            )
        except ValueError as e:
            raise ProviderRequestError(
                f"Fudo sale {r.id} is malformed: {e}", category="invalid_response"
            ) from e
        sales.append(
            CanonicalSale(
                external_id=r.id,
                occurred_at=occurred,
                total=total,
                status=r.status,
                items=items,
                meta={"provider": "fudo"},
            )
        )
    return sales


def base_url_for_env(env: Optional[str]) -> str:
    return PRODUCTION_URL if env == "production" else STAGING_URL


class FudoAdapter(ProviderAdapter[FudoSale], TokenIssuer):
    """Sales and token access for Fudo."""

    provider = "fudo"
    default_base_url = STAGING_URL

    def __init__(self, api_key: str, base_url: Optional[str] = None, **kwargs: Any) -> None:
        credentials = kwargs.get("credentials") or {}
        if base_url is None:
            base_url = base_url_for_env(credentials.get("env"))
        super().__init__(api_key, base_url=base_url, **kwargs)

    def _bearer(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def _sales_token(self) -> str:
        # A rotated access token takes precedence over the raw API key.
        return self.credentials.get("token") or self.api_key

    def validate(self, api_key: Optional[str] = None) -> bool:
        key = (api_key if api_key is not None else self.api_key or "").strip()
        if len(key) < MIN_KEY_LENGTH:
            return False
        try:
            request_json(
                self.session, "GET", f"{self.base_url}/me", "Fudo key validation",
                headers=self._bearer(key),
            )
        except AuthenticationFailed:
            return False
        return True

    def fetch_sales(self, window: DateRange, cursor: Optional[str] = None) -> SalesPage[FudoSale]:
        params: dict[str, Any] = {
            "from": window.date_from.isoformat(),
            "to": window.date_to.isoformat(),
            "limit": PAGE_SIZE,
        }
        if cursor:
            params["cursor"] = cursor
        body = request_json(
            self.session, "GET", f"{self.base_url}/v1/sales", "Fudo sales fetch",
            params=params, headers=self._bearer(self._sales_token()),
        )
        if not isinstance(body, Mapping):
            raise ProviderRequestError("Fudo sales response is not an object", category="invalid_response")
        data = [FudoSale.from_json(d) for d in body.get("data") or []]
        return SalesPage(data=data, next=body.get("nextCursor") or None)

    def to_canonical(self, raw: Sequence[FudoSale]) -> list[CanonicalSale]:
        return to_canonical(raw)

    def request_token(self, credentials: dict[str, Any]) -> IssuedToken:
        body = request_json(
            self.session, "POST", f"{self.base_url}/auth/token", "Fudo token request",
            json={"api_key": credentials.get("apiKey"), "api_secret": credentials.get("apiSecret")},
        )
        token = body.get("access_token") if isinstance(body, Mapping) else None
        if not token:
            raise ProviderRequestError("No access token received from Fudo", category="invalid_response")
        expires_in = body.get("expires_in")
        return IssuedToken(access_token=token, expires_in=int(expires_in) if expires_in else None)

    def validate_token(self, token: str, credentials: dict[str, Any]) -> bool:
        try:
            request_json(
                self.session, "GET", f"{self.base_url}/me", "Fudo token validation",
                headers=self._bearer(token),
            )
        except AuthenticationFailed:
            return False
        return True
