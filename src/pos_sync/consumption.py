"""Daily consumption snapshots built from canonical sales.

A consumption record summarises one location's sales from one provider
for one date: order count, gross total, item units, discounts and taxes.
Writes are snapshot replaces keyed by (location, provider, date), so a
retried or duplicated sync rewrites the same row instead of adding to it.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from decimal import Decimal
from typing import Any, Optional

import pandas as pd

from pos_sync.exceptions import ValidationError
from pos_sync.models import CanonicalSale, ConsumptionRecord, to_decimal
from pos_sync.providers.registry import provider_meta
from pos_sync.store.base import StateStore
from pos_sync.utils import parse_date

logger = logging.getLogger(__name__)

MAX_META_BYTES = 16 * 1024

CONSUMPTION_FRAME_COLUMNS = [
    "id",
    "client_id",
    "location_id",
    "provider",
    "date",
    "orders",
    "items",
    "total",
    "discounts",
    "taxes",
    "updated_at",
]


def validate_sales(sales: Sequence[CanonicalSale]) -> None:
    """Reject sales lists that cannot be aggregated.

    Raises:
        ValidationError: If the list is empty or a sale lacks an id, a
            timestamp, or a numeric total.
    """
    if not sales:
        raise ValidationError("Sales data must be a non-empty list")
    for i, sale in enumerate(sales):
        if not sale.external_id:
            raise ValidationError(f"Sale at index {i} is missing external_id")
        if sale.occurred_at is None:
            raise ValidationError(f"Sale {sale.external_id} is missing occurred_at")
        if not isinstance(sale.total, (Decimal, int, float)) or isinstance(sale.total, bool):
            raise ValidationError(f"Sale {sale.external_id} has a non-numeric total")


def _meta_amount(sale: CanonicalSale, key: str) -> Decimal:
    value = sale.meta.get(key)
    if value is None:
        return Decimal("0")
    try:
        return to_decimal(value)
    except ValueError:
        logger.warning("Ignoring non-numeric %s on sale %s: %r", key, sale.external_id, value)
        return Decimal("0")


def aggregate_sales(
    sales: Sequence[CanonicalSale],
    client_id: str,
    location_id: str,
    provider: str,
    date: Optional[str] = None,
    meta: Optional[dict[str, Any]] = None,
) -> ConsumptionRecord:
    """Sum canonical sales into one consumption snapshot.

    Args:
        sales: Canonical sales for the whole window.
        client_id: Owning client.
        location_id: Location the sales belong to.
        provider: Provider id.
        date: Snapshot date (``YYYY-MM-DD``). Defaults to the UTC date of
            the first sale; required when ``sales`` is empty.
        meta: Extra metadata stored with the record.

    Returns:
        The aggregated record (not yet persisted).

    Raises:
        ValidationError: If no date can be determined.

    Examples:
        >>> record = aggregate_sales([], "c1", "l1", "fudo", date="2025-01-15")
        >>> record.orders, record.total
        (0, Decimal('0'))
    """
    if date is None:
        if not sales:
            raise ValidationError("Cannot infer a consumption date from an empty sales list")
        date = sales[0].occurred_at.date().isoformat()

    total = Decimal("0")
    items = Decimal("0")
    discounts = Decimal("0")
    taxes = Decimal("0")
    for sale in sales:
        total += to_decimal(sale.total)
        items += sum((item.qty for item in sale.items), Decimal("0"))
        discounts += _meta_amount(sale, "discounts_total")
        taxes += _meta_amount(sale, "taxes_total")

    return ConsumptionRecord(
        client_id=client_id,
        location_id=location_id,
        provider=provider,
        date=date,
        total=total,
        orders=len(sales),
        items=items,
        discounts=discounts,
        taxes=taxes,
        meta=dict(meta or {}),
    )


def validate_record(record: ConsumptionRecord) -> None:
    """Check a record before it is written.

    Raises:
        ValidationError: On empty ids, an unknown provider, a malformed
            date, negative amounts, or oversized metadata.
    """
    for name in ("client_id", "location_id"):
        if not str(getattr(record, name) or "").strip():
            raise ValidationError(f"{name} is required")
    provider_meta(record.provider)
    parse_date(record.date)
    if record.orders < 0:
        raise ValidationError("orders must be >= 0")
    for name in ("total", "items", "discounts", "taxes"):
        if getattr(record, name) < 0:
            raise ValidationError(f"{name} must be >= 0")
    size = len(json.dumps(record.meta, default=str).encode("utf-8"))
    if size > MAX_META_BYTES:
        raise ValidationError(f"meta too large: {size} bytes (max {MAX_META_BYTES})")


def upsert_consumption(store: StateStore, record: ConsumptionRecord) -> dict[str, str]:
    """Validate and write a snapshot.

    Returns:
        ``{"id": <row id>}``; the id is stable across re-upserts of the
        same (location, provider, date).

    Raises:
        ValidationError: If the record is invalid.
        StoreError: If the store rejects the write.
    """
    validate_record(record)
    row_id = store.upsert_consumption(record)
    logger.info(
        "Consumption %s/%s on %s: %d orders, total %s",
        record.location_id, record.provider, record.date, record.orders, record.total,
    )
    return {"id": row_id}


def get_client_consumption(
    store: StateStore,
    client_id: str,
    date_from: str,
    date_to: str,
    location_id: Optional[str] = None,
) -> pd.DataFrame:
    """Consumption rows for a client, as read by the dashboard.

    Args:
        store: State store.
        client_id: Client to report on.
        date_from: First date, inclusive (``YYYY-MM-DD``).
        date_to: Last date, inclusive.
        location_id: Optional location filter.

    Returns:
        DataFrame with one row per location x provider x date, sorted by
        date. Amounts are floats, ``orders`` is an int.

    Raises:
        ValidationError: If the dates are malformed or inverted.
    """
    if parse_date(date_from) > parse_date(date_to):
        raise ValidationError(f"from ({date_from}) must be <= to ({date_to})")
    records = store.query_consumption(client_id, date_from, date_to, location_id=location_id)
    df = pd.DataFrame(
        [r.to_dict() for r in records], columns=CONSUMPTION_FRAME_COLUMNS + ["meta"]
    )[CONSUMPTION_FRAME_COLUMNS]
    for col in ("items", "total", "discounts", "taxes"):
        df[col] = pd.to_numeric(df[col]).astype(float)
    df["orders"] = pd.to_numeric(df["orders"]).astype(int)
    return df.reset_index(drop=True)
