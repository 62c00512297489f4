"""Live provider checks.

Skipped unless credentials are exported. Each test only reads data.
"""

import os

import pytest

from pos_sync.config import Settings
from pos_sync.models import DateRange
from pos_sync.providers.registry import get_adapter
from pos_sync.sync import fetch_all_sales


def _live_key(provider: str) -> str:
    name = f"POS_LIVE_{provider.upper()}_API_KEY"
    key = os.environ.get(name, "").strip('"').strip("'")
    if not key:
        pytest.skip(f"Live test skipped: {name} environment variable required")
    return key


@pytest.mark.live
@pytest.mark.parametrize("provider", ["fudo", "bistrosoft", "maxirest"])
def test_live_fetch_yesterday(provider: str, tmp_path) -> None:
    """Validate the key, then fetch and map yesterday's sales.

    Prerequisites:
        - POS_LIVE_<PROVIDER>_API_KEY: key for the provider under test
        - POS_LIVE_<PROVIDER>_ENV: optional environment ("production" by default)
    """
    key = _live_key(provider)
    settings = Settings.from_env(data_root=tmp_path)
    credentials = {
        "apiKey": key,
        "env": os.environ.get(f"POS_LIVE_{provider.upper()}_ENV", "production"),
    }
    adapter = get_adapter(provider, api_key=key, settings=settings, credentials=credentials)

    assert adapter.validate() is True

    window = DateRange.parse()
    raw = fetch_all_sales(adapter, window)
    sales = adapter.to_canonical(raw)
    assert len(sales) <= len(raw)
    for sale in sales:
        assert sale.external_id
        assert sale.occurred_at.tzinfo is not None
        assert sale.provider == provider
