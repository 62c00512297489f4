"""Example: connect a location and sync a week of sales

This example walks through the library API end to end:
1. Encrypt and store the location's Fudo credentials
2. Verify them with the provider (marks them connected)
3. Sync a date window into a consumption snapshot
4. Read the client's consumption back as a DataFrame

Prerequisites:
- Set POS_CRED_KMS_KEY to a 64-char hex key (e.g. `openssl rand -hex 32`)
- Set FUDO_API_KEY to the location's Fudo API key
- State is written under data/ (or POS_DATA_ROOT)
"""

import os

from pos_sync import Settings, SyncContext, run_pos_sync
from pos_sync.consumption import get_client_consumption
from pos_sync.credentials import save_credentials, verify_credentials
from pos_sync.models import DateRange

client_id = "client-1"  # MODIFY AS NEEDED
location_id = "loc-1"  # MODIFY AS NEEDED

settings = Settings.from_env()
ctx = SyncContext.from_settings(settings)

print(f"Saving credentials for {location_id}...")
saved = save_credentials(
    ctx,
    location_id,
    "fudo",
    {"apiKey": os.environ["FUDO_API_KEY"], "env": "production"},
    client_id=client_id,
)
print(f"Stored ({saved['status']}), hints: {saved['masked_hints']}")

verified = verify_credentials(ctx, location_id, "fudo")
if not verified["valid"]:
    raise SystemExit("Fudo rejected the API key")

window = DateRange.parse("2025-01-01", "2025-01-07", max_days=settings.max_range_days)
print(f"\nSyncing {window.date_from} to {window.date_to}...")
result = run_pos_sync(ctx, client_id, location_id, "fudo", window=window)

if result.skipped:
    # The gate is backing off after recent failures; try again later.
    print(f"Skipped: {result.reason} for another {result.wait_ms // 1000}s")
else:
    print(f"Synced {result.count} sales (run {result.run_id})")

df = get_client_consumption(ctx.store, client_id, "2025-01-01", "2025-01-31")
print(f"\nConsumption rows: {len(df)}")
print(df[["location_id", "provider", "date", "orders", "total"]].head())
