"""POS Sync - sales ingestion from third-party point-of-sale providers.

This package pulls sales from POS vendors, normalizes them into canonical
sales, and keeps one consumption snapshot per location, provider and day,
while staying polite to flaky provider APIs and keeping credentials
encrypted at rest.

Module Structure:
    pos_sync.providers: Provider adapters, mappers and the registry
    pos_sync.vault: AES-GCM credential vault
    pos_sync.gate: Per location x provider backoff/pause gate
    pos_sync.rotation: Token rotation job, its circuit breaker and failure monitor
    pos_sync.consumption: Aggregation, validation and read queries
    pos_sync.sync: Sync orchestrator and daily fan-out
    pos_sync.credentials: Save/verify/re-key stored credentials
    pos_sync.store: File-backed and in-memory state stores
    pos_sync.config: DataPaths and Settings

Quick Start:
    >>> from pos_sync import Settings, SyncContext, run_pos_sync
    >>> from pos_sync.models import DateRange
    >>>
    >>> settings = Settings.from_env(data_root="data")
    >>> ctx = SyncContext.from_settings(settings)
    >>> result = run_pos_sync(
    ...     ctx, "client-1", "loc-1", "fudo",
    ...     window=DateRange.parse("2025-01-01", "2025-01-07"),
    ... )
    >>> result.to_dict()["count"]

Grain Reference:
    - CanonicalSale: one vendor sale
    - ConsumptionRecord: location x provider x date (snapshot, not additive)
    - SyncRun: one orchestrator invocation that passed the gate
    - SyncStatus: location x provider
"""

__version__ = "0.1.0"

from pos_sync.config import DataPaths, Settings
from pos_sync.context import SyncContext
from pos_sync.exceptions import (
    AuthenticationFailed,
    CircuitOpen,
    ConfigError,
    PosSyncError,
    TransientProviderError,
    ValidationError,
)
from pos_sync.sync import SyncCompleted, SyncSkipped, run_daily, run_pos_sync

__all__ = [
    "AuthenticationFailed",
    "CircuitOpen",
    "ConfigError",
    "DataPaths",
    "PosSyncError",
    "Settings",
    "SyncCompleted",
    "SyncContext",
    "SyncSkipped",
    "TransientProviderError",
    "ValidationError",
    "__version__",
    "run_daily",
    "run_pos_sync",
]
