"""Unified configuration for POS Sync.

This module provides the filesystem layout for persisted state plus the
tunables for the scheduling gate, the rotation breaker and provider HTTP
calls. Everything can be built from environment variables via
``Settings.from_env()``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from pos_sync.exceptions import ConfigError, KmsMisconfigured


@dataclass
class DataPaths:
    """All filesystem paths used by the file-backed state store.

    Attributes:
        data_root: Root directory for all persisted state.

    Directory Structure:
        data_root/
        ├── state/
        │   ├── sync_status/       # one JSON row per location x provider
        │   ├── sync_runs/         # one JSON row per run
        │   ├── breakers/          # rotation breaker state per scope
        │   ├── rotation_metrics/  # one JSON row per rotation metric
        │   └── locks/             # job leases
        ├── credentials/           # cipher bundles per location x provider
        └── consumption/
            └── consumption.csv
    """

    data_root: Path

    @classmethod
    def from_root(cls, data_root: str | Path) -> DataPaths:
        """Create DataPaths from a root directory.

        Args:
            data_root: Root directory for persisted state.

        Returns:
            DataPaths instance.

        Examples:
            >>> paths = DataPaths.from_root("data")
            >>> paths.consumption_csv
            PosixPath('data/consumption/consumption.csv')
        """
        if isinstance(data_root, str):
            data_root = Path(data_root)
        return cls(data_root=data_root)

    @property
    def sync_status(self) -> Path:
        """Gate state rows."""
        return self.data_root / "state" / "sync_status"

    @property
    def sync_runs(self) -> Path:
        """Sync run log."""
        return self.data_root / "state" / "sync_runs"

    @property
    def breakers(self) -> Path:
        """Rotation circuit breaker rows."""
        return self.data_root / "state" / "breakers"

    @property
    def rotation_metrics(self) -> Path:
        """Rotation batch and attempt metrics."""
        return self.data_root / "state" / "rotation_metrics"

    @property
    def locks(self) -> Path:
        """Job leases."""
        return self.data_root / "state" / "locks"

    @property
    def credentials(self) -> Path:
        """Encrypted provider credentials."""
        return self.data_root / "credentials"

    @property
    def consumption(self) -> Path:
        return self.data_root / "consumption"

    @property
    def consumption_csv(self) -> Path:
        """Daily consumption snapshots, one row per location x provider x date."""
        return self.consumption / "consumption.csv"

    def ensure_dirs(self) -> None:
        """Create all directories in the data structure."""
        for path in [
            self.sync_status,
            self.sync_runs,
            self.breakers,
            self.rotation_metrics,
            self.locks,
            self.credentials,
            self.consumption,
        ]:
            path.mkdir(parents=True, exist_ok=True)


@dataclass
class GateConfig:
    """Backoff and pause tunables for the scheduling gate.

    Attributes:
        backoff_base_seconds: Delay before jitter for the first failure is
            ``base * 2``.
        backoff_cap_seconds: Upper bound for any backoff delay.
        jitter_low: Lower bound of the multiplicative jitter.
        jitter_high: Upper bound (exclusive) of the multiplicative jitter.
        pause_threshold: Failure count at which syncing pauses entirely.
        pause_seconds: Length of the pause once the threshold is reached.
    """

    backoff_base_seconds: float = 60.0
    backoff_cap_seconds: float = 1800.0
    jitter_low: float = 0.9
    jitter_high: float = 1.1
    pause_threshold: int = 5
    pause_seconds: float = 2 * 60 * 60

    def __post_init__(self) -> None:
        if self.backoff_base_seconds <= 0 or self.backoff_cap_seconds <= 0:
            raise ConfigError("Backoff base and cap must be positive")
        if not 0 < self.jitter_low <= self.jitter_high:
            raise ConfigError(
                f"Invalid jitter bounds: [{self.jitter_low}, {self.jitter_high})"
            )
        # Each doubling must outrun the jitter spread or backoff stops being monotone.
        if 2 * self.jitter_low < self.jitter_high:
            raise ConfigError("Jitter spread too wide for a monotone backoff")
        if self.pause_threshold < 1:
            raise ConfigError("pause_threshold must be >= 1")


@dataclass
class RotationConfig:
    """Tunables for the credential rotation job and its circuit breaker.

    Attributes:
        breaker_threshold: Consecutive counted failures that open the breaker.
        open_seconds: Initial open duration.
        max_open_seconds: Cap for the doubled duration after a failed trial.
        batch_limit: Maximum candidates leased per run.
        cooldown_seconds: Minimum time between rotations of one credential.
        expiry_window_days: Rotate tokens expiring within this window.
        lease_seconds: Job lease length.
    """

    breaker_threshold: int = 10
    open_seconds: float = 4 * 60 * 60
    max_open_seconds: float = 24 * 60 * 60
    batch_limit: int = 50
    cooldown_seconds: float = 4 * 60 * 60
    expiry_window_days: int = 7
    lease_seconds: float = 10 * 60


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


@dataclass
class Settings:
    """Runtime settings for sync, rotation and provider access.

    Attributes:
        paths: Filesystem layout for persisted state.
        kms_key: 64-char hex key for the credential vault (may be None for
            commands that never touch credentials).
        http_timeout: Default provider request timeout in seconds.
        http_retries: Transport-level retries (kept low; backoff belongs to
            the gate).
        sync_retries: Immediate retries of a whole fetch in ``BaseSync``.
        max_range_days: Largest accepted sync window.
        daily_concurrency: Worker count for the daily fan-out.
        base_urls: Provider id -> API base URL overrides.
    """

    paths: DataPaths
    kms_key: str | None = None
    http_timeout: float = 30.0
    http_retries: int = 0
    sync_retries: int = 2
    max_range_days: int = 31
    daily_concurrency: int = 5
    base_urls: dict[str, str] = field(default_factory=dict)
    gate: GateConfig = field(default_factory=GateConfig)
    rotation: RotationConfig = field(default_factory=RotationConfig)

    @classmethod
    def from_env(cls, data_root: str | Path | None = None) -> Settings:
        """Build settings from ``POS_*`` environment variables.

        Args:
            data_root: Overrides ``POS_DATA_ROOT`` when given.

        Returns:
            Settings instance.

        Raises:
            ConfigError: If a numeric variable cannot be parsed.
        """
        root = data_root or os.environ.get("POS_DATA_ROOT", "data")
        base_urls = {}
        for provider in ("fudo", "bistrosoft", "maxirest"):
            url = os.environ.get(f"{provider.upper()}_BASE_URL")
            if url:
                base_urls[provider] = url.rstrip("/")

        settings = cls(
            paths=DataPaths.from_root(root),
            kms_key=os.environ.get("POS_CRED_KMS_KEY"),
            http_timeout=_env_float("POS_HTTP_TIMEOUT", 30.0),
            http_retries=_env_int("POS_HTTP_RETRIES", 0),
            sync_retries=_env_int("POS_SYNC_RETRIES", 2),
            max_range_days=_env_int("POS_MAX_RANGE_DAYS", 31),
            daily_concurrency=_env_int("POS_DAILY_CONCURRENCY", 5),
            base_urls=base_urls,
        )
        if settings.sync_retries < 0 or settings.http_retries < 0:
            raise ConfigError("Retry counts must be >= 0")
        if settings.daily_concurrency < 1:
            raise ConfigError("POS_DAILY_CONCURRENCY must be >= 1")
        return settings

    def require_kms_key(self) -> str:
        """Return the vault key or fail with KmsMisconfigured."""
        if not self.kms_key:
            raise KmsMisconfigured()
        return self.kms_key
