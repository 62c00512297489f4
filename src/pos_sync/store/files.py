"""File-backed state store.

Layout follows :class:`pos_sync.config.DataPaths`: one JSON document per
row, and consumption snapshots in a single CSV handled with pandas.
Every write goes to a temporary file in the target directory and is
moved into place with ``os.replace``, so readers see either the previous
document or the new one.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

import pandas as pd

from pos_sync.config import DataPaths
from pos_sync.exceptions import StoreError
from pos_sync.models import (
    ConsumptionRecord,
    CredentialRecord,
    CredentialStatus,
    RotationBreakerState,
    RotationMetric,
    SyncRun,
    SyncStatus,
)
from pos_sync.store.base import (
    BreakerUpdate,
    CredentialUpdate,
    RunUpdate,
    StateStore,
    StatusUpdate,
)
from pos_sync.utils import from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

CONSUMPTION_COLUMNS = [
    "id",
    "client_id",
    "location_id",
    "provider",
    "date",
    "total",
    "orders",
    "items",
    "discounts",
    "taxes",
    "meta",
    "updated_at",
]

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def row_filename(*parts: str) -> str:
    """Filesystem-safe file name for a composite key.

    The readable slug can collide ("a/b" and "a_b"), so a short hash of
    the raw parts is appended.
    """
    slug = "__".join(_UNSAFE.sub("_", p) for p in parts)
    digest = hashlib.sha1("\x1f".join(parts).encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}.json"


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` via a temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class FileStore(StateStore):
    """JSON/CSV :class:`StateStore` rooted at ``paths.data_root``."""

    def __init__(self, paths: DataPaths) -> None:
        super().__init__()
        self.paths = paths
        try:
            paths.ensure_dirs()
        except OSError as e:
            raise StoreError(f"Cannot create state directories under {paths.data_root}: {e}") from e

    # -- JSON rows ------------------------------------------------------------

    def _read_json(self, path: Path) -> Optional[dict[str, Any]]:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreError(f"Cannot read {path}: {e}") from e
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt state file {path}: {e}") from e

    def _write_json(self, path: Path, data: dict[str, Any]) -> None:
        try:
            atomic_write_text(path, json.dumps(data, indent=2, default=str))
        except OSError as e:
            raise StoreError(f"Cannot write {path}: {e}") from e
        logger.debug("Wrote %s", path)

    def _read_dir(self, directory: Path) -> list[dict[str, Any]]:
        rows = []
        for path in sorted(directory.glob("*.json")):
            row = self._read_json(path)
            if row is not None:
                rows.append(row)
        return rows

    def _status_path(self, location_id: str, provider: str) -> Path:
        return self.paths.sync_status / row_filename(location_id, provider)

    def _run_path(self, run_id: str) -> Path:
        return self.paths.sync_runs / row_filename(run_id)

    def _breaker_path(self, scope: str) -> Path:
        return self.paths.breakers / row_filename(scope)

    def _credential_path(self, location_id: str, provider: str) -> Path:
        return self.paths.credentials / row_filename(location_id, provider)

    def _lease_path(self, name: str) -> Path:
        return self.paths.locks / row_filename(name)

    # -- gate -----------------------------------------------------------------

    def get_sync_status(self, location_id: str, provider: str) -> Optional[SyncStatus]:
        row = self._read_json(self._status_path(location_id, provider))
        return SyncStatus.from_dict(row) if row else None

    def update_sync_status(self, location_id: str, provider: str, fn: StatusUpdate) -> SyncStatus:
        with self._lock("status", location_id, provider):
            current = self.get_sync_status(location_id, provider) or SyncStatus(
                location_id=location_id, provider=provider
            )
            updated = fn(current)
            self._write_json(self._status_path(location_id, provider), updated.to_dict())
            return updated

    def list_sync_status(self) -> list[SyncStatus]:
        return [SyncStatus.from_dict(row) for row in self._read_dir(self.paths.sync_status)]

    # -- runs -----------------------------------------------------------------

    def insert_run(self, run: SyncRun) -> None:
        path = self._run_path(run.run_id)
        with self._lock("run", run.run_id):
            if path.exists():
                raise StoreError("duplicate_run")
            self._write_json(path, run.to_dict())

    def get_run(self, run_id: str) -> Optional[SyncRun]:
        row = self._read_json(self._run_path(run_id))
        return SyncRun.from_dict(row) if row else None

    def update_run(self, run_id: str, fn: RunUpdate) -> SyncRun:
        with self._lock("run", run_id):
            current = self.get_run(run_id)
            if current is None:
                raise StoreError("not_found")
            updated = fn(current)
            self._write_json(self._run_path(run_id), updated.to_dict())
            return updated

    def list_runs(
        self,
        location_id: Optional[str] = None,
        provider: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[SyncRun]:
        runs = [SyncRun.from_dict(row) for row in self._read_dir(self.paths.sync_runs)]
        runs = [
            r
            for r in runs
            if (location_id is None or r.location_id == location_id)
            and (provider is None or r.provider == provider)
        ]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[:limit] if limit else runs

    # -- rotation breaker -----------------------------------------------------

    def get_breaker(self, scope: str) -> Optional[RotationBreakerState]:
        row = self._read_json(self._breaker_path(scope))
        return RotationBreakerState.from_dict(row) if row else None

    def update_breaker(self, scope: str, fn: BreakerUpdate) -> RotationBreakerState:
        with self._lock("breaker", scope):
            current = self.get_breaker(scope) or RotationBreakerState(scope=scope)
            updated = fn(current)
            self._write_json(self._breaker_path(scope), updated.to_dict())
            return updated

    # -- credentials ----------------------------------------------------------

    def get_credential(self, location_id: str, provider: str) -> Optional[CredentialRecord]:
        row = self._read_json(self._credential_path(location_id, provider))
        return CredentialRecord.from_dict(row) if row else None

    def put_credential(self, record: CredentialRecord) -> None:
        with self._lock("credential", record.location_id, record.provider):
            self._write_json(
                self._credential_path(record.location_id, record.provider), record.to_dict()
            )

    def swap_credential(
        self, location_id: str, provider: str, fn: CredentialUpdate
    ) -> CredentialRecord:
        with self._lock("credential", location_id, provider):
            current = self.get_credential(location_id, provider)
            if current is None:
                raise StoreError("not_found")
            updated = fn(current)
            self._write_json(self._credential_path(location_id, provider), updated.to_dict())
            return updated

    def list_credentials(
        self, status: Optional[CredentialStatus] = None, provider: Optional[str] = None
    ) -> list[CredentialRecord]:
        records = [CredentialRecord.from_dict(row) for row in self._read_dir(self.paths.credentials)]
        return [
            r
            for r in records
            if (status is None or r.status == status) and (provider is None or r.provider == provider)
        ]

    # -- consumption ----------------------------------------------------------

    def _read_consumption(self) -> pd.DataFrame:
        path = self.paths.consumption_csv
        if not path.exists():
            return pd.DataFrame(columns=CONSUMPTION_COLUMNS)
        try:
            df = pd.read_csv(path, dtype=str, keep_default_na=False)
        except (OSError, pd.errors.ParserError) as e:
            raise StoreError(f"Cannot read {path}: {e}") from e
        except pd.errors.EmptyDataError:
            return pd.DataFrame(columns=CONSUMPTION_COLUMNS)
        missing = [c for c in CONSUMPTION_COLUMNS if c not in df.columns]
        if missing:
            raise StoreError(f"Consumption table {path} is missing columns: {missing}")
        return df[CONSUMPTION_COLUMNS]

    def _write_consumption(self, df: pd.DataFrame) -> None:
        path = self.paths.consumption_csv
        try:
            atomic_write_text(path, df.to_csv(index=False))
        except OSError as e:
            raise StoreError(f"Cannot write {path}: {e}") from e

    def upsert_consumption(self, record: ConsumptionRecord) -> str:
        with self._lock("consumption"):
            df = self._read_consumption()
            match = (
                (df["location_id"] == record.location_id)
                & (df["provider"] == record.provider)
                & (df["date"] == record.date)
            )
            existing_ids = df.loc[match, "id"].tolist()
            row_id = existing_ids[0] if existing_ids else (record.id or str(uuid.uuid4()))

            row = record.to_dict()
            row["id"] = row_id
            row["orders"] = str(record.orders)
            row["meta"] = json.dumps(record.meta, sort_keys=True, default=str)
            row["updated_at"] = to_iso(utc_now())

            df = pd.concat(
                [df.loc[~match], pd.DataFrame([row], columns=CONSUMPTION_COLUMNS)],
                ignore_index=True,
            )
            df = df.sort_values(["date", "location_id", "provider"], kind="stable")
            self._write_consumption(df)
            logger.debug(
                "Upserted consumption %s for %s/%s on %s",
                row_id, record.location_id, record.provider, record.date,
            )
            return row_id

    def query_consumption(
        self,
        client_id: str,
        date_from: str,
        date_to: str,
        location_id: Optional[str] = None,
    ) -> list[ConsumptionRecord]:
        df = self._read_consumption()
        mask = (df["client_id"] == client_id) & (df["date"] >= date_from) & (df["date"] <= date_to)
        if location_id is not None:
            mask &= df["location_id"] == location_id
        subset = df.loc[mask].sort_values(["date", "location_id", "provider"], kind="stable")

        records = []
        for row in subset.to_dict(orient="records"):
            try:
                row["meta"] = json.loads(row["meta"]) if row["meta"] else {}
                records.append(ConsumptionRecord.from_dict(row))
            except (ValueError, KeyError) as e:
                raise StoreError(f"Corrupt consumption row {row.get('id')}: {e}") from e
        return records

    # -- leases ---------------------------------------------------------------

    def claim_lease(self, name: str, holder: str, ttl_seconds: float, now: datetime) -> bool:
        path = self._lease_path(name)
        with self._lock("lease", name):
            lease = self._read_json(path)
            if lease and lease.get("holder") != holder:
                expires_at = from_iso(lease.get("expires_at"))
                if expires_at is not None and expires_at > now:
                    return False
            self._write_json(
                path,
                {
                    "name": name,
                    "holder": holder,
                    "expires_at": to_iso(now + timedelta(seconds=ttl_seconds)),
                },
            )
            return True

    def release_lease(self, name: str, holder: str) -> None:
        path = self._lease_path(name)
        with self._lock("lease", name):
            lease = self._read_json(path)
            if lease and lease.get("holder") == holder:
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as e:
                    raise StoreError(f"Cannot release lease {name}: {e}") from e

    # -- rotation metrics -----------------------------------------------------

    def record_rotation_metric(self, metric: RotationMetric) -> None:
        with self._lock("rotation_metric", metric.metric_id):
            self._write_json(
                self.paths.rotation_metrics / row_filename(metric.metric_id), metric.to_dict()
            )

    def list_rotation_metrics(
        self,
        provider: Optional[str] = None,
        metric_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[RotationMetric]:
        rows = self._read_dir(self.paths.rotation_metrics)
        metrics = [RotationMetric.from_dict(row) for row in rows]
        metrics = [
            m
            for m in metrics
            if (provider is None or m.provider == provider)
            and (metric_type is None or m.metric_type == metric_type)
        ]
        metrics.sort(key=lambda m: m.recorded_at, reverse=True)
        return metrics[:limit] if limit else metrics
