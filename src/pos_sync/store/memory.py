"""In-memory state store for tests and dry runs.

Rows are kept in their serialized dict form so callers never share a
mutable object with the store.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

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


class MemoryStore(StateStore):
    """Dict-backed :class:`StateStore`."""

    def __init__(self) -> None:
        super().__init__()
        self.status: dict[tuple[str, str], dict[str, Any]] = {}
        self.runs: dict[str, dict[str, Any]] = {}
        self.breakers: dict[str, dict[str, Any]] = {}
        self.credentials: dict[tuple[str, str], dict[str, Any]] = {}
        self.consumption: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.leases: dict[str, dict[str, Any]] = {}
        self.rotation_metrics: dict[str, dict[str, Any]] = {}

    def get_sync_status(self, location_id: str, provider: str) -> Optional[SyncStatus]:
        row = self.status.get((location_id, provider))
        return SyncStatus.from_dict(row) if row else None

    def update_sync_status(self, location_id: str, provider: str, fn: StatusUpdate) -> SyncStatus:
        with self._lock("status", location_id, provider):
            current = self.get_sync_status(location_id, provider) or SyncStatus(
                location_id=location_id, provider=provider
            )
            updated = fn(current)
            self.status[(location_id, provider)] = updated.to_dict()
            return updated

    def list_sync_status(self) -> list[SyncStatus]:
        return [SyncStatus.from_dict(row) for row in self.status.values()]

    def insert_run(self, run: SyncRun) -> None:
        with self._lock("run", run.run_id):
            if run.run_id in self.runs:
                raise StoreError("duplicate_run")
            self.runs[run.run_id] = run.to_dict()

    def get_run(self, run_id: str) -> Optional[SyncRun]:
        row = self.runs.get(run_id)
        return SyncRun.from_dict(row) if row else None

    def update_run(self, run_id: str, fn: RunUpdate) -> SyncRun:
        with self._lock("run", run_id):
            current = self.get_run(run_id)
            if current is None:
                raise StoreError("not_found")
            updated = fn(current)
            self.runs[run_id] = updated.to_dict()
            return updated

    def list_runs(
        self,
        location_id: Optional[str] = None,
        provider: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[SyncRun]:
        runs = [SyncRun.from_dict(row) for row in self.runs.values()]
        runs = [
            r
            for r in runs
            if (location_id is None or r.location_id == location_id)
            and (provider is None or r.provider == provider)
        ]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[:limit] if limit else runs

    def get_breaker(self, scope: str) -> Optional[RotationBreakerState]:
        row = self.breakers.get(scope)
        return RotationBreakerState.from_dict(row) if row else None

    def update_breaker(self, scope: str, fn: BreakerUpdate) -> RotationBreakerState:
        with self._lock("breaker", scope):
            current = self.get_breaker(scope) or RotationBreakerState(scope=scope)
            updated = fn(current)
            self.breakers[scope] = updated.to_dict()
            return updated

    def get_credential(self, location_id: str, provider: str) -> Optional[CredentialRecord]:
        row = self.credentials.get((location_id, provider))
        return CredentialRecord.from_dict(row) if row else None

    def put_credential(self, record: CredentialRecord) -> None:
        with self._lock("credential", record.location_id, record.provider):
            self.credentials[(record.location_id, record.provider)] = record.to_dict()

    def swap_credential(
        self, location_id: str, provider: str, fn: CredentialUpdate
    ) -> CredentialRecord:
        with self._lock("credential", location_id, provider):
            current = self.get_credential(location_id, provider)
            if current is None:
                raise StoreError("not_found")
            updated = fn(current)
            self.credentials[(location_id, provider)] = updated.to_dict()
            return updated

    def list_credentials(
        self, status: Optional[CredentialStatus] = None, provider: Optional[str] = None
    ) -> list[CredentialRecord]:
        records = [CredentialRecord.from_dict(row) for row in self.credentials.values()]
        return [
            r
            for r in records
            if (status is None or r.status == status) and (provider is None or r.provider == provider)
        ]

    def upsert_consumption(self, record: ConsumptionRecord) -> str:
        with self._lock("consumption"):
            existing = self.consumption.get(record.key)
            row = record.to_dict()
            row["id"] = existing["id"] if existing else (record.id or str(uuid.uuid4()))
            row["updated_at"] = to_iso(utc_now())
            self.consumption[record.key] = row
            return row["id"]

    def query_consumption(
        self,
        client_id: str,
        date_from: str,
        date_to: str,
        location_id: Optional[str] = None,
    ) -> list[ConsumptionRecord]:
        rows = [
            row
            for row in self.consumption.values()
            if row["client_id"] == client_id
            and date_from <= row["date"] <= date_to
            and (location_id is None or row["location_id"] == location_id)
        ]
        rows.sort(key=lambda row: (row["date"], row["location_id"], row["provider"]))
        return [ConsumptionRecord.from_dict(row) for row in rows]

    def claim_lease(self, name: str, holder: str, ttl_seconds: float, now: datetime) -> bool:
        with self._lock("lease", name):
            lease = self.leases.get(name)
            if lease and lease["holder"] != holder:
                expires_at = from_iso(lease["expires_at"])
                if expires_at is not None and expires_at > now:
                    return False
            self.leases[name] = {
                "holder": holder,
                "expires_at": to_iso(now + timedelta(seconds=ttl_seconds)),
            }
            return True

    def release_lease(self, name: str, holder: str) -> None:
        with self._lock("lease", name):
            lease = self.leases.get(name)
            if lease and lease["holder"] == holder:
                del self.leases[name]

    def record_rotation_metric(self, metric: RotationMetric) -> None:
        with self._lock("rotation_metric", metric.metric_id):
            self.rotation_metrics[metric.metric_id] = metric.to_dict()

    def list_rotation_metrics(
        self,
        provider: Optional[str] = None,
        metric_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[RotationMetric]:
        metrics = [RotationMetric.from_dict(row) for row in self.rotation_metrics.values()]
        metrics = [
            m
            for m in metrics
            if (provider is None or m.provider == provider)
            and (metric_type is None or m.metric_type == metric_type)
        ]
        metrics.sort(key=lambda m: m.recorded_at, reverse=True)
        return metrics[:limit] if limit else metrics
