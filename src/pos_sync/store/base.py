"""State store interface.

All shared state (gate rows, sync runs, rotation breakers, credentials,
consumption snapshots and job leases) goes through this narrow
interface. Mutations are read-modify-write callbacks scoped to one
composite key and serialized by a per-key lock, so two writers never
interleave on the same row.

The lock is process-local. Cross-process callers (two cron invocations)
can still race between a gate check and a run start; consumption upserts
are snapshot replaces, so a duplicate run rewrites the same values.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import Optional

from pos_sync.models import (
    ConsumptionRecord,
    CredentialRecord,
    CredentialStatus,
    RotationBreakerState,
    RotationMetric,
    SyncRun,
    SyncStatus,
)

StatusUpdate = Callable[[SyncStatus], SyncStatus]
RunUpdate = Callable[[SyncRun], SyncRun]
BreakerUpdate = Callable[[RotationBreakerState], RotationBreakerState]
CredentialUpdate = Callable[[CredentialRecord], CredentialRecord]


class StateStore(ABC):
    """Abstract durable store for sync, rotation and consumption state."""

    def __init__(self) -> None:
        self._locks: dict[tuple[str, ...], threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, *key: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    # -- gate -----------------------------------------------------------------

    @abstractmethod
    def get_sync_status(self, location_id: str, provider: str) -> Optional[SyncStatus]:
        """Read one gate row, or None if it does not exist yet."""
        pass

    @abstractmethod
    def update_sync_status(
        self, location_id: str, provider: str, fn: StatusUpdate
    ) -> SyncStatus:
        """Apply ``fn`` to the gate row (created empty if missing) and persist it."""
        pass

    @abstractmethod
    def list_sync_status(self) -> list[SyncStatus]:
        pass

    # -- runs -----------------------------------------------------------------

    @abstractmethod
    def insert_run(self, run: SyncRun) -> None:
        pass

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[SyncRun]:
        pass

    @abstractmethod
    def update_run(self, run_id: str, fn: RunUpdate) -> SyncRun:
        """Apply ``fn`` to an existing run.

        Raises:
            StoreError: If the run does not exist ("not_found").
        """
        pass

    @abstractmethod
    def list_runs(
        self,
        location_id: Optional[str] = None,
        provider: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[SyncRun]:
        """Runs matching the filters, newest first."""
        pass

    # -- rotation breaker -----------------------------------------------------

    @abstractmethod
    def get_breaker(self, scope: str) -> Optional[RotationBreakerState]:
        pass

    @abstractmethod
    def update_breaker(self, scope: str, fn: BreakerUpdate) -> RotationBreakerState:
        """Apply ``fn`` to the breaker row (closed if missing) and persist it."""
        pass

    # -- credentials ----------------------------------------------------------

    @abstractmethod
    def get_credential(self, location_id: str, provider: str) -> Optional[CredentialRecord]:
        pass

    @abstractmethod
    def put_credential(self, record: CredentialRecord) -> None:
        """Insert or fully replace a credential."""
        pass

    @abstractmethod
    def swap_credential(
        self, location_id: str, provider: str, fn: CredentialUpdate
    ) -> CredentialRecord:
        """Atomically replace a credential with ``fn(current)``.

        Readers observe either the old record or the new one, never a mix.
        If ``fn`` raises, nothing is written.

        Raises:
            StoreError: If the credential does not exist ("not_found").
        """
        pass

    @abstractmethod
    def list_credentials(
        self, status: Optional[CredentialStatus] = None, provider: Optional[str] = None
    ) -> list[CredentialRecord]:
        pass

    # -- consumption ----------------------------------------------------------

    @abstractmethod
    def upsert_consumption(self, record: ConsumptionRecord) -> str:
        """Replace the snapshot for ``record.key``; return the stable row id."""
        pass

    @abstractmethod
    def query_consumption(
        self,
        client_id: str,
        date_from: str,
        date_to: str,
        location_id: Optional[str] = None,
    ) -> list[ConsumptionRecord]:
        """Snapshots for a client between two ``YYYY-MM-DD`` dates inclusive."""
        pass

    # -- leases ---------------------------------------------------------------

    @abstractmethod
    def claim_lease(self, name: str, holder: str, ttl_seconds: float, now: datetime) -> bool:
        """Take or renew a named lease; False if someone else holds it."""
        pass

    @abstractmethod
    def release_lease(self, name: str, holder: str) -> None:
        pass

    # -- rotation metrics -----------------------------------------------------

    @abstractmethod
    def record_rotation_metric(self, metric: RotationMetric) -> None:
        pass

    @abstractmethod
    def list_rotation_metrics(
        self,
        provider: Optional[str] = None,
        metric_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[RotationMetric]:
        """Metrics matching the filters, newest first."""
        pass
