"""Tests for the state stores.

The shared contract runs against both the in-memory and the file-backed
store; FileStore-specific behaviour (file layout, corruption handling,
the consumption CSV) is covered separately.
"""

from __future__ import annotations

import json
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from pos_sync.config import DataPaths
from pos_sync.exceptions import StoreError
from pos_sync.gate import SchedulingGate
from pos_sync.models import (
    CipherBundle,
    ConsumptionRecord,
    CredentialRecord,
    CredentialStatus,
    RotationMetric,
    SyncRun,
)
from pos_sync.store.base import StateStore
from pos_sync.store.files import CONSUMPTION_COLUMNS, FileStore, row_filename
from pos_sync.store.memory import MemoryStore
from support import START


def _credential(location_id: str = "loc-1", provider: str = "fudo", **fields) -> CredentialRecord:
    return CredentialRecord(
        location_id=location_id,
        provider=provider,
        cipher_bundle=CipherBundle(iv="aXY=", tag="dGFn", data="ZGF0YQ=="),
        **fields,
    )


def _consumption(**fields) -> ConsumptionRecord:
    values = dict(
        client_id="client-1",
        location_id="loc-1",
        provider="fudo",
        date="2025-01-14",
        total=Decimal("15.30"),
        orders=3,
        items=Decimal("4.5"),
    )
    values.update(fields)
    return ConsumptionRecord(**values)


@pytest.fixture(params=["memory", "files"])
def any_store(request, tmp_path: Path) -> StateStore:
    if request.param == "memory":
        return MemoryStore()
    return FileStore(DataPaths.from_root(tmp_path))


@pytest.fixture
def file_store(tmp_path: Path) -> FileStore:
    return FileStore(DataPaths.from_root(tmp_path))


class TestStoreContract:
    def test_status_update_creates_row(self, any_store: StateStore) -> None:
        assert any_store.get_sync_status("loc-1", "fudo") is None

        def fail_once(s):
            s.failures += 1
            s.next_attempt_at = START
            return s

        any_store.update_sync_status("loc-1", "fudo", fail_once)
        row = any_store.get_sync_status("loc-1", "fudo")
        assert row.failures == 1
        assert row.next_attempt_at == START
        assert [s.location_id for s in any_store.list_sync_status()] == ["loc-1"]

    def test_duplicate_run_rejected(self, any_store: StateStore) -> None:
        run = SyncRun(run_id="r1", location_id="loc-1", provider="fudo", started_at=START)
        any_store.insert_run(run)
        with pytest.raises(StoreError, match="duplicate_run"):
            any_store.insert_run(run)

    def test_update_missing_run(self, any_store: StateStore) -> None:
        with pytest.raises(StoreError, match="not_found"):
            any_store.update_run("nope", lambda r: r)

    def test_runs_listed_newest_first_with_filters(self, any_store: StateStore) -> None:
        for i, (loc, provider) in enumerate([("loc-1", "fudo"), ("loc-1", "maxirest"), ("loc-2", "fudo")]):
            any_store.insert_run(
                SyncRun(
                    run_id=f"r{i}",
                    location_id=loc,
                    provider=provider,
                    started_at=START + timedelta(minutes=i),
                )
            )

        assert [r.run_id for r in any_store.list_runs()] == ["r2", "r1", "r0"]
        assert [r.run_id for r in any_store.list_runs(location_id="loc-1")] == ["r1", "r0"]
        assert [r.run_id for r in any_store.list_runs(provider="fudo", limit=1)] == ["r2"]

    def test_breaker_starts_closed(self, any_store: StateStore) -> None:
        def trip(b):
            b.failure_count = 3
            return b

        state = any_store.update_breaker("global", trip)
        assert state.state.value == "closed"
        assert any_store.get_breaker("global").failure_count == 3

    def test_credentials_filter_by_status_and_provider(self, any_store: StateStore) -> None:
        any_store.put_credential(_credential("loc-1", "fudo", status=CredentialStatus.CONNECTED))
        any_store.put_credential(_credential("loc-2", "fudo"))
        any_store.put_credential(_credential("loc-3", "maxirest", status=CredentialStatus.CONNECTED))

        connected = any_store.list_credentials(status=CredentialStatus.CONNECTED)
        assert sorted(c.location_id for c in connected) == ["loc-1", "loc-3"]
        fudo = any_store.list_credentials(provider="fudo")
        assert sorted(c.location_id for c in fudo) == ["loc-1", "loc-2"]

    def test_failed_swap_writes_nothing(self, any_store: StateStore) -> None:
        any_store.put_credential(_credential(rotation_attempts=2))

        def explode(record):
            record.rotation_attempts = 99
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            any_store.swap_credential("loc-1", "fudo", explode)
        assert any_store.get_credential("loc-1", "fudo").rotation_attempts == 2

    def test_swap_missing_credential(self, any_store: StateStore) -> None:
        with pytest.raises(StoreError, match="not_found"):
            any_store.swap_credential("loc-1", "fudo", lambda r: r)

    def test_consumption_upsert_keeps_row_id(self, any_store: StateStore) -> None:
        first = any_store.upsert_consumption(_consumption(meta={"correlation_id": "a"}))
        second = any_store.upsert_consumption(_consumption(total=Decimal("99.99"), orders=8))

        assert first == second
        rows = any_store.query_consumption("client-1", "2025-01-14", "2025-01-14")
        assert len(rows) == 1
        assert rows[0].id == first
        assert rows[0].total == Decimal("99.99")
        assert rows[0].orders == 8
        assert rows[0].meta == {}
        assert rows[0].updated_at is not None

    def test_consumption_query_filters(self, any_store: StateStore) -> None:
        any_store.upsert_consumption(_consumption(date="2025-01-13"))
        any_store.upsert_consumption(_consumption(date="2025-01-14", location_id="loc-2"))
        any_store.upsert_consumption(_consumption(date="2025-01-14"))
        any_store.upsert_consumption(_consumption(date="2025-01-20"))

        rows = any_store.query_consumption("client-1", "2025-01-13", "2025-01-14")
        assert [(r.date, r.location_id) for r in rows] == [
            ("2025-01-13", "loc-1"),
            ("2025-01-14", "loc-1"),
            ("2025-01-14", "loc-2"),
        ]
        assert len(any_store.query_consumption("client-1", "2025-01-01", "2025-01-31", "loc-2")) == 1
        assert any_store.query_consumption("client-2", "2025-01-01", "2025-01-31") == []

    def test_lease_lifecycle(self, any_store: StateStore) -> None:
        assert any_store.claim_lease("job", "a", 60, START)
        assert any_store.claim_lease("job", "a", 60, START + timedelta(seconds=30))
        assert not any_store.claim_lease("job", "b", 60, START + timedelta(seconds=60))

        any_store.release_lease("job", "b")
        assert not any_store.claim_lease("job", "b", 60, START + timedelta(seconds=60))

        any_store.release_lease("job", "a")
        assert any_store.claim_lease("job", "b", 60, START + timedelta(seconds=60))

    def test_expired_lease_can_be_taken(self, any_store: StateStore) -> None:
        assert any_store.claim_lease("job", "a", 60, START)
        assert any_store.claim_lease("job", "b", 60, START + timedelta(seconds=61))

    def test_rotation_metrics_listed_newest_first_with_filters(self, any_store: StateStore) -> None:
        rows = [("m0", "fudo", "job_summary"), ("m1", "fudo", "rotation_attempt"), ("m2", "other", "job_summary")]
        for i, (metric_id, provider, metric_type) in enumerate(rows):
            any_store.record_rotation_metric(
                RotationMetric(
                    metric_id=metric_id,
                    job_run_id="job-1",
                    provider=provider,
                    metric_type=metric_type,
                    recorded_at=START + timedelta(minutes=i),
                    value=i,
                    meta={"successes": i},
                )
            )

        assert [m.metric_id for m in any_store.list_rotation_metrics()] == ["m2", "m1", "m0"]
        assert [m.metric_id for m in any_store.list_rotation_metrics(provider="fudo")] == ["m1", "m0"]
        summaries = any_store.list_rotation_metrics(metric_type="job_summary", limit=1)
        assert [m.metric_id for m in summaries] == ["m2"]
        assert summaries[0].meta == {"successes": 2}
        assert summaries[0].duration_ms is None


class TestFileStore:
    def test_creates_layout(self, tmp_path: Path) -> None:
        FileStore(DataPaths.from_root(tmp_path))
        for sub in ["state/sync_status", "state/sync_runs", "state/breakers", "state/rotation_metrics", "state/locks", "credentials", "consumption"]:
            assert (tmp_path / sub).is_dir()

    def test_rows_are_plain_json(self, file_store: FileStore) -> None:
        file_store.put_credential(_credential(client_id="client-1"))
        path = file_store.paths.credentials / row_filename("loc-1", "fudo")

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["client_id"] == "client-1"
        assert data["cipher_bundle"] == {"iv": "aXY=", "tag": "dGFn", "data": "ZGF0YQ=="}

    def test_no_temp_files_left_behind(self, file_store: FileStore) -> None:
        for _ in range(3):
            file_store.update_sync_status("loc-1", "fudo", lambda s: s)
        leftovers = [p.name for p in file_store.paths.sync_status.iterdir() if p.name.startswith(".")]
        assert leftovers == []

    def test_corrupt_row_raises_store_error(self, file_store: FileStore) -> None:
        path = file_store.paths.sync_status / row_filename("loc-1", "fudo")
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StoreError, match="Corrupt state file"):
            file_store.get_sync_status("loc-1", "fudo")

    def test_gate_fails_open_on_corrupt_row(self, file_store: FileStore) -> None:
        path = file_store.paths.sync_status / row_filename("loc-1", "fudo")
        path.write_text("", encoding="utf-8")
        decision = SchedulingGate(file_store, clock=lambda: START).can_sync("loc-1", "fudo")
        assert decision.ok

    def test_consumption_csv_keeps_exact_decimals(self, file_store: FileStore) -> None:
        file_store.upsert_consumption(
            _consumption(total=Decimal("0.10"), taxes=Decimal("1.005"), meta={"from": "2025-01-14"})
        )

        text = file_store.paths.consumption_csv.read_text(encoding="utf-8")
        assert text.splitlines()[0] == ",".join(CONSUMPTION_COLUMNS)
        row = file_store.query_consumption("client-1", "2025-01-14", "2025-01-14")[0]
        assert row.total == Decimal("0.10")
        assert row.taxes == Decimal("1.005")
        assert row.meta == {"from": "2025-01-14"}

    def test_consumption_csv_missing_columns(self, file_store: FileStore) -> None:
        file_store.paths.consumption_csv.write_text("id,total\n1,2\n", encoding="utf-8")
        with pytest.raises(StoreError, match="missing columns"):
            file_store.query_consumption("client-1", "2025-01-01", "2025-01-31")

    def test_empty_consumption_csv_reads_as_no_rows(self, file_store: FileStore) -> None:
        file_store.paths.consumption_csv.write_text("", encoding="utf-8")
        assert file_store.query_consumption("client-1", "2025-01-01", "2025-01-31") == []

    def test_state_survives_new_instance(self, tmp_path: Path) -> None:
        FileStore(DataPaths.from_root(tmp_path)).upsert_consumption(_consumption())
        reopened = FileStore(DataPaths.from_root(tmp_path))
        assert len(reopened.query_consumption("client-1", "2025-01-14", "2025-01-14")) == 1


@pytest.mark.parametrize(
    "a,b",
    [
        (("a/b", "fudo"), ("a_b", "fudo")),
        (("loc 1", "fudo"), ("loc_1", "fudo")),
        (("loc", "1__fudo"), ("loc__1", "fudo")),
    ],
)
def test_row_filename_does_not_collide(a, b) -> None:
    assert row_filename(*a) != row_filename(*b)


def test_row_filename_is_filesystem_safe() -> None:
    name = row_filename("../etc/passwd", "fudo")
    assert "/" not in name
    assert name.endswith(".json")
