"""Shared fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from pos_sync.config import DataPaths, Settings
from pos_sync.context import SyncContext
from pos_sync.store.memory import MemoryStore
from support import KEY_HEX, FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(paths=DataPaths.from_root(tmp_path / "data"), kms_key=KEY_HEX, sync_retries=0)


@pytest.fixture
def ctx(store: MemoryStore, settings: Settings, clock: FakeClock) -> SyncContext:
    return SyncContext(store=store, settings=settings, clock=clock)
