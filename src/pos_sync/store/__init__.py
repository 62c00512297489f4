"""Durable state for the gate, rotation breaker, credentials and consumption."""

from pos_sync.store.base import StateStore
from pos_sync.store.files import FileStore
from pos_sync.store.memory import MemoryStore

__all__ = ["FileStore", "MemoryStore", "StateStore"]
