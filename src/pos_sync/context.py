"""Wiring shared by sync, credential and rotation entry points."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from pos_sync.config import Settings
from pos_sync.gate import SchedulingGate
from pos_sync.providers.base import ProviderAdapter
from pos_sync.providers.registry import get_adapter
from pos_sync.store.base import StateStore
from pos_sync.store.files import FileStore
from pos_sync.utils import Clock, utc_now

# (provider, credentials) -> adapter
AdapterFactory = Callable[[str, dict[str, Any]], ProviderAdapter]


def api_key_from(credentials: dict[str, Any]) -> str:
    """The secret an adapter authenticates with.

    A rotated access token takes precedence over the long-lived API key.
    """
    return str(credentials.get("token") or credentials.get("apiKey") or "")


@dataclass
class SyncContext:
    """Everything an operation needs: state, settings, gate and adapters.

    Attributes:
        store: Durable state.
        settings: Runtime settings (vault key, limits, HTTP options).
        gate: Scheduling gate over ``store``.
        clock: Returns the current aware UTC time.
        adapter_factory: Override for building adapters (tests inject
            stubs here); defaults to the provider registry.
    """

    store: StateStore
    settings: Settings
    gate: SchedulingGate = field(default=None)  # type: ignore[assignment]
    clock: Clock = utc_now
    adapter_factory: Optional[AdapterFactory] = None

    def __post_init__(self) -> None:
        if self.gate is None:
            self.gate = SchedulingGate(self.store, self.settings.gate, clock=self.clock)

    @classmethod
    def from_settings(
        cls, settings: Settings, store: Optional[StateStore] = None, **kwargs: Any
    ) -> SyncContext:
        """Build a context over a :class:`FileStore` at ``settings.paths``."""
        return cls(store=store or FileStore(settings.paths), settings=settings, **kwargs)

    @property
    def key_hex(self) -> str:
        return self.settings.require_kms_key()

    def adapter(self, provider: str, credentials: dict[str, Any]) -> ProviderAdapter:
        if self.adapter_factory is not None:
            return self.adapter_factory(provider, credentials)
        return get_adapter(
            provider,
            api_key=api_key_from(credentials),
            settings=self.settings,
            credentials=credentials,
        )
