"""Base adapter interface for POS providers.

This module defines the abstract base class every provider adapter must
implement, so the sync orchestrator can drive any vendor the same way:
``validate`` a key, then call ``fetch_sales`` until ``next`` is absent.

Mapping is deliberately separate from fetching. Each provider module ships
a pure ``to_canonical`` function over its own raw record type; adapters
expose it through :meth:`ProviderAdapter.to_canonical`, and it can be
tested without any network access.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Generic, Optional, TypeVar

import requests

from pos_sync.models import CanonicalSale, DateRange
from pos_sync.providers.http import DEFAULT_TIMEOUT, make_session

RawT = TypeVar("RawT")


@dataclass
class SalesPage(Generic[RawT]):
    """One page of raw vendor sales.

    Attributes:
        data: Raw records in provider order.
        next: Opaque cursor for the following page; None on the last page.
    """

    data: list[RawT] = field(default_factory=list)
    next: Optional[str] = None


@dataclass(frozen=True)
class ProviderMeta:
    """Static description of a provider for the registry.

    Attributes:
        id: Provider id used as the registry key ("fudo", "bistrosoft", ...).
        label: Human-readable name.
        website: Vendor site, for operators.
        batch_limit: Page size requested from the vendor, if it supports one.
        realtime: Whether the vendor can push sales (not used for ingestion).
        supports_rotation: Whether the adapter can issue fresh tokens.
    """

    id: str
    label: str
    website: str = ""
    batch_limit: Optional[int] = None
    realtime: bool = False
    supports_rotation: bool = False


@dataclass(frozen=True)
class IssuedToken:
    access_token: str
    expires_in: Optional[int] = None

    def expires_at(self, now: datetime) -> Optional[datetime]:
        if not self.expires_in:
            return None
        return now + timedelta(seconds=self.expires_in)


class ProviderAdapter(ABC, Generic[RawT]):
    """Abstract base class for POS provider adapters.

    Subclasses set ``provider`` and implement :meth:`validate`,
    :meth:`fetch_sales` and :meth:`to_canonical`.

    Args:
        api_key: Credential used for sales requests.
        base_url: Vendor API root; subclasses supply a default.
        session: Optional preconfigured session (tests inject fakes here).
        timeout: Request timeout in seconds.
        retries: Transport-level retries.
        credentials: Full decrypted credential payload, for vendors that
            need more than the key (environment, store id, secrets).
    """

    provider: str = ""
    default_base_url: str = ""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = 0,
        credentials: Optional[dict[str, Any]] = None,
    ) -> None:
        self.api_key = api_key
        self.credentials = dict(credentials or {})
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.session = session or make_session(timeout=timeout, retries=retries)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(base_url={self.base_url!r})"

    @abstractmethod
    def validate(self, api_key: Optional[str] = None) -> bool:
        """Lightweight credential check; never mutates state.

        Args:
            api_key: Key to check; defaults to the adapter's own key.

        Returns:
            True if the provider accepts the key, False if it rejects it.

        Raises:
            TransientProviderError: If the provider cannot be reached.
        """
        pass

    @abstractmethod
    def fetch_sales(self, window: DateRange, cursor: Optional[str] = None) -> SalesPage[RawT]:
        """Fetch one page of raw sales for ``window``.

        Args:
            window: Inclusive date range.
            cursor: Opaque pagination token from the previous page.

        Returns:
            The page and the cursor for the next one.
        """
        pass

    @abstractmethod
    def to_canonical(self, raw: Sequence[RawT]) -> list[CanonicalSale]:
        """Map raw vendor records to canonical sales. Performs no I/O."""
        pass


class TokenIssuer(ABC):
    """Capability mixin for adapters that can mint short-lived tokens."""

    @abstractmethod
    def request_token(self, credentials: dict[str, Any]) -> IssuedToken:
        """Exchange long-lived credentials for a new access token."""
        pass

    @abstractmethod
    def validate_token(self, token: str, credentials: dict[str, Any]) -> bool:
        """Check that a freshly issued token is accepted by the provider."""
        pass
