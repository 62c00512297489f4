"""Provider registry: provider id -> metadata and adapter factory.

Examples:
    >>> from pos_sync.providers.registry import get_adapter, list_providers
    >>> [m.id for m in list_providers()]
    ['fudo', 'bistrosoft', 'maxirest', 'other']
    >>> adapter = get_adapter("fudo", api_key="secret-key")
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Optional

from pos_sync.config import Settings
from pos_sync.exceptions import ValidationError
from pos_sync.providers.base import ProviderAdapter, ProviderMeta
from pos_sync.providers.bistrosoft import BistrosoftAdapter
from pos_sync.providers.fudo import FudoAdapter
from pos_sync.providers.maxirest import MaxirestAdapter

logger = logging.getLogger(__name__)

AdapterFactory = Callable[..., ProviderAdapter]

_META: dict[str, ProviderMeta] = {}
_FACTORIES: dict[str, AdapterFactory] = {}


def register_provider(meta: ProviderMeta, factory: Optional[AdapterFactory] = None) -> None:
    """Register (or replace) a provider.

    Args:
        meta: Provider metadata; ``meta.id`` is the registry key.
        factory: Callable building an adapter. Takes ``api_key`` plus the
            keyword arguments accepted by :class:`ProviderAdapter`. A
            provider may be listed without a factory.
    """
    _META[meta.id] = meta
    if factory is not None:
        _FACTORIES[meta.id] = factory
    else:
        _FACTORIES.pop(meta.id, None)
    logger.debug("Registered provider %s (adapter=%s)", meta.id, factory is not None)


def unregister_provider(provider: str) -> None:
    _META.pop(provider, None)
    _FACTORIES.pop(provider, None)


def list_providers() -> list[ProviderMeta]:
    """All known providers, in registration order."""
    return list(_META.values())


def provider_meta(provider: str) -> ProviderMeta:
    """Metadata for one provider.

    Raises:
        ValidationError: If the provider is unknown.
    """
    try:
        return _META[provider]
    except KeyError:
        raise ValidationError(f"Unsupported provider: {provider!r}") from None


def is_supported(provider: str) -> bool:
    """True when the provider has an adapter that can actually sync."""
    return provider in _FACTORIES


def get_adapter(
    provider: str,
    api_key: str,
    settings: Optional[Settings] = None,
    credentials: Optional[dict[str, Any]] = None,
    **kwargs: Any,
) -> ProviderAdapter:
    """Build an adapter for ``provider``.

    Args:
        provider: Provider id.
        api_key: Key used by the adapter.
        settings: Supplies timeout, transport retries and base URL overrides.
        credentials: Full decrypted credential payload.
        **kwargs: Passed through to the factory (e.g. ``session``).

    Returns:
        A ready-to-use adapter.

    Raises:
        ValidationError: If the provider is unknown, has no adapter, or the
            key is empty.
    """
    provider_meta(provider)
    factory = _FACTORIES.get(provider)
    if factory is None:
        raise ValidationError(f"No adapter factory registered for provider: {provider}")
    if not api_key or not str(api_key).strip():
        raise ValidationError(f"Empty API key for provider: {provider}")

    if settings is not None:
        kwargs.setdefault("timeout", settings.http_timeout)
        kwargs.setdefault("retries", settings.http_retries)
        if provider in settings.base_urls:
            kwargs.setdefault("base_url", settings.base_urls[provider])
    if credentials is not None:
        kwargs.setdefault("credentials", credentials)
    return factory(api_key, **kwargs)


def _register_builtin() -> None:
    register_provider(
        ProviderMeta(
            id="fudo",
            label="Fudo",
            website="https://fu.do",
            batch_limit=1000,
            realtime=True,
            supports_rotation=True,
        ),
        FudoAdapter,
    )
    register_provider(
        ProviderMeta(id="bistrosoft", label="Bistrosoft", website="https://bistrosoft.com", batch_limit=500),
        BistrosoftAdapter,
    )
    register_provider(
        ProviderMeta(id="maxirest", label="MaxiRest", website="https://maxirest.com"),
        MaxirestAdapter,
    )
    # Listed so credentials can be stored; no sync adapter exists yet.
    register_provider(ProviderMeta(id="other", label="Other"))


_register_builtin()
