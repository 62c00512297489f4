"""POS provider adapters and their registry."""

from pos_sync.providers.base import IssuedToken, ProviderAdapter, ProviderMeta, SalesPage, TokenIssuer
from pos_sync.providers.registry import (
    get_adapter,
    is_supported,
    list_providers,
    provider_meta,
    register_provider,
    unregister_provider,
)

__all__ = [
    "IssuedToken",
    "ProviderAdapter",
    "ProviderMeta",
    "SalesPage",
    "TokenIssuer",
    "get_adapter",
    "is_supported",
    "list_providers",
    "provider_meta",
    "register_provider",
    "unregister_provider",
]
