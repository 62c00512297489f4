"""Domain-specific exceptions for POS Sync.

This module defines custom exceptions that are part of the public API.
All exceptions inherit from PosSyncError for easy catching.

A gate refusal is not an exception: ``run_pos_sync`` returns a
``SyncSkipped`` value instead.
"""

from __future__ import annotations

from datetime import datetime


class PosSyncError(Exception):
    """Base exception for all POS Sync errors.

    This is the base class for all domain-specific exceptions in the package.
    Users can catch this exception to handle any POS Sync error.
    """

    pass


class ConfigError(PosSyncError):
    """Raised when there is a configuration error.

    This exception is raised when:
    - Invalid configuration values are provided
    - Required configuration is missing
    - Configuration files cannot be loaded or parsed
    """

    pass


class KmsMisconfigured(ConfigError):
    """Raised when the credential encryption key is missing or malformed.

    Kept distinct from AuthenticationFailed so operators can tell a broken
    deployment apart from a tampered or foreign cipher bundle.
    """

    def __init__(self, message: str = "kms_misconfigured") -> None:
        super().__init__(message)


class ValidationError(PosSyncError):
    """Raised when caller input is rejected.

    This exception is raised when:
    - The provider is unknown or has no registered adapter
    - An id, API key or date range is empty or malformed
    - A payload exceeds its size limit

    Validation always happens before any side effect and is never retried.
    """

    pass


class ProviderError(PosSyncError):
    """Raised when a POS provider call fails.

    Attributes:
        status_code: HTTP status returned by the provider, if any.
        category: Short classification ("network", "rate_limited", "5xx",
            "client_error", "invalid_response").
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        category: str = "client_error",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.category = category


class TransientProviderError(ProviderError):
    """Raised for provider failures that are expected to clear on their own.

    This exception is raised when:
    - The request times out or the connection fails
    - The provider answers 429 (rate limited)
    - The provider answers with a 5xx status
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        category: str = "network",
    ) -> None:
        super().__init__(message, status_code=status_code, category=category)


class ProviderRequestError(ProviderError):
    """Raised when the provider rejects a request for a non-auth reason.

    This exception is raised when:
    - The provider answers with a 4xx other than 401/403/422/429
    - The response body is not the expected JSON document
    - Pagination does not terminate
    """

    pass


class AuthenticationFailed(PosSyncError):
    """Raised when a secret cannot be authenticated.

    This exception is raised when:
    - A cipher bundle fails tag verification (wrong key, tampered iv/tag/data)
    - A cipher bundle is malformed
    - The provider rejects a key or token (401, 403, 422)
    """

    pass


class CircuitOpen(PosSyncError):
    """Raised when the rotation circuit breaker blocks a batch.

    Attributes:
        scope: Breaker scope that is open.
        resume_at: When the breaker will allow a half-open trial.
    """

    def __init__(self, scope: str, resume_at: datetime | None) -> None:
        when = resume_at.isoformat() if resume_at else "unknown"
        super().__init__(f"circuit breaker '{scope}' is open until {when}")
        self.scope = scope
        self.resume_at = resume_at


class StoreError(PosSyncError):
    """Raised when the state store cannot be read or written.

    The message is kept plain (e.g. "forbidden", "not_found") so callers
    can surface it directly.
    """

    pass
