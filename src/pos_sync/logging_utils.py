"""Logging setup with secret redaction.

Provider tokens and API keys pass through many code paths; rather than
trusting every call site, a ``RedactingFilter`` on the root handlers
scrubs sensitive values from log arguments and rendered messages.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

REDACTED = "***redacted***"

SENSITIVE_KEYS = (
    "authorization",
    "api-key",
    "api_key",
    "apikey",
    "x-api-key",
    "cookie",
    "access_token",
    "refresh_token",
    "token",
    "password",
    "secret",
    "credential",
    "bearer",
    "ciphertext",
    "cipher_bundle",
    "kms",
)

_INLINE_RE = re.compile(
    r"""(?P<key>["']?(?:api[_-]?key|apiKey|api[_-]?secret|apiSecret|access_token|"""
    r"""refresh_token|token|secret|password|authorization)["']?\s*[:=]\s*)"""
    r"""(?P<quote>["']?)(?P<value>[^\s"',}]+)""",
    re.IGNORECASE,
)
_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE)


def is_sensitive_key(key: str) -> bool:
    k = key.lower()
    return any(pattern in k for pattern in SENSITIVE_KEYS)


def mask_value(value: Any) -> str:
    """Keep only enough of a secret to correlate log lines."""
    if isinstance(value, str) and len(value) >= 12:
        return f"***{value[:2]}...{value[-2:]}***"
    return REDACTED


def scrub(value: Any, key: str = "") -> Any:
    """Recursively redact sensitive entries in dicts, lists and strings.

    Args:
        value: Arbitrary log argument.
        key: Key under which ``value`` was found (empty at the top level).

    Returns:
        A scrubbed copy; the input is never mutated.

    Examples:
        >>> scrub({"location_id": "L1", "api_key": "abcdef"})
        {'location_id': 'L1', 'api_key': '***redacted***'}
    """
    if key and value is not None and is_sensitive_key(key):
        return mask_value(value)
    if isinstance(value, Mapping):
        return {k: scrub(v, str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(scrub(v) for v in value)
    if isinstance(value, str):
        return scrub_text(value)
    return value


def scrub_text(text: str) -> str:
    """Redact ``key=value`` style secrets and bearer tokens in free text."""
    text = _BEARER_RE.sub(lambda m: m.group(1) + REDACTED, text)
    return _INLINE_RE.sub(
        lambda m: m.group("key") + m.group("quote") + REDACTED, text
    )


class RedactingFilter(logging.Filter):
    """Logging filter that scrubs secrets from records in place."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, Mapping):
            record.args = scrub(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(scrub(a) for a in record.args)
        if isinstance(record.msg, str):
            # Render first: scrubbing the template would eat its %s placeholders.
            try:
                message = record.getMessage()
            except (TypeError, ValueError):
                return True
            record.msg = scrub_text(message)
            record.args = ()
        return True


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logging the way every entry point expects it."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else (logging.WARNING if quiet else logging.INFO),
        format="%(levelname)s: %(message)s",
    )
    redactor = RedactingFilter()
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RedactingFilter) for f in handler.filters):
            handler.addFilter(redactor)
    # urllib3 logs full URLs at DEBUG, query strings included.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
