"""HTTP plumbing shared by the provider adapters.

Sessions get a transport-level ``Retry`` adapter without a backoff factor:
waiting between sync attempts is the scheduling gate's job, not the
transport's. Every response is funnelled through ``request_json`` so all
adapters classify provider failures the same way.
"""

from __future__ import annotations

import logging
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from pos_sync.exceptions import (
    AuthenticationFailed,
    ProviderRequestError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRIES = 0

USER_AGENT = "pos-sync/0.1"

AUTH_STATUSES = frozenset({401, 403, 422})


def make_session(
    timeout: float = DEFAULT_TIMEOUT, retries: int = DEFAULT_RETRIES
) -> requests.Session:
    """Create a requests Session with retry logic and default timeout.

    Configures the session with:
    - User-Agent and JSON Accept headers
    - Retry adapter for HTTP/HTTPS on connection errors and 502/503/504
    - Default timeout for all requests

    Args:
        timeout: Default timeout in seconds for all requests.
        retries: Number of immediate transport retries. Defaults to 0.

    Returns:
        Configured requests.Session object.
    """
    s = requests.Session()
    s.headers.update({"User-Agent": USER_AGENT, "Accept": "application/json"})
    retry = Retry(
        total=retries,
        connect=retries,
        read=retries,
        status=retries,
        backoff_factor=0,
        status_forcelist=(502, 503, 504),
        allowed_methods=frozenset({"GET", "HEAD", "OPTIONS"}),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    s.mount("http://", adapter)
    s.mount("https://", adapter)

    orig_request = s.request

    def timed_request(method: str, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", timeout)
        return orig_request(method, url, **kwargs)

    s.request = timed_request  # type: ignore[method-assign,assignment]
    return s


def classify_status(status: int | None) -> tuple[str, bool]:
    """Classify a provider failure.

    Args:
        status: HTTP status, or None for network-level failures.

    Returns:
        ``(category, counts_toward_breaker)``. Only failures that say
        something about provider health count: network errors, 429 and 5xx.
        Rejected credentials and other client errors do not.

    Examples:
        >>> classify_status(None)
        ('network', True)
        >>> classify_status(403)
        ('invalid_credentials', False)
    """
    if status is None:
        return "network", True
    if status == 429:
        return "rate_limited", True
    if status >= 500:
        return "5xx", True
    if status in AUTH_STATUSES:
        return "invalid_credentials", False
    if 400 <= status < 500:
        return "client_error", False
    return "unknown", False


def ensure_ok(resp: requests.Response, msg: str) -> None:
    """Raise the matching domain error if the response is not 2xx.

    Args:
        resp: HTTP response object to check.
        msg: Error message prefix.

    Raises:
        TransientProviderError: 429 or 5xx.
        AuthenticationFailed: 401, 403 or 422.
        ProviderRequestError: Any other non-2xx status.
    """
    status = resp.status_code
    if 200 <= status < 300:
        return
    category, _ = classify_status(status)
    detail = f"{msg}. HTTP {status} ({category}): {resp.text[:200]}"
    if category in ("rate_limited", "5xx"):
        raise TransientProviderError(detail, status_code=status, category=category)
    if category == "invalid_credentials":
        raise AuthenticationFailed(detail)
    raise ProviderRequestError(detail, status_code=status, category=category)


def request_json(
    session: requests.Session, method: str, url: str, msg: str, **kwargs: Any
) -> Any:
    """Perform a request and decode its JSON body.

    Timeouts and connection failures become ``TransientProviderError``;
    status codes are mapped by :func:`ensure_ok`.

    Raises:
        TransientProviderError: Network failure, timeout, 429 or 5xx.
        AuthenticationFailed: 401, 403 or 422.
        ProviderRequestError: Other 4xx or an undecodable body.
    """
    logger.debug("%s %s", method, url)
    try:
        resp = session.request(method, url, **kwargs)
    except requests.Timeout as e:
        raise TransientProviderError(f"{msg}: timeout", category="network") from e
    except requests.ConnectionError as e:
        raise TransientProviderError(f"{msg}: connection failed: {e}", category="network") from e
    except requests.RequestException as e:
        raise TransientProviderError(f"{msg}: {e}", category="network") from e

    ensure_ok(resp, msg)
    try:
        return resp.json()
    except ValueError as e:
        raise ProviderRequestError(
            f"{msg}: response is not JSON", status_code=resp.status_code, category="invalid_response"
        ) from e
