"""Credential vault: AES-256-GCM encryption of provider secrets.

Secrets are stored as cipher bundles ``{iv, tag, data}`` (all base64):
a 96-bit random nonce, the 128-bit GCM authentication tag, and the
ciphertext without the tag. Key material is a 64-character hex string.

Decryption failures of any kind (wrong key, tampered nonce, tag or data,
malformed bundle) raise ``AuthenticationFailed``. A malformed key raises
``KmsMisconfigured`` instead, so a broken deployment is never mistaken for
a bad secret.

Examples:
    >>> key = "00" * 32
    >>> bundle = encrypt(key, {"apiKey": "abc123"})
    >>> decrypt(key, bundle)
    {'apiKey': 'abc123'}
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import re
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from pos_sync.exceptions import AuthenticationFailed, KmsMisconfigured
from pos_sync.models import CipherBundle

logger = logging.getLogger(__name__)

NONCE_BYTES = 12
TAG_BYTES = 16

_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")

# Environments worth echoing back in masked hints.
_KNOWN_ENVS = ("production", "staging")


def load_key(key_hex: str | None) -> bytes:
    """Decode and validate a 64-character hex key.

    Args:
        key_hex: Hex-encoded 256-bit key. Surrounding whitespace is ignored.

    Returns:
        32 raw key bytes.

    Raises:
        KmsMisconfigured: If the key is missing or not 64 hex characters.
    """
    if not key_hex or not _KEY_RE.match(key_hex.strip()):
        raise KmsMisconfigured()
    return bytes.fromhex(key_hex.strip())


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _unb64(value: str, field_name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AuthenticationFailed(f"Cipher bundle field '{field_name}' is not valid base64") from e


def encrypt(key_hex: str, payload: Any) -> CipherBundle:
    """Encrypt a JSON-serializable payload.

    Args:
        key_hex: 64-character hex key.
        payload: Any JSON-serializable value (usually a dict holding the
            API key plus metadata).

    Returns:
        Cipher bundle with a fresh random nonce.

    Raises:
        KmsMisconfigured: If the key is malformed.
    """
    aesgcm = AESGCM(load_key(key_hex))
    iv = os.urandom(NONCE_BYTES)
    plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    sealed = aesgcm.encrypt(iv, plaintext, None)
    # cryptography appends the tag to the ciphertext; the bundle stores it apart.
    body, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return CipherBundle(iv=_b64(iv), tag=_b64(tag), data=_b64(body))


def decrypt(key_hex: str, bundle: CipherBundle | dict[str, Any]) -> dict[str, Any]:
    """Verify and decrypt a cipher bundle.

    Args:
        key_hex: 64-character hex key.
        bundle: Cipher bundle, or its dict form.

    Returns:
        The decoded JSON object.

    Raises:
        KmsMisconfigured: If the key is malformed.
        AuthenticationFailed: If the bundle is malformed or fails tag
            verification, or the plaintext is not a JSON object.
    """
    key = load_key(key_hex)
    if isinstance(bundle, dict):
        try:
            bundle = CipherBundle(iv=bundle["iv"], tag=bundle["tag"], data=bundle["data"])
        except KeyError as e:
            raise AuthenticationFailed(f"Cipher bundle missing field {e}") from e

    iv = _unb64(bundle.iv, "iv")
    tag = _unb64(bundle.tag, "tag")
    body = _unb64(bundle.data, "data")
    if len(iv) != NONCE_BYTES:
        raise AuthenticationFailed(f"Cipher bundle iv must be {NONCE_BYTES} bytes, got {len(iv)}")
    if len(tag) != TAG_BYTES:
        raise AuthenticationFailed(f"Cipher bundle tag must be {TAG_BYTES} bytes, got {len(tag)}")

    try:
        plaintext = AESGCM(key).decrypt(iv, body + tag, None)
    except InvalidTag as e:
        raise AuthenticationFailed("Cipher bundle failed authentication") from e

    try:
        payload = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise AuthenticationFailed("Decrypted payload is not valid JSON") from e
    if not isinstance(payload, dict):
        raise AuthenticationFailed("Decrypted payload is not a JSON object")
    return payload


def reencrypt(old_key_hex: str, new_key_hex: str, bundle: CipherBundle) -> CipherBundle:
    """Decrypt under one key and encrypt under another."""
    return encrypt(new_key_hex, decrypt(old_key_hex, bundle))


def masked_hints(payload: dict[str, Any]) -> dict[str, str]:
    """Non-secret hints that let an operator recognise a stored credential.

    Args:
        payload: Decrypted credential payload.

    Returns:
        Dict with ``apiKeyEnd`` / ``tokenEnd`` (last four characters),
        ``storeId`` and ``env`` where present.

    Examples:
        >>> masked_hints({"apiKey": "sk_live_9876", "env": "production"})
        {'apiKeyEnd': '9876', 'env': 'production'}
    """
    hints: dict[str, str] = {}
    api_key = payload.get("apiKey")
    if isinstance(api_key, str) and api_key:
        hints["apiKeyEnd"] = api_key[-4:]
    token = payload.get("token")
    if isinstance(token, str) and token:
        hints["tokenEnd"] = token[-4:]
    store_id = payload.get("storeId")
    if store_id:
        hints["storeId"] = str(store_id)
    env = payload.get("env")
    if env in _KNOWN_ENVS:
        hints["env"] = env
    return hints


def token_fingerprint(token: str, key: bytes | str | None = None) -> str:
    """Stable, non-reversible label for a token, safe to log.

    Args:
        token: Secret to fingerprint.
        key: HMAC key; defaults to ``POS_FINGERPRINT_SALT`` or a fixed label.

    Returns:
        ``sha256:<first 16 hex chars>...``
    """
    if key is None:
        key = os.environ.get("POS_FINGERPRINT_SALT", "pos-sync-fingerprint")
    if isinstance(key, str):
        key = key.encode("utf-8")
    digest = hmac.new(key, token.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"sha256:{digest[:16]}..."
