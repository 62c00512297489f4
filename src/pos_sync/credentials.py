"""Credential lifecycle: save, verify, load and re-key.

Secrets never leave this module in clear text except as the return value
of :func:`load_credentials`. Stored records carry only the cipher bundle
and masked hints (last four characters, environment, store id).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from pos_sync import vault
from pos_sync.context import SyncContext, api_key_from
from pos_sync.exceptions import StoreError, ValidationError
from pos_sync.models import CredentialRecord, CredentialStatus
from pos_sync.providers.registry import provider_meta
from pos_sync.utils import from_iso

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 4 * 1024


def _require(value: Optional[str], name: str) -> str:
    if not value or not str(value).strip():
        raise ValidationError(f"{name} is required")
    return str(value).strip()


def save_credentials(
    ctx: SyncContext,
    location_id: str,
    provider: str,
    payload: dict[str, Any],
    client_id: Optional[str] = None,
) -> dict[str, Any]:
    """Encrypt and store credentials for a location.

    The record starts as ``pending`` until :func:`verify_credentials`
    confirms the key with the provider.

    Args:
        ctx: Operation context.
        location_id: Location the credentials belong to.
        provider: Provider id.
        payload: Secret payload; must hold ``apiKey`` or ``token``.
        client_id: Owning client, needed for daily syncs.

    Returns:
        ``{"status": "pending", "masked_hints": {...}}``

    Raises:
        ValidationError: Unknown provider, missing secret, or a payload
            over 4 KiB.
        KmsMisconfigured: If no valid vault key is configured.
    """
    location_id = _require(location_id, "location_id")
    provider_meta(provider)
    if not isinstance(payload, dict):
        raise ValidationError("Credential payload must be an object")
    if not api_key_from(payload).strip():
        raise ValidationError("Credential payload needs a non-empty apiKey or token")
    size = len(json.dumps(payload).encode("utf-8"))
    if size > MAX_PAYLOAD_BYTES:
        raise ValidationError(f"Credential payload too large: {size} bytes (max {MAX_PAYLOAD_BYTES})")

    bundle = vault.encrypt(ctx.key_hex, payload)
    hints = vault.masked_hints(payload)
    record = CredentialRecord(
        location_id=location_id,
        provider=provider,
        client_id=client_id,
        cipher_bundle=bundle,
        status=CredentialStatus.PENDING,
        masked_hints=hints,
        expires_at=from_iso(payload.get("tokenExpiresAt")),
    )
    ctx.store.put_credential(record)
    logger.info("Saved %s credentials for location %s", provider, location_id)
    return {"status": record.status.value, "masked_hints": hints}


def _get_record(ctx: SyncContext, location_id: str, provider: str) -> CredentialRecord:
    record = ctx.store.get_credential(location_id, provider)
    if record is None:
        raise ValidationError(f"No {provider} credentials stored for location {location_id}")
    return record


def load_credentials(ctx: SyncContext, location_id: str, provider: str) -> dict[str, Any]:
    """Decrypt the stored payload for a location.

    Raises:
        ValidationError: If nothing is stored.
        AuthenticationFailed: If the bundle does not decrypt to an object.
    """
    record = _get_record(ctx, location_id, provider)
    return vault.decrypt(ctx.key_hex, record.cipher_bundle)


def verify_credentials(ctx: SyncContext, location_id: str, provider: str) -> dict[str, Any]:
    """Check stored credentials with the provider and record the verdict.

    A transient provider failure leaves the stored status unchanged and
    propagates to the caller.

    Returns:
        ``{"valid": bool, "status": "connected" | "invalid"}``
    """
    payload = load_credentials(ctx, location_id, provider)
    adapter = ctx.adapter(provider, payload)
    valid = adapter.validate(api_key_from(payload))
    status = CredentialStatus.CONNECTED if valid else CredentialStatus.INVALID
    verified_at = ctx.clock()

    def mark(current: CredentialRecord) -> CredentialRecord:
        current.status = status
        current.last_verified_at = verified_at
        return current

    ctx.store.swap_credential(location_id, provider, mark)
    log = logger.info if valid else logger.warning
    log("Verified %s credentials for %s: %s", provider, location_id, status.value)
    return {"valid": valid, "status": status.value}


def rotate_key(ctx: SyncContext, location_id: str, provider: str, new_key_hex: str) -> None:
    """Re-encrypt one stored credential under a new vault key."""
    vault.load_key(new_key_hex)
    old_key = ctx.key_hex

    def reencrypt(current: CredentialRecord) -> CredentialRecord:
        current.cipher_bundle = vault.reencrypt(old_key, new_key_hex, current.cipher_bundle)
        return current

    try:
        ctx.store.swap_credential(location_id, provider, reencrypt)
    except StoreError as e:
        if str(e) == "not_found":
            raise ValidationError(f"No {provider} credentials stored for location {location_id}") from e
        raise


def rekey_all(ctx: SyncContext, new_key_hex: str) -> int:
    """Re-encrypt every stored credential; returns how many were rewritten."""
    records = ctx.store.list_credentials()
    for record in records:
        rotate_key(ctx, record.location_id, record.provider, new_key_hex)
        logger.debug("Re-encrypted %s/%s", record.location_id, record.provider)
    logger.info("Re-encrypted %d credentials under the new key", len(records))
    return len(records)
