"""Tests for the AES-GCM credential vault."""

import base64

import pytest

from pos_sync import vault
from pos_sync.exceptions import AuthenticationFailed, ConfigError, KmsMisconfigured
from pos_sync.models import CipherBundle
from support import KEY_HEX, OTHER_KEY_HEX


def _flip_first_byte(b64: str) -> str:
    raw = bytearray(base64.b64decode(b64))
    raw[0] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


@pytest.mark.parametrize(
    "payload",
    [
        {"apiKey": "sk_live_abcdef"},
        {"apiKey": "k", "apiSecret": "s", "env": "production", "storeId": 42},
        {"nested": {"list": [1, 2, 3]}, "unicode": "café"},
    ],
)
def test_round_trip(payload) -> None:
    bundle = vault.encrypt(KEY_HEX, payload)
    assert vault.decrypt(KEY_HEX, bundle) == payload


@pytest.mark.parametrize("payload", [["not", "a", "dict"], "", 42, None])
def test_non_object_plaintext_fails_authentication(payload) -> None:
    bundle = vault.encrypt(KEY_HEX, payload)
    with pytest.raises(AuthenticationFailed, match="not a JSON object"):
        vault.decrypt(KEY_HEX, bundle)


def test_bundle_shape() -> None:
    bundle = vault.encrypt(KEY_HEX, {"apiKey": "abc"})
    assert len(base64.b64decode(bundle.iv)) == vault.NONCE_BYTES == 12
    assert len(base64.b64decode(bundle.tag)) == vault.TAG_BYTES == 16
    assert b"abc" not in base64.b64decode(bundle.data)


def test_nonce_is_fresh_per_encryption() -> None:
    a = vault.encrypt(KEY_HEX, {"apiKey": "same"})
    b = vault.encrypt(KEY_HEX, {"apiKey": "same"})
    assert a.iv != b.iv
    assert a.data != b.data


def test_decrypt_accepts_dict_form() -> None:
    bundle = vault.encrypt(KEY_HEX, {"apiKey": "abc"})
    assert vault.decrypt(KEY_HEX, bundle.to_dict()) == {"apiKey": "abc"}


def test_wrong_key_fails_authentication() -> None:
    bundle = vault.encrypt(KEY_HEX, {"apiKey": "abc"})
    with pytest.raises(AuthenticationFailed):
        vault.decrypt(OTHER_KEY_HEX, bundle)


@pytest.mark.parametrize("field", ["iv", "tag", "data"])
def test_tampered_field_fails_authentication(field: str) -> None:
    bundle = vault.encrypt(KEY_HEX, {"apiKey": "abcdef"}).to_dict()
    bundle[field] = _flip_first_byte(bundle[field])
    with pytest.raises(AuthenticationFailed):
        vault.decrypt(KEY_HEX, bundle)


def test_truncated_iv_fails_authentication() -> None:
    bundle = vault.encrypt(KEY_HEX, {"apiKey": "abc"})
    short_iv = base64.b64encode(base64.b64decode(bundle.iv)[:8]).decode()
    with pytest.raises(AuthenticationFailed, match="iv must be 12 bytes"):
        vault.decrypt(KEY_HEX, CipherBundle(iv=short_iv, tag=bundle.tag, data=bundle.data))


def test_invalid_base64_fails_authentication() -> None:
    bundle = vault.encrypt(KEY_HEX, {"apiKey": "abc"})
    with pytest.raises(AuthenticationFailed, match="not valid base64"):
        vault.decrypt(KEY_HEX, CipherBundle(iv="***", tag=bundle.tag, data=bundle.data))


def test_missing_field_fails_authentication() -> None:
    with pytest.raises(AuthenticationFailed):
        vault.decrypt(KEY_HEX, {"iv": "AAAA", "tag": "AAAA"})


@pytest.mark.parametrize("bad_key", [None, "", "abc", "zz" * 32, "00" * 31, "00" * 33])
def test_malformed_key_is_config_error_not_auth_failure(bad_key) -> None:
    with pytest.raises(KmsMisconfigured, match="kms_misconfigured"):
        vault.encrypt(bad_key, {"apiKey": "abc"})
    with pytest.raises(ConfigError):
        vault.load_key(bad_key)


def test_key_whitespace_and_case_tolerated() -> None:
    bundle = vault.encrypt(f"  {KEY_HEX.upper()}\n", {"apiKey": "abc"})
    assert vault.decrypt(KEY_HEX, bundle) == {"apiKey": "abc"}


def test_reencrypt_moves_bundle_to_new_key() -> None:
    bundle = vault.encrypt(KEY_HEX, {"apiKey": "abc"})
    moved = vault.reencrypt(KEY_HEX, OTHER_KEY_HEX, bundle)
    assert vault.decrypt(OTHER_KEY_HEX, moved) == {"apiKey": "abc"}
    with pytest.raises(AuthenticationFailed):
        vault.decrypt(KEY_HEX, moved)


def test_masked_hints() -> None:
    hints = vault.masked_hints(
        {"apiKey": "sk_live_9876", "token": "tok_abcd1234", "storeId": 7, "env": "production"}
    )
    assert hints == {"apiKeyEnd": "9876", "tokenEnd": "1234", "storeId": "7", "env": "production"}


def test_masked_hints_skips_unknown_env_and_empty_values() -> None:
    assert vault.masked_hints({"apiKey": "", "env": "dev"}) == {}


def test_token_fingerprint_is_stable_and_truncated() -> None:
    fp = vault.token_fingerprint("secret-token", key="salt")
    assert fp == vault.token_fingerprint("secret-token", key="salt")
    assert fp.startswith("sha256:") and fp.endswith("...")
    assert len(fp) == len("sha256:") + 16 + 3
    assert "secret" not in fp
    assert fp != vault.token_fingerprint("other-token", key="salt")
