"""Tests for signing key derivation."""

import hashlib

import pytest

from llmgate.config import Settings
from llmgate.service.credentials import KEY_LENGTH, CredentialStore, derive_key
from llmgate.service.errors import ConfigurationError


def test_short_secret_is_hashed():
    assert derive_key("short") == hashlib.sha256(b"short").digest()


def test_long_secret_is_truncated():
    secret = "x" * 40 + "tail"
    assert derive_key(secret) == b"x" * 32


def test_exact_length_secret_used_as_is():
    secret = "k" * KEY_LENGTH
    assert derive_key(secret) == secret.encode()


def test_multibyte_secret_length_counts_bytes():
    # 11 characters, 33 bytes in UTF-8
    secret = "密" * 11
    assert derive_key(secret) == secret.encode("utf-8")[:32]


def test_empty_secret_rejected():
    with pytest.raises(ConfigurationError):
        derive_key("")


def test_from_settings_uses_configured_secret():
    settings = Settings(aes_secret_key="operator-secret")
    store = CredentialStore.from_settings(settings)
    assert store.key == derive_key("operator-secret")
    assert len(store.key) == KEY_LENGTH


def test_repr_does_not_leak_key():
    store = CredentialStore("operator-secret")
    assert "operator" not in repr(store)
    assert store.key.hex() not in repr(store)
