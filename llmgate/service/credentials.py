from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

from llmgate.service.errors import ConfigurationError

if TYPE_CHECKING:
    from llmgate.config import Settings

KEY_LENGTH = 32  # AES-256


def derive_key(secret: str) -> bytes:
    """Turn an operator secret into a 32-byte symmetric key.

    Short secrets are stretched with SHA-256; longer ones are truncated to
    their first 32 bytes. Signers and verifiers must derive it identically.
    """
    if not secret:
        raise ConfigurationError("AES_SECRET_KEY is not set")
    raw = secret.encode("utf-8")
    if len(raw) < KEY_LENGTH:
        return hashlib.sha256(raw).digest()
    return raw[:KEY_LENGTH]


class CredentialStore:
    """Holds the derived signing key."""

    def __init__(self, secret: str) -> None:
        self._key = derive_key(secret)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "CredentialStore":
        return cls(settings.aes_secret_key or "")

    @property
    def key(self) -> bytes:
        return self._key

    def __repr__(self) -> str:
        return "CredentialStore(key=<redacted>)"
