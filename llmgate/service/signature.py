"""Request signatures: encrypted ``timestamp:nonce:payload`` envelopes.

A caller proves knowledge of the shared secret by encrypting the canonical
form of the request it is about to send together with the current time and
a fresh nonce. The gateway decrypts the token, checks that the embedded
payload is exactly the request it received, that the timestamp is within
the max-age window, and that the nonce has not been seen before.

Token format: ``base64(iv):base64(ciphertext)`` where the ciphertext is
AES-256-GCM over the UTF-8 envelope, so tampering fails decryption.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from llmgate.logging import get_logger
from llmgate.service.credentials import CredentialStore
from llmgate.service.replay import ReplayGuard
from llmgate.storage.models import SignedEnvelope, now_ms

logger = get_logger(__name__)

IV_LENGTH = 12
DEFAULT_MAX_AGE_MS = 5 * 60 * 1000
SIGNATURE_FIELD = "signature"


class SignatureError(Exception):
    """Internal reason a token was rejected. Never shown to callers."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    nonce: Optional[str] = None
    reason: Optional[str] = None


def canonical_payload(data: Optional[Mapping[str, Any]]) -> str:
    """Serialize a request body or query for signing.

    The ``signature`` field is dropped and the remaining keys keep their
    order, serialized as compact JSON with non-ASCII characters left as is.
    """
    filtered = {k: v for k, v in (data or {}).items() if k != SIGNATURE_FIELD}
    return json.dumps(filtered, separators=(",", ":"), ensure_ascii=False)


def new_nonce() -> str:
    return secrets.token_urlsafe(16)


class SignatureEngine:
    def __init__(
        self,
        credentials: CredentialStore,
        replay_guard: Optional[ReplayGuard] = None,
        *,
        max_age_ms: int = DEFAULT_MAX_AGE_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._aead = AESGCM(credentials.key)
        self.replay_guard = replay_guard
        self.max_age_ms = max_age_ms
        self._clock = clock

    def sign(
        self,
        payload: str,
        timestamp: Optional[int] = None,
        nonce: Optional[str] = None,
    ) -> str:
        if nonce is not None and (not nonce or ":" in nonce):
            raise ValueError("nonce must be non-empty and must not contain ':'")
        envelope = SignedEnvelope(
            timestamp=int(timestamp if timestamp is not None else self._clock()),
            nonce=nonce or new_nonce(),
            payload=payload,
        )
        iv = os.urandom(IV_LENGTH)
        ciphertext = self._aead.encrypt(iv, envelope.serialize().encode("utf-8"), None)
        return (
            f"{base64.b64encode(iv).decode('ascii')}:"
            f"{base64.b64encode(ciphertext).decode('ascii')}"
        )

    def open(self, token: str) -> SignedEnvelope:
        """Decrypt a token into its envelope or raise SignatureError."""
        if not token or not isinstance(token, str):
            raise SignatureError("empty_token")
        iv_part, sep, data_part = token.partition(":")
        if not sep or not iv_part or not data_part:
            raise SignatureError("malformed_token")
        try:
            iv = base64.b64decode(iv_part, validate=True)
            ciphertext = base64.b64decode(data_part, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SignatureError("malformed_encoding") from exc
        if len(iv) != IV_LENGTH:
            raise SignatureError("malformed_iv")
        try:
            plaintext = self._aead.decrypt(iv, ciphertext, None).decode("utf-8")
        except InvalidTag as exc:
            raise SignatureError("decrypt_failed") from exc
        except UnicodeDecodeError as exc:
            raise SignatureError("malformed_plaintext") from exc

        parts = plaintext.split(":", 2)
        if len(parts) < 3:
            raise SignatureError("missing_parts")
        raw_ts, nonce, payload = parts
        try:
            timestamp = int(raw_ts)
        except ValueError as exc:
            raise SignatureError("malformed_timestamp") from exc
        if not nonce:
            raise SignatureError("missing_nonce")
        return SignedEnvelope(timestamp=timestamp, nonce=nonce, payload=payload)

    async def verify(
        self,
        token: str,
        expected_payload: str,
        max_age_ms: Optional[int] = None,
    ) -> VerificationResult:
        """Check a token against the request payload and consume its nonce."""
        max_age = self.max_age_ms if max_age_ms is None else max_age_ms
        try:
            envelope = self.open(token)
        except SignatureError as exc:
            return self._reject(exc.reason)

        if envelope.payload != expected_payload:
            return self._reject("payload_mismatch", nonce=envelope.nonce)

        age = self._clock() - envelope.timestamp
        if age < 0:
            return self._reject("timestamp_in_future", nonce=envelope.nonce, age_ms=age)
        if age > max_age:
            return self._reject("expired", nonce=envelope.nonce, age_ms=age)

        if self.replay_guard is not None:
            fresh = await self.replay_guard.try_consume(envelope.nonce, max_age)
            if not fresh:
                return self._reject("replayed", nonce=envelope.nonce)

        return VerificationResult(valid=True, nonce=envelope.nonce)

    @staticmethod
    def _reject(reason: str, nonce: Optional[str] = None, **fields: Any) -> VerificationResult:
        logger.info("signature_rejected", reason=reason, **fields)
        return VerificationResult(valid=False, nonce=nonce, reason=reason)
