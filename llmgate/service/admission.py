"""Ordered admission checks run before any /v1 request reaches a handler.

Stages run cheapest-first and stop at the first rejection:

1. IP filter (deny list, then allow list)
2. fixed-window rate limit per (client, route)
3. signature verification and nonce consumption
4. ``max_tokens`` ceiling
5. daily and monthly quota, which spends a slot on admission

Nothing is rolled back across stages: a request that spends a rate-limit
slot and is then refused by the signature check keeps that slot spent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

from llmgate.config import Settings
from llmgate.logging import get_logger
from llmgate.service.ip_filter import IpFilter
from llmgate.service.quota import QuotaEnforcer
from llmgate.service.rate_limit import RateLimiter, RateLimitResult
from llmgate.service.signature import SIGNATURE_FIELD, SignatureEngine, canonical_payload
from llmgate.storage.models import ClientIdentity

logger = get_logger(__name__)

SIGNED_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
SIGNATURE_HEADER = "x-signature"

REJECTION_MESSAGES = {
    "IP_BLACKLISTED": "Access denied",
    "IP_NOT_WHITELISTED": "Access denied",
    "RATE_LIMIT_EXCEEDED": "Too many requests, please try again later",
    "MISSING_SIGNATURE": "Missing signature",
    "INVALID_SIGNATURE": "Invalid or expired signature",
    "TOKEN_LIMIT_EXCEEDED": "Requested max_tokens exceeds the per-request limit",
    "DAILY_QUOTA_EXCEEDED": "Daily request quota exceeded",
    "MONTHLY_QUOTA_EXCEEDED": "Monthly request quota exceeded",
    "INVALID_REQUEST": "max_tokens must be a positive integer",
}


@dataclass
class AdmissionRequest:
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, Any] = field(default_factory=dict)
    body: Optional[Mapping[str, Any]] = None
    client_host: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        target = name.lower()
        for key, value in self.headers.items():
            if key.lower() == target:
                return value
        return None


@dataclass(frozen=True)
class Proceed:
    identity: ClientIdentity
    nonce: Optional[str] = None
    rate_limit: Optional[RateLimitResult] = None


@dataclass(frozen=True)
class Reject:
    http_status: int
    code: str
    message: str
    retry_after_seconds: Optional[int] = None
    rate_limit: Optional[RateLimitResult] = None


AdmissionOutcome = Union[Proceed, Reject]


def resolve_client_identity(
    request: AdmissionRequest, client_id_header: str = ""
) -> ClientIdentity:
    """Pick the caller's partition key.

    The first ``X-Forwarded-For`` hop, then the socket peer. A client-id
    header is honoured only when ``client_id_header`` names one; none of
    these are authenticated.
    """
    forwarded = request.header("x-forwarded-for") or ""
    first_hop = forwarded.split(",")[0].strip() or None
    ip = first_hop or request.client_host
    explicit = (request.header(client_id_header) or "").strip() if client_id_header else ""
    key = explicit or ip or "unknown"
    return ClientIdentity(key=key, ip=ip)


def resolve_signature(request: AdmissionRequest) -> Optional[str]:
    token = request.query.get(SIGNATURE_FIELD)
    if not token and isinstance(request.body, Mapping):
        token = request.body.get(SIGNATURE_FIELD)
    if not token:
        token = request.header(SIGNATURE_HEADER)
    if not token or not isinstance(token, str):
        return None
    return token


def signed_payload(request: AdmissionRequest) -> str:
    if request.method.upper() in SIGNED_BODY_METHODS:
        return canonical_payload(request.body if isinstance(request.body, Mapping) else {})
    return canonical_payload(dict(request.query))


def _requested_tokens(body: Optional[Mapping[str, Any]]) -> Optional[int]:
    """Return the requested ``max_tokens`` or raise ValueError if malformed."""
    if not isinstance(body, Mapping) or body.get("max_tokens") is None:
        return None
    value = body["max_tokens"]
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"invalid max_tokens: {value!r}")
    return value


class AdmissionPipeline:
    def __init__(
        self,
        settings: Settings,
        *,
        ip_filter: IpFilter,
        rate_limiter: RateLimiter,
        signature_engine: Optional[SignatureEngine],
        quota: QuotaEnforcer,
    ) -> None:
        self.settings = settings
        self.ip_filter = ip_filter
        self.rate_limiter = rate_limiter
        self.signature_engine = signature_engine
        self.quota = quota

    def _reject(
        self,
        identity: ClientIdentity,
        request: AdmissionRequest,
        http_status: int,
        code: str,
        *,
        retry_after_seconds: Optional[int] = None,
        rate_limit: Optional[RateLimitResult] = None,
        **fields: Any,
    ) -> Reject:
        logger.warning(
            "admission_rejected",
            code=code,
            http_status=http_status,
            client_key=identity.key,
            client_ip=identity.ip,
            method=request.method,
            path=request.path,
            **fields,
        )
        return Reject(
            http_status=http_status,
            code=code,
            message=REJECTION_MESSAGES.get(code, code),
            retry_after_seconds=retry_after_seconds,
            rate_limit=rate_limit,
        )

    async def admit(self, request: AdmissionRequest) -> AdmissionOutcome:
        identity = resolve_client_identity(request, self.settings.client_id_header)

        decision = self.ip_filter.check(identity.ip)
        if not decision.allowed:
            return self._reject(identity, request, 403, decision.code or "IP_NOT_WHITELISTED")

        rate = await self.rate_limiter.check_client(
            identity.key,
            request.path,
            self.settings.rate_limit_max_requests,
            self.settings.rate_limit_window_ms,
        )
        if not rate.allowed:
            retry_after = rate.retry_after_seconds(self.rate_limiter.now())
            return self._reject(
                identity,
                request,
                429,
                "RATE_LIMIT_EXCEEDED",
                retry_after_seconds=retry_after,
                rate_limit=rate,
                count=rate.count,
                limit=rate.limit,
            )

        nonce: Optional[str] = None
        if self.settings.enable_aes_auth and self.signature_engine is not None:
            token = resolve_signature(request)
            if token is None:
                return self._reject(identity, request, 401, "MISSING_SIGNATURE")
            result = await self.signature_engine.verify(
                token, signed_payload(request), self.settings.signature_max_age_ms
            )
            if not result.valid:
                return self._reject(
                    identity, request, 401, "INVALID_SIGNATURE", reason=result.reason
                )
            nonce = result.nonce

        try:
            requested = _requested_tokens(request.body)
        except ValueError:
            return self._reject(identity, request, 400, "INVALID_REQUEST")
        if not self.quota.check_tokens(requested).allowed:
            return self._reject(
                identity,
                request,
                400,
                "TOKEN_LIMIT_EXCEEDED",
                requested=requested,
                limit=self.quota.max_tokens_per_request,
            )

        quota = self.quota.admit(identity.key)
        if not quota.allowed:
            code = "DAILY_QUOTA_EXCEEDED" if quota.reason == "daily" else "MONTHLY_QUOTA_EXCEEDED"
            return self._reject(identity, request, 429, code)

        return Proceed(identity=identity, nonce=nonce, rate_limit=rate)


def rate_limit_headers(result: Optional[RateLimitResult]) -> Dict[str, str]:
    if result is None or result.limit <= 0:
        return {}
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(max(0, result.reset_at // 1000)),
    }
