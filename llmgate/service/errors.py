from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base class for gateway exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    machine-readable error code returned in the error envelope:
    - NOT_FOUND (404)
    - UPSTREAM_ERROR (502)
    - INTERNAL_ERROR (500)
    """

    status_code: int = 400
    error_code: str = "INVALID_REQUEST"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class NotFoundError(GatewayError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class UpstreamError(GatewayError):
    """Upstream inference service failed or returned an error (502)."""
    status_code = 502
    error_code = "UPSTREAM_ERROR"


class ConfigurationError(GatewayError):
    """Unrecoverable configuration problem; raised at startup only."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


__all__ = [
    "GatewayError",
    "NotFoundError",
    "UpstreamError",
    "ConfigurationError",
]
