"""Storage interface shared by the in-process and Redis counter backends.

The replay guard and the rate limiter only ever talk to a ``CounterBackend``;
which implementation they get is decided once, when the runtime is built.
"""

from __future__ import annotations

import hashlib
from ipaddress import IPv4Address, IPv6Address, ip_address
from typing import Any, Optional, Protocol, Tuple, Union


class CounterBackend(Protocol):
    """Atomic primitives needed by the admission pipeline."""

    name: str

    async def incr_window(self, key: str, window_ms: int) -> Tuple[int, int]:
        """Atomically increment the fixed-window counter for ``key``.

        The increment that creates the record starts a window of
        ``window_ms``. Returns ``(count, remaining_ms)``.
        """
        ...

    async def set_if_absent(self, key: str, ttl_ms: int) -> bool:
        """Record ``key`` with an expiry unless present. True if it was absent."""
        ...

    async def close(self) -> None:
        ...


def rate_key(client_key: str, route: str) -> str:
    return f"ratelimit:{client_key}:{route}"


def nonce_key(nonce: str) -> str:
    """Nonce keys are sha256 digests of the caller-chosen nonce."""
    digest = hashlib.sha256(nonce.encode()).hexdigest()
    return f"nonce:{digest}"


def parse_ip_address(raw_ip: Any) -> Optional[Union[IPv4Address, IPv6Address]]:
    """Parse an IP address, returning None for anything unparseable."""
    if isinstance(raw_ip, (IPv4Address, IPv6Address)):
        return raw_ip
    if isinstance(raw_ip, str):
        stripped = raw_ip.strip()
        if not stripped:
            return None
        try:
            return ip_address(stripped)
        except ValueError:
            return None
    return None
