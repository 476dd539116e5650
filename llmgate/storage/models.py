from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

MESSAGE_ROLES = frozenset({"system", "user", "assistant", "tool"})


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Message:
    role: str
    content: str
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.role not in MESSAGE_ROLES:
            raise ValueError(f"unsupported message role: {self.role!r}")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [dict(call) for call in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            role=data.get("role", ""),
            content=data.get("content") or "",
            tool_calls=data.get("tool_calls") or None,
            tool_call_id=data.get("tool_call_id"),
        )


@dataclass
class Session:
    session_id: str
    messages: List[Message] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    message_count: int
    created_at: float
    updated_at: float


@dataclass(frozen=True)
class SignedEnvelope:
    """Plaintext carried inside a signature token."""

    timestamp: int
    nonce: str
    payload: str

    def serialize(self) -> str:
        return f"{self.timestamp}:{self.nonce}:{self.payload}"


@dataclass
class RateWindowRecord:
    key: str
    count: int
    window_expires_at: int  # ms epoch


@dataclass
class QuotaRecord:
    client_key: str
    daily_count: int
    daily_reset_at: float
    monthly_count: int
    monthly_reset_at: float
    created_at: float


@dataclass(frozen=True)
class ClientIdentity:
    """Partition key for limits; a hint only, never authenticated."""

    key: str
    ip: Optional[str] = None
