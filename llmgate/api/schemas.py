from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Maximum nested JSON depth accepted in tool definitions
MAX_JSON_DEPTH = 20
# Maximum number of messages in a single request
MAX_MESSAGES = 1000
# Maximum message content length
MAX_CONTENT_LENGTH = 100000

_VALID_ERROR_CODES = frozenset({
    "INVALID_REQUEST",
    "UNAUTHORIZED",
    "FORBIDDEN",
    "NOT_FOUND",
    "METHOD_NOT_ALLOWED",
    "RATE_LIMIT_EXCEEDED",
    "MISSING_SIGNATURE",
    "INVALID_SIGNATURE",
    "TOKEN_LIMIT_EXCEEDED",
    "DAILY_QUOTA_EXCEEDED",
    "MONTHLY_QUOTA_EXCEEDED",
    "IP_BLACKLISTED",
    "IP_NOT_WHITELISTED",
    "UPSTREAM_ERROR",
    "INTERNAL_ERROR",
})


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ToolCallFunction(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    arguments: str = Field("", max_length=MAX_CONTENT_LENGTH)


class ToolCall(BaseModel):
    id: str = Field(..., min_length=1, max_length=256)
    type: Literal["function"] = "function"
    function: ToolCallFunction


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant", "tool"]
    # Assistant turns that only carry tool calls have no content
    content: Optional[str] = Field(None, max_length=MAX_CONTENT_LENGTH)
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = Field(None, max_length=256)

    def to_store(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: List[ChatMessage] = Field(..., min_length=1, max_length=MAX_MESSAGES)
    model: Optional[str] = Field(None, max_length=256)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    top_p: Optional[float] = Field(None, ge=0.0, le=1.0)
    max_tokens: Optional[int] = Field(None, gt=0)
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None
    stop: Optional[Union[str, List[str]]] = None
    stream: bool = False
    session_id: Optional[str] = Field(None, alias="sessionId", max_length=128)
    signature: Optional[str] = Field(None, max_length=4096)

    @field_validator("stream")
    @classmethod
    def _reject_streaming(cls, value: bool) -> bool:
        if value:
            raise ValueError("streaming responses are not supported")
        return value

    @field_validator("tools")
    @classmethod
    def _validate_tools(cls, value: Optional[List[Dict[str, Any]]]) -> Optional[List[Dict[str, Any]]]:
        if value is not None:
            _validate_json_depth(value)
        return value

    def upstream_request(self, history: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Upstream call parameters with stored history ahead of the new turn."""
        payload = self.model_dump(
            exclude_none=True, exclude={"messages", "session_id", "signature", "stream"}
        )
        payload["messages"] = history + [m.to_store() for m in self.messages]
        return payload


class SessionMessagesResponse(BaseModel):
    session_id: str
    message_count: int
    created_at: float
    updated_at: float
    messages: List[Dict[str, Any]] = Field(default_factory=list)


class SessionClearResponse(BaseModel):
    session_id: str
    cleared: bool


class QuotaWindow(BaseModel):
    used: int
    limit: int
    reset_at: float


class UsageResponse(BaseModel):
    client_key: str
    daily: QuotaWindow
    monthly: QuotaWindow


class HealthResponse(BaseModel):
    status: str = "ok"
    message: str
    version: str
    timestamp: str
    backend: Optional[str] = None
    sessions: Optional[Dict[str, int]] = None
