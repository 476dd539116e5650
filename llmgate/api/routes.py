from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Path, Request, Response

from llmgate.api.schemas import (
    ChatRequest,
    Envelope,
    SessionClearResponse,
    SessionMessagesResponse,
    UsageResponse,
)
from llmgate.logging import get_logger
from llmgate.service.admission import (
    SIGNED_BODY_METHODS,
    AdmissionRequest,
    Proceed,
    Reject,
    rate_limit_headers,
)
from llmgate.service.errors import NotFoundError, UpstreamError
from llmgate.service.runtime import get_runtime
from llmgate.storage.models import Message

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    *,
    headers: Optional[Dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers or None)


def _reject_to_http(outcome: Reject) -> HTTPException:
    headers = rate_limit_headers(outcome.rate_limit)
    details = None
    if outcome.retry_after_seconds is not None:
        headers["Retry-After"] = str(outcome.retry_after_seconds)
        details = {"retry_after_seconds": outcome.retry_after_seconds}
    return _http_error(
        outcome.code, outcome.message, outcome.http_status, details, headers=headers
    )


async def _read_json_body(request: Request) -> Optional[Dict[str, Any]]:
    if request.method.upper() not in SIGNED_BODY_METHODS:
        return None
    raw = await request.body()
    if not raw:
        return None
    try:
        body = json.loads(raw)
    except ValueError:
        raise _http_error("INVALID_REQUEST", "request body must be valid JSON", 400)
    if not isinstance(body, dict):
        raise _http_error("INVALID_REQUEST", "request body must be a JSON object", 400)
    return body


def _route_path(request: Request) -> str:
    # Rate windows key on the route template, e.g. /v1/sessions/{session_id}
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


async def admitted(request: Request) -> Proceed:
    """Run the admission pipeline for the current request.

    Raises an envelope-shaped HTTPException for every rejection; rate-limit
    rejections carry a ``Retry-After`` header.
    """
    runtime = get_runtime()
    body = await _read_json_body(request)
    outcome = await runtime.admission.admit(
        AdmissionRequest(
            method=request.method,
            path=_route_path(request),
            headers=dict(request.headers),
            query=dict(request.query_params),
            body=body,
            client_host=request.client.host if request.client else None,
        )
    )
    if isinstance(outcome, Reject):
        raise _reject_to_http(outcome)
    return outcome


def _apply_rate_headers(response: Response, admission: Proceed) -> None:
    for name, value in rate_limit_headers(admission.rate_limit).items():
        response.headers[name] = value


@router.post("/chat")
async def chat(
    body: ChatRequest,
    response: Response,
    admission: Proceed = Depends(admitted),
) -> Dict[str, Any]:
    runtime = get_runtime()
    _apply_rate_headers(response, admission)
    session_id = body.session_id or str(uuid4())
    history = [message.to_dict() for message in runtime.sessions.read(session_id)]
    logger.info(
        "chat_request",
        session_id=session_id,
        client_key=admission.identity.key,
        history_message_count=len(history),
        current_message_count=len(body.messages),
        model=body.model or runtime.settings.llm_default_model,
    )

    try:
        upstream = await runtime.llm.chat(body.upstream_request(history))
    except UpstreamError:
        if runtime.settings.quota_refund_on_upstream_failure:
            runtime.quota.refund(admission.identity.key)
        raise

    assistant = runtime.llm.assistant_message(upstream)
    if assistant is not None:
        to_save = [Message.from_dict(m.to_store()) for m in body.messages]
        to_save.append(Message.from_dict({**assistant, "role": "assistant"}))
        runtime.sessions.append(session_id, to_save)
        logger.info("chat_history_saved", session_id=session_id, saved_messages=len(to_save))

    return {**upstream, "sessionId": session_id}


@router.get("/chat")
async def chat_health(
    response: Response, admission: Proceed = Depends(admitted)
) -> Dict[str, Any]:
    _apply_rate_headers(response, admission)
    return {
        "status": "ok",
        "message": "LLM gateway API is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/sessions/{session_id}", response_model=Envelope)
async def get_session(
    response: Response,
    session_id: str = Path(..., max_length=128),
    admission: Proceed = Depends(admitted),
) -> Envelope:
    runtime = get_runtime()
    _apply_rate_headers(response, admission)
    info = runtime.sessions.info(session_id)
    if info is None:
        raise NotFoundError("session not found", detail={"session_id": session_id})
    messages = runtime.sessions.read(session_id)
    return Envelope(
        status="ok",
        data=SessionMessagesResponse(
            session_id=info.session_id,
            message_count=info.message_count,
            created_at=info.created_at,
            updated_at=info.updated_at,
            messages=[message.to_dict() for message in messages],
        ),
    )


@router.delete("/sessions/{session_id}", response_model=Envelope)
async def clear_session(
    response: Response,
    session_id: str = Path(..., max_length=128),
    admission: Proceed = Depends(admitted),
) -> Envelope:
    runtime = get_runtime()
    _apply_rate_headers(response, admission)
    if not runtime.sessions.clear(session_id):
        raise NotFoundError("session not found", detail={"session_id": session_id})
    return Envelope(status="ok", data=SessionClearResponse(session_id=session_id, cleared=True))


@router.get("/usage", response_model=Envelope)
async def get_usage(
    response: Response, admission: Proceed = Depends(admitted)
) -> Envelope:
    runtime = get_runtime()
    _apply_rate_headers(response, admission)
    usage = runtime.quota.usage(admission.identity.key)
    return Envelope(status="ok", data=UsageResponse.model_validate(usage.to_dict()))
