from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import httpx

from llmgate.logging import get_logger
from llmgate.service.errors import UpstreamError

logger = get_logger(__name__)

# Fields forwarded to the upstream chat completion call; everything else in
# the gateway request (sessionId, signature) stays local
FORWARDED_FIELDS = (
    "model",
    "messages",
    "temperature",
    "max_tokens",
    "top_p",
    "tools",
    "tool_choice",
    "stop",
)


class LLMService:
    """Non-streaming client for an OpenAI-compatible chat completion API."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        default_model: str = "qwen-flash",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.default_model = default_model
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    def build_payload(self, request: Dict[str, Any]) -> Dict[str, Any]:
        payload = {
            key: request[key]
            for key in FORWARDED_FIELDS
            if request.get(key) is not None
        }
        payload["model"] = payload.get("model") or self.default_model
        payload["stream"] = False
        return payload

    async def chat(self, request: Dict[str, Any]) -> Dict[str, Any]:
        payload = self.build_payload(request)
        messages: List[Any] = payload.get("messages") or []
        logger.info(
            "llm_request_started",
            model=payload["model"],
            message_count=len(messages),
        )
        started = time.monotonic()
        try:
            client = await self._get_client()
            response = await client.post(f"{self.base_url}/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            error_body = None
            try:
                error_body = e.response.json()
            except ValueError:
                error_body = e.response.text[:500]
            logger.error(
                "llm_api_error",
                status_code=e.response.status_code,
                error_body=error_body,
                model=payload["model"],
            )
            raise UpstreamError(
                f"upstream returned {e.response.status_code}",
                detail={"upstream_status": e.response.status_code},
            ) from e
        except httpx.TimeoutException as e:
            logger.error("llm_api_timeout", model=payload["model"], error=str(e))
            raise UpstreamError("upstream request timed out") from e
        except httpx.HTTPError as e:
            logger.error(
                "llm_api_connect_error",
                api_base=self.base_url,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise UpstreamError("failed to reach upstream service") from e
        except ValueError as e:
            logger.error("llm_api_invalid_json", model=payload["model"], error=str(e))
            raise UpstreamError("upstream returned an invalid response") from e

        if not isinstance(data, dict):
            raise UpstreamError("upstream returned an invalid response")
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        logger.info(
            "llm_request_completed",
            model=data.get("model", payload["model"]),
            choices=len(data.get("choices") or []),
            duration_ms=int((time.monotonic() - started) * 1000),
            total_tokens=usage.get("total_tokens"),
        )
        return data

    @staticmethod
    def assistant_message(response: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        choices = response.get("choices") or []
        if not choices:
            return None
        message = choices[0].get("message")
        return message if isinstance(message, dict) else None

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
