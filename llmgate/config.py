from __future__ import annotations

import ipaddress
import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from llmgate.logging import get_logger
from llmgate.service.errors import ConfigurationError

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the gateway and its admission pipeline."""

    # Request signing
    enable_aes_auth: bool = env_field(
        True,
        "ENABLE_AES_AUTH",
        description="Require a signed token on every /v1 request",
    )
    aes_secret_key: str | None = env_field(None, "AES_SECRET_KEY")
    signature_max_age_ms: int = env_field(
        5 * 60 * 1000,
        "AES_SIGNATURE_MAX_AGE",
        description="Maximum signature age in milliseconds; also the nonce TTL",
    )

    # Fixed-window rate limiting
    rate_limit_max_requests: int = env_field(100, "RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_ms: int = env_field(60 * 1000, "RATE_LIMIT_WINDOW_MS")

    # Quotas
    daily_quota: int = env_field(
        1000, "DAILY_QUOTA", description="Requests per caller per 24h window; 0 disables"
    )
    monthly_quota: int = env_field(
        20000, "MONTHLY_QUOTA", description="Requests per caller per 30d window; 0 disables"
    )
    max_tokens_per_request: int = env_field(
        4096, "MAX_TOKENS_PER_REQUEST", description="Ceiling on requested max_tokens; 0 disables"
    )
    quota_refund_on_upstream_failure: bool = env_field(
        False,
        "QUOTA_REFUND_ON_UPSTREAM_FAILURE",
        description="Give the quota slot back when the upstream call fails",
    )

    # IP filtering
    enable_ip_whitelist: bool = env_field(False, "ENABLE_IP_WHITELIST")
    enable_ip_blacklist: bool = env_field(False, "ENABLE_IP_BLACKLIST")
    ip_whitelist: List[str] = env_field(
        [], "IP_WHITELIST", description="Comma separated addresses or CIDR networks"
    )
    ip_blacklist: List[str] = env_field(
        [], "IP_BLACKLIST", description="Comma separated addresses or CIDR networks"
    )
    client_id_header: str = env_field(
        "",
        "CLIENT_ID_HEADER",
        description="Header trusted as the caller partition key; empty partitions by address",
    )

    # Shared counter store
    redis_url: str | None = env_field(None, "REDIS_URL")
    backend_timeout_seconds: float = env_field(
        2.0,
        "BACKEND_TIMEOUT_SECONDS",
        description="Upper bound on any shared-store round trip",
    )
    nonce_cache_max_size: int = env_field(
        100_000,
        "NONCE_CACHE_MAX_SIZE",
        description="Local nonce map is cleared wholesale beyond this size",
    )

    # Sessions and maintenance
    session_ttl_seconds: int = env_field(24 * 60 * 60, "SESSION_TTL_SECONDS")
    session_max_count: int = env_field(
        0, "SESSION_MAX_COUNT", description="Cap on live sessions; 0 means unbounded"
    )
    sweep_interval_seconds: int = env_field(60, "SWEEP_INTERVAL_SECONDS")

    # Upstream inference service
    llm_api_base_url: str = env_field("https://api.openai.com/v1", "LLM_API_BASE_URL")
    llm_api_key: str | None = env_field(None, "LLM_API_KEY")
    llm_default_model: str = env_field("qwen-flash", "LLM_DEFAULT_MODEL")
    llm_timeout_seconds: float = env_field(60.0, "LLM_TIMEOUT_SECONDS")

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets for isolated test runs",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("ip_whitelist", "ip_blacklist", mode="before")
    @classmethod
    def _split_ip_list(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return [str(item).strip() for item in value if str(item).strip()]

    @field_validator("aes_secret_key", "redis_url", "llm_api_key", mode="before")
    @classmethod
    def _blank_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("signature_max_age_ms", "rate_limit_window_ms")
    @classmethod
    def _positive_window(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("window must be a positive number of milliseconds")
        return value

    def validate_startup(self) -> None:
        """Fail fast on configuration the gateway cannot run with."""
        if self.enable_aes_auth and not self.aes_secret_key:
            raise ConfigurationError(
                "AES_SECRET_KEY must be set when ENABLE_AES_AUTH is enabled"
            )
        for name in ("ip_whitelist", "ip_blacklist"):
            for entry in getattr(self, name):
                try:
                    ipaddress.ip_network(entry, strict=False)
                except ValueError as exc:
                    raise ConfigurationError(
                        f"invalid {name.upper()} entry: {entry!r}"
                    ) from exc
        if self.enable_ip_whitelist and not self.ip_whitelist:
            logger.warning(
                "ip_whitelist_empty",
                message="ENABLE_IP_WHITELIST is set with an empty IP_WHITELIST; every caller will be refused",
            )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
