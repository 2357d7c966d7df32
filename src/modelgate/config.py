from __future__ import annotations

import os

from pydantic import BaseModel, Field


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _parse_int_map(value: str | None) -> dict[str, int]:
    out: dict[str, int] = {}
    for pair in _parse_csv(value):
        name, sep, raw = pair.partition("=")
        name, raw = name.strip(), raw.strip()
        if not sep or not name or not raw.isdigit():
            continue
        out[name] = int(raw)
    return out


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true")


DEFAULT_PROVIDER_ORDER = "openai,anthropic,mistral,groq,xai,openrouter,meta,cf"


class GatewayConfig(BaseModel):
    # Session tokens
    signing_key: str | None = Field(default_factory=lambda: os.getenv("ACTION_TOKEN_SECRET"))
    anonymous_token_ttl_seconds: int = Field(
        default_factory=lambda: int(os.getenv("ANONYMOUS_TOKEN_TTL_SECONDS", str(24 * 60 * 60)))
    )
    registered_token_ttl_seconds: int = Field(
        default_factory=lambda: int(os.getenv("REGISTERED_TOKEN_TTL_SECONDS", str(7 * 24 * 60 * 60)))
    )

    # Quotas
    anonymous_daily_limit: int = Field(default_factory=lambda: int(os.getenv("ANONYMOUS_DAILY_LIMIT", "5")))
    registered_tier_limits: dict[str, int] = Field(
        default_factory=lambda: _parse_int_map(os.getenv("REGISTERED_TIER_LIMITS", "free=50,pro=1000"))
    )
    registered_default_tier: str = Field(default_factory=lambda: os.getenv("REGISTERED_DEFAULT_TIER", "free"))
    quota_store_failure_retry_seconds: int = Field(
        default_factory=lambda: int(os.getenv("QUOTA_STORE_FAILURE_RETRY_SECONDS", "60"))
    )

    # Provider catalog
    provider_order: list[str] = Field(
        default_factory=lambda: _parse_csv(os.getenv("PROVIDER_ORDER", DEFAULT_PROVIDER_ORDER))
    )
    openai_api_key_ref: str = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY_REF", "env:OPENAI_API_KEY"))
    openai_base_url: str = Field(default_factory=lambda: os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"))
    openai_chat_model: str = Field(default_factory=lambda: os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini"))

    anthropic_api_key_ref: str = Field(
        default_factory=lambda: os.getenv("ANTHROPIC_API_KEY_REF", "env:ANTHROPIC_API_KEY")
    )
    anthropic_base_url: str = Field(
        default_factory=lambda: os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1")
    )
    anthropic_version: str = Field(default_factory=lambda: os.getenv("ANTHROPIC_VERSION", "2023-06-01"))
    anthropic_chat_model: str = Field(
        default_factory=lambda: os.getenv("ANTHROPIC_CHAT_MODEL", "claude-3-5-sonnet-20241022")
    )

    mistral_api_key_ref: str = Field(default_factory=lambda: os.getenv("MISTRAL_API_KEY_REF", "env:MISTRAL_API_KEY"))
    mistral_base_url: str = Field(default_factory=lambda: os.getenv("MISTRAL_BASE_URL", "https://api.mistral.ai/v1"))
    mistral_chat_model: str = Field(default_factory=lambda: os.getenv("MISTRAL_CHAT_MODEL", "mistral-small-latest"))
    mistral_fim_model: str = Field(default_factory=lambda: os.getenv("MISTRAL_FIM_MODEL", "codestral-latest"))

    groq_api_key_ref: str = Field(default_factory=lambda: os.getenv("GROQ_API_KEY_REF", "env:GROQ_API_KEY"))
    groq_base_url: str = Field(default_factory=lambda: os.getenv("GROQ_BASE_URL", "https://api.groq.com/openai/v1"))
    groq_chat_model: str = Field(default_factory=lambda: os.getenv("GROQ_CHAT_MODEL", "llama-3.1-8b-instant"))

    xai_api_key_ref: str = Field(default_factory=lambda: os.getenv("XAI_API_KEY_REF", "env:XAI_API_KEY"))
    xai_base_url: str = Field(default_factory=lambda: os.getenv("XAI_BASE_URL", "https://api.x.ai/v1"))
    xai_chat_model: str = Field(default_factory=lambda: os.getenv("XAI_CHAT_MODEL", "grok-beta"))

    openrouter_api_key_ref: str = Field(
        default_factory=lambda: os.getenv("OPENROUTER_API_KEY_REF", "env:OPENROUTER_API_KEY")
    )
    openrouter_base_url: str = Field(
        default_factory=lambda: os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
    )
    openrouter_chat_model: str = Field(
        default_factory=lambda: os.getenv("OPENROUTER_CHAT_MODEL", "openai/gpt-4o-mini")
    )

    meta_api_key_ref: str = Field(default_factory=lambda: os.getenv("META_API_KEY_REF", "env:META_API_KEY"))
    meta_base_url: str = Field(default_factory=lambda: os.getenv("META_BASE_URL", ""))
    meta_chat_model: str = Field(default_factory=lambda: os.getenv("META_CHAT_MODEL", "Llama-3.3-70B-Instruct"))

    cf_api_token_ref: str = Field(default_factory=lambda: os.getenv("CF_API_TOKEN_REF", "env:CF_API_TOKEN"))
    cf_account_id: str = Field(default_factory=lambda: os.getenv("CF_ACCOUNT_ID", ""))
    cf_base_url: str = Field(
        default_factory=lambda: os.getenv("CF_BASE_URL", "https://api.cloudflare.com/client/v4")
    )
    cf_chat_model: str = Field(
        default_factory=lambda: os.getenv("CF_CHAT_MODEL", "@cf/meta/llama-3.1-8b-instruct")
    )

    # Encrypted credential storage (for `store:` credential refs)
    credentials_path: str = Field(default_factory=lambda: os.getenv("CREDENTIALS_PATH", "credentials.enc"))
    fernet_key: str | None = Field(default_factory=lambda: os.getenv("CREDENTIALS_FERNET_KEY"))

    # Prompt shaping
    system_prompt: str | None = Field(default_factory=lambda: os.getenv("SYSTEM_PROMPT") or None)
    fim_inject_system: bool = Field(default_factory=lambda: _env_bool("INJECT_FIM_SYSTEM_PROMPT"))

    # Dispatch behavior
    dispatch_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("DISPATCH_TIMEOUT_SECONDS", "60"))
    )
    dispatch_max_attempts: int = Field(default_factory=lambda: int(os.getenv("DISPATCH_MAX_ATTEMPTS", "2")))
    dispatch_backoff_initial_seconds: float = Field(
        default_factory=lambda: float(os.getenv("DISPATCH_BACKOFF_INITIAL_SECONDS", "0.25"))
    )
    dispatch_backoff_max_seconds: float = Field(
        default_factory=lambda: float(os.getenv("DISPATCH_BACKOFF_MAX_SECONDS", "2.0"))
    )

    # Web search enrichment
    search_enabled: bool = Field(default_factory=lambda: _env_bool("SEARCH_ENABLED", "true"))
    search_cache_seconds: int = Field(default_factory=lambda: int(os.getenv("SEARCH_CACHE_DURATION", "300")))
    search_timeout_seconds: float = Field(default_factory=lambda: float(os.getenv("SEARCH_TIMEOUT_SECONDS", "3.5")))
    tavily_api_key: str | None = Field(default_factory=lambda: os.getenv("TAVILY_API_KEY") or None)
    tavily_base_url: str = Field(default_factory=lambda: os.getenv("TAVILY_BASE_URL", "https://api.tavily.com"))
    brave_api_key: str | None = Field(default_factory=lambda: os.getenv("BRAVE_SEARCH_API_KEY") or None)
    brave_base_url: str = Field(
        default_factory=lambda: os.getenv("BRAVE_BASE_URL", "https://api.search.brave.com")
    )
    searxng_enabled: bool = Field(default_factory=lambda: _env_bool("SEARXNG_ENABLED"))
    searxng_base_url: str = Field(default_factory=lambda: os.getenv("SEARXNG_BASE_URL", "http://localhost:8090"))

    # Attachments
    attachment_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("ATTACHMENT_TIMEOUT_SECONDS", "10"))
    )
    attachment_max_bytes: int = Field(
        default_factory=lambda: int(os.getenv("ATTACHMENT_MAX_BYTES", str(10 * 1024 * 1024)))
    )
    attachment_preview_chars: int = Field(
        default_factory=lambda: int(os.getenv("ATTACHMENT_PREVIEW_CHARS", "2000"))
    )

    # Audit
    audit_sink_url: str | None = Field(default_factory=lambda: os.getenv("AUDIT_SINK_URL") or None)
    audit_timeout_seconds: float = Field(default_factory=lambda: float(os.getenv("AUDIT_TIMEOUT_SECONDS", "5")))
    analytics_max_events: int = Field(default_factory=lambda: int(os.getenv("ANALYTICS_MAX_EVENTS", "10000")))

    # Accounts
    min_password_length: int = Field(default_factory=lambda: int(os.getenv("MIN_PASSWORD_LENGTH", "8")))

    # Observability
    enable_metrics: bool = Field(default_factory=lambda: _env_bool("ENABLE_METRICS"))
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))

    # Server hardening
    enable_api_docs: bool = Field(default_factory=lambda: _env_bool("ENABLE_API_DOCS"))
    allowed_hosts: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ALLOWED_HOSTS")))
    cors_allow_origins: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ALLOWED_ORIGINS")))
    cors_allow_credentials: bool = Field(default_factory=lambda: _env_bool("CORS_ALLOW_CREDENTIALS"))
    max_request_body_bytes: int = Field(
        default_factory=lambda: int(os.getenv("JSON_LIMIT", str(8 * 1024 * 1024)))
    )
    max_inflight_requests: int = Field(default_factory=lambda: int(os.getenv("MAX_INFLIGHT_REQUESTS", "64")))
    disconnect_poll_seconds: float = Field(
        default_factory=lambda: float(os.getenv("DISCONNECT_POLL_SECONDS", "0.5"))
    )

    def require_signing_key(self) -> str:
        if not self.signing_key:
            raise ValueError("ACTION_TOKEN_SECRET is required to sign session tokens.")
        return self.signing_key

    def require_fernet_key(self) -> str:
        if not self.fernet_key:
            raise ValueError("CREDENTIALS_FERNET_KEY is required for encrypted credential storage.")
        return self.fernet_key

    def secrets(self) -> list[str]:
        """Literal secret values that must never reach the logs."""
        values = [self.signing_key, self.fernet_key, self.tavily_api_key, self.brave_api_key]
        return [v for v in values if v]
