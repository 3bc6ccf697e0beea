from __future__ import annotations

import os
from dataclasses import dataclass

from .inference.ollama import DEFAULT_OLLAMA_HOST
from .moderation.content_sanitizer import SanitizerConfig
from .moderation.rag import RagConfig
from .moderation.rate_limiter import RateLimitConfig


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _get_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip() or default


def _get_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(x.strip().lower() for x in raw.split(",") if x.strip())


@dataclass(frozen=True)
class Settings:
    token: str
    guild_id: int
    log_level: str
    sqlite_path: str
    message_content_intent: bool

    # Inference provider
    ollama_host: str
    ollama_model: str
    ollama_timeout_seconds: float

    # Policy; 0 means "whatever pack is marked active in the store"
    active_policy_pack_id: int
    mod_log_channel_id: int

    # Rate limiting
    rate_messages_per_minute: int
    rate_messages_per_hour: int
    rate_messages_per_day: int
    rate_channel_messages_per_minute: int
    rate_burst_window_seconds: float
    rate_burst_limit: int
    rate_temp_mute_minutes: int
    rate_temp_ban_hours: int

    # Context-augmented analysis
    context_message_limit: int = 10
    context_prompt_messages: int = 5
    ai_high_confidence_fallback: bool = True
    ai_high_confidence_threshold: float = 0.8

    # Sanitizer
    sanitizer_max_length: int = 2000
    sanitizer_allowed_domains: tuple[str, ...] = ()

    # Executor / background work
    escalation_expiry_seconds: float = 600.0
    cleanup_interval_seconds: float = 300.0

    def rate_limit_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            messages_per_minute=self.rate_messages_per_minute,
            messages_per_hour=self.rate_messages_per_hour,
            messages_per_day=self.rate_messages_per_day,
            channel_messages_per_minute=self.rate_channel_messages_per_minute,
            burst_window_seconds=self.rate_burst_window_seconds,
            burst_limit=self.rate_burst_limit,
            cleanup_interval_seconds=self.cleanup_interval_seconds,
        )

    def sanitizer_config(self) -> SanitizerConfig:
        return SanitizerConfig(
            max_length=self.sanitizer_max_length,
            allowed_domains=self.sanitizer_allowed_domains,
        )

    def rag_config(self) -> RagConfig:
        return RagConfig(
            context_message_limit=self.context_message_limit,
            prompt_message_count=self.context_prompt_messages,
            high_confidence_fallback=self.ai_high_confidence_fallback,
            high_confidence_threshold=self.ai_high_confidence_threshold,
            timeout_seconds=self.ollama_timeout_seconds,
        )


def load_settings() -> Settings:
    token = os.getenv("DISCORD_TOKEN", "").strip()
    if not token:
        raise RuntimeError("DISCORD_TOKEN is required")
    return Settings(
        token=token,
        guild_id=_get_int("GUILD_ID", 0),
        log_level=_get_str("LOG_LEVEL", "INFO"),
        sqlite_path=_get_str("SQLITE_PATH", "greatshield.sqlite3"),
        message_content_intent=_get_bool("MESSAGE_CONTENT_INTENT", True),
        ollama_host=_get_str("OLLAMA_HOST", DEFAULT_OLLAMA_HOST),
        ollama_model=_get_str("OLLAMA_MODEL", "phi:2.7b-q4_k_m"),
        ollama_timeout_seconds=_get_float("OLLAMA_TIMEOUT_SECONDS", 60.0),
        active_policy_pack_id=_get_int("ACTIVE_POLICY_PACK_ID", 0),
        mod_log_channel_id=_get_int("MOD_LOG_CHANNEL_ID", 0),
        rate_messages_per_minute=_get_int("RATE_MESSAGES_PER_MINUTE", 20),
        rate_messages_per_hour=_get_int("RATE_MESSAGES_PER_HOUR", 300),
        rate_messages_per_day=_get_int("RATE_MESSAGES_PER_DAY", 2000),
        rate_channel_messages_per_minute=_get_int("RATE_CHANNEL_MESSAGES_PER_MINUTE", 50),
        rate_burst_window_seconds=_get_float("RATE_BURST_WINDOW_SECONDS", 10.0),
        rate_burst_limit=_get_int("RATE_BURST_LIMIT", 5),
        rate_temp_mute_minutes=_get_int("RATE_TEMP_MUTE_MINUTES", 10),
        rate_temp_ban_hours=_get_int("RATE_TEMP_BAN_HOURS", 24),
        context_message_limit=_get_int("CONTEXT_MESSAGE_LIMIT", 10),
        context_prompt_messages=_get_int("CONTEXT_PROMPT_MESSAGES", 5),
        ai_high_confidence_fallback=_get_bool("AI_HIGH_CONFIDENCE_FALLBACK", True),
        ai_high_confidence_threshold=_get_float("AI_HIGH_CONFIDENCE_THRESHOLD", 0.8),
        sanitizer_max_length=_get_int("SANITIZER_MAX_LENGTH", 2000),
        sanitizer_allowed_domains=_get_list("SANITIZER_ALLOWED_DOMAINS"),
        escalation_expiry_seconds=_get_float("ESCALATION_EXPIRY_SECONDS", 600.0),
        cleanup_interval_seconds=_get_float("CLEANUP_INTERVAL_SECONDS", 300.0),
    )
