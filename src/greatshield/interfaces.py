"""
Collaborator contracts for the moderation engine.

The pipeline only talks to these narrow interfaces; the Discord client,
SQLite stores and the Ollama client implement them in production and
``greatshield.testing.fakes`` implements them in tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence, runtime_checkable

from .moderation.models import BannedWord, BlockedUrl, ChatMessage, ModerationRule

# Capability names understood by PlatformActionProvider.has_capabilities.
MANAGE_MESSAGES = "manage_messages"
SEND_MESSAGES = "send_messages"
EMBED_LINKS = "embed_links"
MANAGE_ROLES = "manage_roles"
MANAGE_CHANNELS = "manage_channels"
MODERATE_MEMBERS = "moderate_members"


@dataclass(frozen=True)
class Notice:
    """Platform-neutral rich message (rendered as an embed on Discord)."""

    title: str
    description: str
    color: int = 0x5865F2
    fields: tuple[tuple[str, str, bool], ...] = ()
    footer: Optional[str] = None
    mentions: Sequence[int] = field(default=())


@runtime_checkable
class PolicyProvider(Protocol):
    async def get_moderation_rules(self, pack_id: int) -> list[ModerationRule]:
        ...

    async def get_banned_words(self, pack_id: int) -> list[BannedWord]:
        ...

    async def get_blocked_urls(self, pack_id: int) -> list[BlockedUrl]:
        ...


@runtime_checkable
class InferenceProvider(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        model: Optional[str] = None,
        json_mode: bool = True,
        temperature: float = 0.1,
        max_tokens: int = 500,
    ) -> str:
        ...

    async def is_model_available(self, name: str) -> bool:
        ...


@runtime_checkable
class ContextProvider(Protocol):
    async def get_recent_messages(self, channel_id: int, limit: int = 10) -> Sequence[object]:
        """Newest first; items expose ``user_id`` and ``content``."""
        ...


@runtime_checkable
class ViolationSink(Protocol):
    async def record(self, identity: int, channel: int, violation_type: str, count: int) -> None:
        ...


@runtime_checkable
class PlatformActionProvider(Protocol):
    async def has_capabilities(self, message: ChatMessage, scope: str, capabilities: Sequence[str]) -> bool:
        """``scope`` is "channel" (permissions in the message's channel) or "guild"."""
        ...

    async def delete_message(self, message: ChatMessage) -> None:
        ...

    async def send_notice(self, channel_id: int, notice: Notice) -> Optional[int]:
        """Returns the id of the sent message when the platform reports one."""
        ...

    async def send_text(self, channel_id: int, text: str, *, reply_to: Optional[int] = None) -> Optional[int]:
        ...

    async def send_direct(self, user_id: int, notice: Notice) -> bool:
        """Best effort. False when the user cannot be reached."""
        ...

    async def ensure_restriction_role(self, guild_id: int, role_name: str) -> int:
        ...

    async def assign_role(self, guild_id: int, user_id: int, role_id: int, *, reason: str) -> None:
        ...

    async def timeout_member(self, guild_id: int, user_id: int, seconds: int, *, reason: str) -> None:
        ...

    async def list_moderators(self, guild_id: int, limit: int = 3) -> list[int]:
        """Reachable moderators, online ones first."""
        ...

    async def delete_sent_message(self, channel_id: int, message_id: int) -> None:
        ...


@runtime_checkable
class ObservabilitySink(Protocol):
    def start_timer(self, name: str) -> None:
        ...

    def end_timer(self, name: str) -> float:
        ...

    def record_event(self, name: str, duration_ms: Optional[float] = None, action: Optional[str] = None) -> None:
        ...


def validate_policy_provider(provider: object) -> PolicyProvider:
    if not isinstance(provider, PolicyProvider):
        raise AttributeError(f"Object {provider!r} does not implement PolicyProvider")
    return provider


def validate_inference_provider(provider: object) -> InferenceProvider:
    if not isinstance(provider, InferenceProvider):
        raise AttributeError(f"Object {provider!r} does not implement InferenceProvider")
    return provider
