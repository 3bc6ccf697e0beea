from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from ..errors import TransientProviderError
from ..interfaces import Notice
from ..moderation.models import (
    BannedWord,
    BlockedUrl,
    ChatMessage,
    MessageAttachment,
    MessageAuthor,
    ModerationRule,
)


class FakeClock:
    """Manually advanced clock for time-window tests."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_message(
    content: Optional[str] = "hello there",
    *,
    id: int = 1,
    guild_id: int = 10,
    channel_id: int = 20,
    user_id: int = 30,
    username: str = "tester",
    bot: bool = False,
    attachments: Sequence[tuple[str, int]] = (),
) -> ChatMessage:
    return ChatMessage(
        id=id,
        guild_id=guild_id,
        channel_id=channel_id,
        author=MessageAuthor(id=user_id, username=username, bot=bot),
        content=content,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        channel_name="general",
        attachments=tuple(MessageAttachment(name=n, size=s) for n, s in attachments),
    )


class FakePolicyProvider:
    def __init__(
        self,
        rules: Sequence[ModerationRule] = (),
        banned_words: Sequence[BannedWord] = (),
        blocked_urls: Sequence[BlockedUrl] = (),
    ) -> None:
        self.rules = list(rules)
        self.banned_words = list(banned_words)
        self.blocked_urls = list(blocked_urls)
        self.calls: list[tuple[str, int]] = []

    async def get_moderation_rules(self, pack_id: int) -> list[ModerationRule]:
        self.calls.append(("rules", pack_id))
        return list(self.rules)

    async def get_banned_words(self, pack_id: int) -> list[BannedWord]:
        self.calls.append(("banned_words", pack_id))
        return list(self.banned_words)

    async def get_blocked_urls(self, pack_id: int) -> list[BlockedUrl]:
        self.calls.append(("blocked_urls", pack_id))
        return list(self.blocked_urls)


class FakeInferenceProvider:
    """Returns scripted responses in order; the last one repeats."""

    def __init__(
        self,
        responses: Sequence[str] = ('{"action": "none", "confidence": 0.1, "reasoning": "fine"}',),
        *,
        available: bool = True,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        self.responses = list(responses)
        self.available = available
        self.error = error
        self.delay = delay
        self.calls = 0
        self.prompts: list[str] = []
        self.kwargs: list[dict[str, Any]] = []

    async def generate(
        self,
        prompt: str,
        *,
        model: Optional[str] = None,
        json_mode: bool = True,
        temperature: float = 0.1,
        max_tokens: int = 500,
    ) -> str:
        self.calls += 1
        self.prompts.append(prompt)
        self.kwargs.append(
            {"model": model, "json_mode": json_mode, "temperature": temperature, "max_tokens": max_tokens}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        idx = min(self.calls - 1, len(self.responses) - 1)
        return self.responses[idx]

    async def is_model_available(self, name: str) -> bool:
        if isinstance(self.error, TransientProviderError) and not self.available:
            raise self.error
        return self.available


@dataclass
class FakeContextMessage:
    user_id: int
    content: str


class FakeContextProvider:
    def __init__(self, messages: Sequence[FakeContextMessage] = ()) -> None:
        # Newest first, like the SQLite store.
        self.messages = list(messages)

    async def get_recent_messages(self, channel_id: int, limit: int = 10) -> list[FakeContextMessage]:
        return self.messages[:limit]


class FakeViolationSink:
    def __init__(self, *, fail: bool = False) -> None:
        self.records: list[tuple[int, int, str, int]] = []
        self.fail = fail

    async def record(self, identity: int, channel: int, violation_type: str, count: int) -> None:
        if self.fail:
            raise RuntimeError("violation store unavailable")
        self.records.append((identity, channel, violation_type, count))


@dataclass
class FakePlatform:
    """Records every platform call. Toggle ``capable`` / ``fail_on`` to simulate problems."""

    capable: bool = True
    dm_open: bool = True
    moderators: list[int] = field(default_factory=lambda: [901, 902, 903, 904])
    fail_on: set[str] = field(default_factory=set)
    calls: list[tuple[str, Any]] = field(default_factory=list)
    notices: list[tuple[int, Notice]] = field(default_factory=list)
    texts: list[tuple[int, str]] = field(default_factory=list)
    deleted: list[int] = field(default_factory=list)
    deleted_sent: list[tuple[int, int]] = field(default_factory=list)
    roles: dict[tuple[int, str], int] = field(default_factory=dict)
    assigned: list[tuple[int, int, int]] = field(default_factory=list)
    timeouts: list[tuple[int, int, int]] = field(default_factory=list)
    directs: list[tuple[int, Notice]] = field(default_factory=list)
    _next_id: int = 5000

    def _maybe_fail(self, op: str) -> None:
        self.calls.append((op, None))
        if op in self.fail_on:
            raise RuntimeError(f"{op} failed")

    async def has_capabilities(self, message: ChatMessage, scope: str, capabilities: Sequence[str]) -> bool:
        self.calls.append(("has_capabilities", (scope, tuple(capabilities))))
        return self.capable

    async def delete_message(self, message: ChatMessage) -> None:
        self._maybe_fail("delete_message")
        self.deleted.append(message.id)

    async def send_notice(self, channel_id: int, notice: Notice) -> Optional[int]:
        self._maybe_fail("send_notice")
        self.notices.append((channel_id, notice))
        self._next_id += 1
        return self._next_id

    async def send_text(self, channel_id: int, text: str, *, reply_to: Optional[int] = None) -> Optional[int]:
        self._maybe_fail("send_text")
        self.texts.append((channel_id, text))
        self._next_id += 1
        return self._next_id

    async def send_direct(self, user_id: int, notice: Notice) -> bool:
        self._maybe_fail("send_direct")
        if not self.dm_open:
            return False
        self.directs.append((user_id, notice))
        return True

    async def ensure_restriction_role(self, guild_id: int, role_name: str) -> int:
        self._maybe_fail("ensure_restriction_role")
        return self.roles.setdefault((guild_id, role_name), 7000 + len(self.roles))

    async def assign_role(self, guild_id: int, user_id: int, role_id: int, *, reason: str) -> None:
        self._maybe_fail("assign_role")
        self.assigned.append((guild_id, user_id, role_id))

    async def timeout_member(self, guild_id: int, user_id: int, seconds: int, *, reason: str) -> None:
        self._maybe_fail("timeout_member")
        self.timeouts.append((guild_id, user_id, seconds))

    async def list_moderators(self, guild_id: int, limit: int = 3) -> list[int]:
        self._maybe_fail("list_moderators")
        return self.moderators[:limit]

    async def delete_sent_message(self, channel_id: int, message_id: int) -> None:
        self._maybe_fail("delete_sent_message")
        self.deleted_sent.append((channel_id, message_id))


class RecordingObservability:
    def __init__(self) -> None:
        self.events: list[tuple[str, Optional[str]]] = []

    def start_timer(self, name: str) -> None:
        return None

    def end_timer(self, name: str) -> float:
        return 1.0

    def record_event(self, name: str, duration_ms: Optional[float] = None, action: Optional[str] = None) -> None:
        self.events.append((name, action))

    def names(self) -> list[str]:
        return [n for n, _ in self.events]
