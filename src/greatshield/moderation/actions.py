from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable, Optional

from ..errors import ActionExecutionError
from ..interfaces import (
    EMBED_LINKS,
    MANAGE_CHANNELS,
    MANAGE_MESSAGES,
    MANAGE_ROLES,
    MODERATE_MEMBERS,
    SEND_MESSAGES,
    Notice,
    PlatformActionProvider,
)
from .models import ActionResult, ChatMessage, NotificationOutcome

log = logging.getLogger("greatshield.actions")

RESTRICTION_ROLE_NAME = "Greatshield-Shadowban"
INSUFFICIENT_PERMISSIONS = "Insufficient permissions to execute moderation action"
MASK_MAX_LENGTH = 500
CONTENT_PREVIEW_LENGTH = 1000
MAX_ESCALATION_MENTIONS = 3

COLOR_MASK = 0xFFAA00
COLOR_DELETE = 0xFF4444
COLOR_SHADOWBAN = 0x8B0000
COLOR_ESCALATE = 0xFF0000
COLOR_WARN = 0xFFCC00

FOOTER = "This action was taken automatically by Greatshield"

# action -> (permission scope, capabilities the bot needs there)
REQUIRED_CAPABILITIES: dict[str, tuple[str, tuple[str, ...]]] = {
    "mask": ("channel", (MANAGE_MESSAGES, SEND_MESSAGES, EMBED_LINKS)),
    "delete_warn": ("channel", (MANAGE_MESSAGES, SEND_MESSAGES, EMBED_LINKS)),
    "shadowban": ("guild", (MANAGE_ROLES, MANAGE_CHANNELS, MANAGE_MESSAGES)),
    "escalate": ("channel", (SEND_MESSAGES, EMBED_LINKS)),
    "warn": ("channel", (SEND_MESSAGES,)),
    "delete": ("channel", (MANAGE_MESSAGES,)),
    "timeout": ("guild", (MODERATE_MEMBERS,)),
    "ban_temp": ("guild", (MODERATE_MEMBERS,)),
}

_WORD_RE = re.compile(r"\b\w+\b")


def mask_content(content: str) -> str:
    def _mask(m: re.Match[str]) -> str:
        word = m.group(0)
        if len(word) <= 3:
            return word
        return word[0] + "*" * (len(word) - 2) + word[-1]

    return _WORD_RE.sub(_mask, content)[:MASK_MAX_LENGTH]


def _preview(content: str) -> str:
    if len(content) > CONTENT_PREVIEW_LENGTH:
        return content[:CONTENT_PREVIEW_LENGTH] + "..."
    return content or "(no text content)"


class ModerationActions:
    """Maps a decided action to platform operations.

    Every public path returns an ActionResult; platform errors never escape.
    """

    def __init__(
        self,
        platform: PlatformActionProvider,
        *,
        escalation_expiry_seconds: float = 600.0,
        temp_mute_minutes: int = 10,
        temp_ban_hours: int = 24,
        restriction_role_name: str = RESTRICTION_ROLE_NAME,
    ) -> None:
        self.platform = platform
        self.escalation_expiry_seconds = escalation_expiry_seconds
        self.temp_mute_minutes = temp_mute_minutes
        self.temp_ban_hours = temp_ban_hours
        self.restriction_role_name = restriction_role_name
        self._expiries: set[asyncio.Task[None]] = set()
        self._handlers: dict[str, Callable[[ChatMessage, str, Optional[float]], Awaitable[ActionResult]]] = {
            "mask": self._mask,
            "delete_warn": self._delete_warn,
            "shadowban": self._shadowban,
            "escalate": self._escalate,
            "warn": self._warn,
            "delete": self._delete,
            "timeout": self._timeout,
            "ban_temp": self._ban_temp,
        }

    @property
    def pending_expiries(self) -> int:
        return len(self._expiries)

    async def has_required_permissions(self, message: ChatMessage, action: str) -> bool:
        required = REQUIRED_CAPABILITIES.get(action)
        if required is None:
            return False
        scope, caps = required
        try:
            return await self.platform.has_capabilities(message, scope, caps)
        except Exception:
            log.exception("Permission check failed action=%s message=%s", action, message.id)
            return False

    async def execute(
        self,
        action: str,
        message: ChatMessage,
        reason: str,
        confidence: Optional[float] = None,
        *,
        preflight: bool = True,
    ) -> ActionResult:
        if action == "none":
            return ActionResult(success=True, action="none")

        handler = self._handlers.get(action)
        if handler is None:
            return ActionResult(success=False, action=action, error=f"Unknown action: {action}")

        if preflight and not await self.has_required_permissions(message, action):
            log.warning(
                "Missing capabilities for action=%s guild=%s channel=%s",
                action,
                message.guild_id,
                message.channel_id,
            )
            return ActionResult(success=False, action=action, error=INSUFFICIENT_PERMISSIONS)

        try:
            result = await handler(message, reason, confidence)
        except ActionExecutionError as e:
            log.warning("Action %s failed for message=%s: %s", action, message.id, e)
            return ActionResult(success=False, action=action, error=str(e))
        except Exception as e:
            log.exception("Error executing moderation action=%s message=%s", action, message.id)
            return ActionResult(success=False, action=action, error=f"Failed to execute {action}: {e}")

        log.info(
            "Action %s executed guild=%s channel=%s user=%s message=%s",
            action,
            message.guild_id,
            message.channel_id,
            message.author.id,
            message.id,
        )
        return result

    async def _mask(self, message: ChatMessage, reason: str, confidence: Optional[float]) -> ActionResult:
        masked = mask_content(message.text)
        # Messages from other users cannot be edited, so delete and repost.
        await self.platform.delete_message(message)
        await self.platform.send_notice(
            message.channel_id,
            Notice(
                title="Content Masked",
                description=f"A message from <@{message.author.id}> was automatically masked",
                color=COLOR_MASK,
                fields=(
                    ("Original Content (Masked)", masked or "(empty)", False),
                    ("Reason", reason, False),
                ),
                footer="This message was automatically moderated by Greatshield",
            ),
        )
        return ActionResult(success=True, action="mask", reason="Message content masked due to policy violation")

    async def _delete_warn(self, message: ChatMessage, reason: str, confidence: Optional[float]) -> ActionResult:
        user_id = message.author.id
        await self.platform.delete_message(message)
        await self.platform.send_notice(
            message.channel_id,
            Notice(
                title="Message Deleted",
                description=f"<@{user_id}>, your message was removed for violating community guidelines.",
                color=COLOR_DELETE,
                fields=(
                    ("Reason", reason, False),
                    ("Guidelines", "Please review the server rules to avoid future violations.", False),
                ),
                footer=FOOTER,
            ),
        )

        dm = Notice(
            title="Message Removed - Greatshield",
            description=f"Your message in #{message.channel_name or message.channel_id} was removed.",
            color=COLOR_DELETE,
            fields=(
                ("Original Message", _preview(message.text), False),
                ("Reason", reason, False),
                ("Questions?", "Contact the server moderators if you believe this was a mistake.", False),
            ),
        )
        outcome = await self._notify_direct(user_id, dm)
        return ActionResult(
            success=True,
            action="delete_warn",
            reason="Message deleted and user warned",
            notification=outcome,
        )

    async def _notify_direct(self, user_id: int, notice: Notice) -> NotificationOutcome:
        try:
            delivered = await self.platform.send_direct(user_id, notice)
        except Exception as e:
            log.debug("Could not send DM to user=%s: %r", user_id, e)
            return NotificationOutcome.FAILED
        if not delivered:
            log.debug("User %s does not accept direct messages", user_id)
            return NotificationOutcome.SUPPRESSED
        return NotificationOutcome.DELIVERED

    async def _shadowban(self, message: ChatMessage, reason: str, confidence: Optional[float]) -> ActionResult:
        if not message.guild_id:
            raise ActionExecutionError("shadowban", "Guild or member not found")
        await self.platform.delete_message(message)
        role_id = await self.platform.ensure_restriction_role(message.guild_id, self.restriction_role_name)
        await self.platform.assign_role(
            message.guild_id,
            message.author.id,
            role_id,
            reason=f"Greatshield shadowban: {reason}",
        )
        return ActionResult(success=True, action="shadowban", reason=f"User shadowbanned: {reason}")

    async def _escalate(self, message: ChatMessage, reason: str, confidence: Optional[float]) -> ActionResult:
        if not message.guild_id:
            raise ActionExecutionError("escalate", "Guild not found")

        fields = [
            ("User", f"<@{message.author.id}> ({message.author.username})", True),
            ("Channel", f"<#{message.channel_id}>", True),
            (
                "Message Link",
                f"[Jump to Message](https://discord.com/channels/{message.guild_id}/{message.channel_id}/{message.id})",
                True,
            ),
            ("Message Content", _preview(message.text), False),
            ("AI Analysis", reason, False),
        ]
        if confidence is not None:
            fields.append(("Confidence", f"{confidence * 100:.1f}%", True))

        try:
            moderators = await self.platform.list_moderators(message.guild_id, MAX_ESCALATION_MENTIONS)
        except Exception:
            log.exception("Moderator lookup failed guild=%s", message.guild_id)
            moderators = []

        sent_id = await self.platform.send_notice(
            message.channel_id,
            Notice(
                title="HIGH PRIORITY: Moderation Escalation",
                description="A message requires immediate moderator attention.",
                color=COLOR_ESCALATE,
                fields=tuple(fields),
                mentions=tuple(moderators[:MAX_ESCALATION_MENTIONS]),
            ),
        )
        if sent_id is not None and self.escalation_expiry_seconds > 0:
            self._schedule_expiry(message.channel_id, sent_id)

        return ActionResult(
            success=True,
            action="escalate",
            reason=f"Message escalated to moderators: {reason}",
            notification=NotificationOutcome.DELIVERED if moderators else NotificationOutcome.SUPPRESSED,
        )

    def _schedule_expiry(self, channel_id: int, message_id: int) -> None:
        task = asyncio.create_task(self._expire(channel_id, message_id))
        self._expiries.add(task)
        task.add_done_callback(self._expiries.discard)

    async def _expire(self, channel_id: int, message_id: int) -> None:
        await asyncio.sleep(self.escalation_expiry_seconds)
        try:
            await self.platform.delete_sent_message(channel_id, message_id)
        except Exception as e:
            # Already deleted by a moderator is the common case.
            log.debug("Escalation alert %s not removed: %r", message_id, e)

    async def _warn(self, message: ChatMessage, reason: str, confidence: Optional[float]) -> ActionResult:
        await self.platform.send_text(
            message.channel_id,
            f"<@{message.author.id}>, warning: {reason}",
            reply_to=message.id,
        )
        return ActionResult(success=True, action="warn", reason="User warned")

    async def _delete(self, message: ChatMessage, reason: str, confidence: Optional[float]) -> ActionResult:
        await self.platform.delete_message(message)
        return ActionResult(success=True, action="delete", reason="Message deleted")

    async def _timeout(self, message: ChatMessage, reason: str, confidence: Optional[float]) -> ActionResult:
        return await self._restrict(message, "timeout", self.temp_mute_minutes * 60, reason)

    async def _ban_temp(self, message: ChatMessage, reason: str, confidence: Optional[float]) -> ActionResult:
        return await self._restrict(message, "ban_temp", self.temp_ban_hours * 3600, reason)

    async def _restrict(self, message: ChatMessage, action: str, seconds: int, reason: str) -> ActionResult:
        if not message.guild_id:
            raise ActionExecutionError(action, "Guild or member not found")
        await self.platform.delete_message(message)
        await self.platform.timeout_member(
            message.guild_id,
            message.author.id,
            seconds,
            reason=f"Greatshield {action}: {reason}",
        )
        outcome = await self._notify_direct(
            message.author.id,
            Notice(
                title="You have been temporarily restricted",
                description=f"You cannot send messages for {seconds // 60} minutes.",
                color=COLOR_WARN,
                fields=(("Reason", reason, False),),
                footer=FOOTER,
            ),
        )
        return ActionResult(
            success=True,
            action=action,
            reason=f"User restricted for {seconds} seconds",
            notification=outcome,
        )

    async def shutdown(self) -> None:
        tasks = list(self._expiries)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._expiries.clear()
