from __future__ import annotations

import logging
from typing import Optional

from ..interfaces import Notice, PlatformActionProvider
from .models import ChatMessage, ModerationDecision, NotificationOutcome

log = logging.getLogger("greatshield.mod_log")

ACTION_COLORS: dict[str, int] = {
    "mask": 0xFFAA00,
    "delete_warn": 0xFF4444,
    "shadowban": 0x8B0000,
    "escalate": 0xFF0000,
    "warn": 0xFFCC00,
    "delete": 0xFF7744,
    "timeout": 0xAA00FF,
    "ban_temp": 0x660000,
}
DEFAULT_COLOR = 0x5865F2
FAILED_COLOR = 0x99AAB5


class ModerationLogNotifier:
    """Posts moderation decisions to the configured mod-log channel."""

    def __init__(self, platform: PlatformActionProvider, channel_id: Optional[int]) -> None:
        self.platform = platform
        self.channel_id = channel_id or None

    @staticmethod
    def render(message: ChatMessage, decision: ModerationDecision) -> Notice:
        status = "executed" if decision.success else "failed"
        scores = ", ".join(f"{k}: {v:.2f}" for k, v in sorted(decision.confidence_scores.items())) or "n/a"
        fields = [
            ("User", f"<@{message.author.id}> ({message.author.username})", True),
            ("Channel", f"<#{message.channel_id}>", True),
            ("Detection", decision.detection_type, True),
            ("Rule", decision.rule_triggered or "n/a", True),
            ("Scores", scores, False),
            ("Reason", (decision.reasoning or "No reason provided")[:1000], False),
        ]
        if decision.error:
            fields.append(("Error", decision.error[:1000], False))
        return Notice(
            title=f"Moderation: {decision.action} ({status})",
            description=f"Message `{message.id}` was moderated automatically.",
            color=ACTION_COLORS.get(decision.action, DEFAULT_COLOR) if decision.success else FAILED_COLOR,
            fields=tuple(fields),
            footer="Greatshield",
        )

    async def notify(self, message: ChatMessage, decision: ModerationDecision) -> NotificationOutcome:
        if self.channel_id is None or decision.action == "none":
            return NotificationOutcome.SUPPRESSED
        try:
            await self.platform.send_notice(self.channel_id, self.render(message, decision))
        except Exception as e:
            log.warning("Could not post to mod-log channel %s: %r", self.channel_id, e)
            return NotificationOutcome.FAILED
        return NotificationOutcome.DELIVERED
