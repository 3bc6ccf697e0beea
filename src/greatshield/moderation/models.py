from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional


RiskLevel = Literal["low", "medium", "high", "critical"]
PenaltyLevel = Literal["none", "warning", "temp_mute", "temp_ban"]
RuleType = Literal["toxicity", "harassment", "spam", "grooming"]
Severity = Literal["low", "medium", "high", "critical"]
DetectionType = Literal["fast_pass", "ai_analysis"]

# Actions the inference provider may suggest and policies may configure.
AIAction = Literal["none", "mask", "delete_warn", "shadowban", "escalate"]
AI_ACTIONS: tuple[str, ...] = ("none", "mask", "delete_warn", "shadowban", "escalate")

# Full action set the executor understands. The tail is used by the security stages.
ACTIONS: tuple[str, ...] = AI_ACTIONS + ("warn", "delete", "timeout", "ban_temp")

RULE_TYPES: tuple[str, ...] = ("toxicity", "harassment", "spam", "grooming")
SEVERITIES: tuple[str, ...] = ("low", "medium", "high", "critical")

_RISK_ORDER = {"low": 0, "medium": 1, "high": 2, "critical": 3}


def escalate_risk(current: RiskLevel, new_level: RiskLevel) -> RiskLevel:
    """Return the more severe of two risk levels."""
    return new_level if _RISK_ORDER[new_level] > _RISK_ORDER[current] else current


def clamp_score(value: Any) -> float:
    """Coerce a raw score to a float in [0, 1]; anything non-numeric is 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        f = float(value)
    except (TypeError, ValueError):
        return 0.0
    if f != f:  # NaN
        return 0.0
    return max(0.0, min(1.0, f))


# --- Normalized message -----------------------------------------------------


@dataclass(frozen=True)
class MessageAuthor:
    id: int
    username: str
    bot: bool = False
    # True when the author is this moderation bot itself.
    is_self: bool = False


@dataclass(frozen=True)
class MessageAttachment:
    name: str
    size: int


@dataclass(frozen=True)
class ChatMessage:
    """Normalized message passed through the moderation pipeline."""

    id: int
    guild_id: int
    channel_id: int
    author: MessageAuthor
    content: Optional[str]
    created_at: datetime
    channel_name: str = ""
    attachments: tuple[MessageAttachment, ...] = ()
    # Platform object the action provider operates on (e.g. discord.Message).
    raw: Any = field(default=None, compare=False, repr=False)

    @property
    def text(self) -> str:
        return self.content or ""


# --- Policy -----------------------------------------------------------------


@dataclass(frozen=True)
class ModerationRule:
    rule_type: RuleType
    threshold: float
    action: str
    enabled: bool = True
    id: Optional[int] = None

    @property
    def label(self) -> str:
        return f"{self.rule_type}_threshold_{self.threshold:g}"


@dataclass(frozen=True)
class BannedWord:
    pattern: str
    is_regex: bool = False
    severity: Severity = "medium"
    action: str = "mask"


@dataclass(frozen=True)
class BlockedUrl:
    pattern: str
    is_regex: bool = False
    reason: str = ""
    action: str = "delete_warn"


@dataclass(frozen=True)
class PolicyPack:
    id: int
    name: str
    active: bool
    description: str = ""
    rules: tuple[ModerationRule, ...] = ()
    banned_words: tuple[BannedWord, ...] = ()
    blocked_urls: tuple[BlockedUrl, ...] = ()


@dataclass(frozen=True)
class PipelineConfig:
    """Deployment configuration handed to ``ModerationPipeline.initialize``."""

    guild_id: int
    selected_model: Optional[str]
    active_policy_pack_id: Optional[int]
    mod_log_channel_id: Optional[int] = None


# --- Component results -------------------------------------------------------


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    penalty_level: PenaltyLevel = "none"
    reason: Optional[str] = None
    reset_time: Optional[float] = None
    remaining_requests: Optional[int] = None
    violation_type: Optional[str] = None
    # Outcome of the penalty the limiter requested, when a handler was given.
    penalty_result: Optional["ActionResult"] = None


@dataclass
class ValidationResult:
    is_valid: bool = True
    errors: list[str] = field(default_factory=list)
    risk_level: RiskLevel = "low"
    sanitized_content: Optional[str] = None

    def flag(self, error: str, level: RiskLevel, *, invalid: bool = False) -> None:
        self.errors.append(error)
        self.risk_level = escalate_risk(self.risk_level, level)
        if invalid:
            self.is_valid = False


@dataclass
class SanitizationResult:
    original_content: str
    sanitized_content: str
    modifications_applied: list[str] = field(default_factory=list)
    risk_level: RiskLevel = "low"
    blocked_elements: list[str] = field(default_factory=list)

    def escalate(self, level: RiskLevel) -> None:
        self.risk_level = escalate_risk(self.risk_level, level)


@dataclass(frozen=True)
class FastPassResult:
    triggered: bool
    rule_triggered: Optional[str] = None
    severity: Optional[str] = None
    action: Optional[str] = None
    reason: Optional[str] = None
    confidence: Optional[float] = None


@dataclass(frozen=True)
class AIAnalysisResult:
    toxicity: float = 0.0
    harassment: float = 0.0
    spam: float = 0.0
    grooming: float = 0.0
    action: AIAction = "none"
    reasoning: str = ""
    confidence: float = 0.0

    def score(self, category: str) -> float:
        return float(getattr(self, category))

    def scores(self) -> dict[str, float]:
        return {
            "toxicity": self.toxicity,
            "harassment": self.harassment,
            "spam": self.spam,
            "grooming": self.grooming,
            "overall": self.confidence,
        }


@dataclass(frozen=True)
class ActionDecision:
    action: str
    confidence: float
    rule_triggered: Optional[str] = None


class NotificationOutcome(enum.Enum):
    DELIVERED = "delivered"
    SUPPRESSED = "suppressed"
    FAILED = "failed"


@dataclass(frozen=True)
class ActionResult:
    success: bool
    action: str
    reason: Optional[str] = None
    error: Optional[str] = None
    notification: Optional[NotificationOutcome] = None


# --- Decision -----------------------------------------------------------------


@dataclass(frozen=True)
class ModerationDecision:
    action: str
    detection_type: DetectionType
    confidence_scores: dict[str, float]
    success: bool
    rule_triggered: Optional[str] = None
    reasoning: Optional[str] = None
    error: Optional[str] = None

    @property
    def acted(self) -> bool:
        return self.action != "none" and self.success
