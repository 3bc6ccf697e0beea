"""
Pipeline stages.

Each stage inspects one message and either returns a decision (acted, or
evaluated clean) or nothing. The order they run in is configuration owned
by ``ModerationPipeline``, not something the stages know about.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from .actions import ModerationActions
from .content_sanitizer import ContentSanitizer
from .fast_pass import FastPassFilter
from .input_validator import InputValidator
from .models import (
    ActionResult,
    ChatMessage,
    DetectionType,
    ModerationDecision,
    PenaltyLevel,
    PipelineConfig,
    RiskLevel,
    SanitizationResult,
    ValidationResult,
)
from .rag import RAGSystem
from .rate_limiter import RateLimiter

log = logging.getLogger("greatshield.stages")

_PENALTY_ACTIONS: dict[str, str] = {"warning": "warn", "temp_mute": "timeout", "temp_ban": "ban_temp"}
_VALIDATION_ACTIONS: dict[str, str] = {"critical": "ban_temp", "high": "delete_warn", "medium": "delete", "low": "none"}
_SANITIZATION_ACTIONS: dict[str, str] = {"critical": "ban_temp", "high": "delete_warn", "medium": "delete", "low": "warn"}
_RISK_SCORES: dict[str, float] = {"critical": 1.0, "high": 0.8, "medium": 0.6, "low": 0.3}


def penalty_action(level: PenaltyLevel) -> str:
    return _PENALTY_ACTIONS.get(level, "delete")


def validation_action(level: RiskLevel) -> str:
    return _VALIDATION_ACTIONS.get(level, "none")


def sanitization_action(level: RiskLevel) -> str:
    return _SANITIZATION_ACTIONS.get(level, "warn")


def risk_score(level: RiskLevel) -> float:
    return _RISK_SCORES.get(level, 0.1)


@dataclass
class StageContext:
    """Per-message scratch space shared by the stages of one ``moderate`` call."""

    config: PipelineConfig
    validation: Optional[ValidationResult] = None
    sanitization: Optional[SanitizationResult] = None
    ai_scores: Optional[dict[str, float]] = None


@dataclass(frozen=True)
class StageOutcome:
    decision: Optional[ModerationDecision] = None
    skipped: bool = False

    @property
    def acted(self) -> bool:
        return self.decision is not None and self.decision.acted


@runtime_checkable
class ModerationStage(Protocol):
    name: str
    detection_type: DetectionType
    # Observability event recorded when the stage acts, if any.
    hit_event: Optional[str]

    async def evaluate(self, message: ChatMessage, ctx: StageContext) -> StageOutcome:
        ...


def _acted(
    action: str,
    detection_type: DetectionType,
    scores: dict[str, float],
    result: ActionResult,
    *,
    rule: Optional[str],
    reasoning: Optional[str],
) -> StageOutcome:
    return StageOutcome(
        ModerationDecision(
            action=action,
            detection_type=detection_type,
            confidence_scores=scores,
            success=result.success,
            rule_triggered=rule,
            reasoning=reasoning,
            error=result.error,
        )
    )


class RateLimitStage:
    name = "rate_limit"
    detection_type: DetectionType = "fast_pass"
    hit_event: Optional[str] = "rate_limit_hit"

    def __init__(self, limiter: RateLimiter, actions: ModerationActions) -> None:
        self.limiter = limiter
        self.actions = actions

    async def evaluate(self, message: ChatMessage, ctx: StageContext) -> StageOutcome:
        async def apply_penalty(level: PenaltyLevel, reason: str, violation_type: str) -> ActionResult:
            return await self.actions.execute(penalty_action(level), message, f"Rate limit violation: {reason}")

        result = await self.limiter.check(message.author.id, message.channel_id, on_penalty=apply_penalty)
        if result.allowed:
            return StageOutcome()

        action = penalty_action(result.penalty_level)
        applied = result.penalty_result or ActionResult(success=False, action=action, error="Penalty was not applied")
        return _acted(
            action,
            self.detection_type,
            {"rate_limit": 1.0},
            applied,
            rule="rate_limit",
            reasoning=result.reason or "Rate limit exceeded",
        )


class InputValidationStage:
    """Static validation, with the deep sanitizer run inline for high-risk messages."""

    name = "input_validation"
    detection_type: DetectionType = "fast_pass"
    hit_event: Optional[str] = "security_violation"

    def __init__(self, validator: InputValidator, sanitizer: ContentSanitizer, actions: ModerationActions) -> None:
        self.validator = validator
        self.sanitizer = sanitizer
        self.actions = actions

    async def evaluate(self, message: ChatMessage, ctx: StageContext) -> StageOutcome:
        validation = self.validator.validate(message)
        ctx.validation = validation

        if not validation.is_valid or validation.risk_level == "critical":
            action = validation_action(validation.risk_level)
            errors = ", ".join(validation.errors)
            if action == "none":
                return StageOutcome()
            result = await self.actions.execute(action, message, f"Security validation failed: {errors}")
            return _acted(
                action,
                self.detection_type,
                {"security": risk_score(validation.risk_level)},
                result,
                rule="security_validation",
                reasoning=f"Security issues detected: {errors}",
            )

        if validation.risk_level != "high":
            return StageOutcome()

        sanitized = self.sanitizer.sanitize(message.content, message.author.id)
        ctx.sanitization = sanitized
        if sanitized.risk_level != "critical" and not sanitized.blocked_elements:
            return StageOutcome()

        action = sanitization_action(sanitized.risk_level)
        result = await self.actions.execute(
            action,
            message,
            f"Content sanitization triggered: {', '.join(sanitized.modifications_applied)}",
        )
        return _acted(
            action,
            self.detection_type,
            {"sanitization": risk_score(sanitized.risk_level)},
            result,
            rule="content_sanitization",
            reasoning=f"Dangerous content patterns detected: {', '.join(sanitized.blocked_elements)}",
        )


class FastPassStage:
    name = "fast_pass"
    detection_type: DetectionType = "fast_pass"
    hit_event: Optional[str] = "fast_pass_hit"

    def __init__(self, fast_pass: FastPassFilter, actions: ModerationActions) -> None:
        self.fast_pass = fast_pass
        self.actions = actions

    async def evaluate(self, message: ChatMessage, ctx: StageContext) -> StageOutcome:
        hit = self.fast_pass.check(message.content)
        if not hit.triggered or not hit.action:
            return StageOutcome()

        rule = hit.rule_triggered or "fast_pass"
        result = await self.actions.execute(hit.action, message, hit.reason or rule)
        return _acted(
            hit.action,
            self.detection_type,
            {rule: hit.confidence if hit.confidence is not None else 1.0},
            result,
            rule=rule,
            reasoning=hit.reason,
        )


class AIAnalysisStage:
    name = "ai_analysis"
    detection_type: DetectionType = "ai_analysis"
    hit_event: Optional[str] = "ai_analysis"

    def __init__(self, rag: RAGSystem, actions: ModerationActions) -> None:
        self.rag = rag
        self.actions = actions

    async def evaluate(self, message: ChatMessage, ctx: StageContext) -> StageOutcome:
        pack_id = ctx.config.active_policy_pack_id
        if not pack_id:
            return StageOutcome(skipped=True)

        evaluation = await self.rag.evaluate(message.text, message.author.id, message.channel_id, pack_id)
        analysis = evaluation.analysis
        scores = analysis.scores()
        ctx.ai_scores = scores

        decided = evaluation.decision
        if decided.action == "none":
            return StageOutcome(
                ModerationDecision(
                    action="none",
                    detection_type=self.detection_type,
                    confidence_scores=scores,
                    success=True,
                    reasoning=analysis.reasoning,
                )
            )

        reasoning = self.rag.generate_explanation(analysis, decided.action)
        result = await self.actions.execute(decided.action, message, reasoning, decided.confidence)
        return _acted(
            decided.action,
            self.detection_type,
            scores,
            result,
            rule=decided.rule_triggered,
            reasoning=reasoning,
        )
