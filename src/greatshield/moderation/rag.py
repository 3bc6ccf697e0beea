from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from ..errors import ConfigurationError, MalformedOutputError, TransientProviderError
from ..interfaces import ContextProvider, InferenceProvider, PolicyProvider
from .models import AI_ACTIONS, RULE_TYPES, ActionDecision, AIAnalysisResult, ModerationRule, clamp_score

log = logging.getLogger("greatshield.rag")

HIGH_CONFIDENCE_RULE = "ai_high_confidence"
PARSE_FAILED_REASONING = "AI analysis failed - defaulting to no action"
UNAVAILABLE_REASONING = "AI analysis unavailable - defaulting to no action"
NO_REASONING = "No reasoning provided"

_FENCE_RE = re.compile(r"```json\s*|\s*```")

PROMPT_TEMPLATE = """You are Greatshield, an AI content moderation system. Analyze the following Discord message for potential policy violations.

POLICY RULES:
{rules}

RECENT CHANNEL CONTEXT (for reference):
{context}

CURRENT MESSAGE TO ANALYZE:
User {user_id}: {content}

TASK:
Analyze the current message and provide scores (0.0 to 1.0) for:
1. toxicity - offensive, rude, or disrespectful language
2. harassment - targeting or bullying specific users
3. spam - repetitive, promotional, or off-topic content
4. grooming - inappropriate advances or predatory behavior

Based on the policy rules and your analysis, recommend an action:
- none: message is acceptable
- mask: hide offensive parts but keep message
- delete_warn: delete message and warn user
- shadowban: prevent user from being seen by others
- escalate: alert moderators for manual review

IMPORTANT: Respond ONLY with valid JSON in this exact format:
{{
  "toxicity": 0.0,
  "harassment": 0.0,
  "spam": 0.0,
  "grooming": 0.0,
  "action": "none",
  "reasoning": "Brief explanation of your decision",
  "confidence": 0.0
}}

Consider context, intent, and severity. Be fair but firm in protecting the community."""


@dataclass(frozen=True)
class RagConfig:
    context_message_limit: int = 10
    prompt_message_count: int = 5
    high_confidence_fallback: bool = True
    high_confidence_threshold: float = 0.8
    timeout_seconds: float = 60.0
    temperature: float = 0.1
    max_tokens: int = 500


@dataclass(frozen=True)
class ContextLine:
    user_id: int
    content: str


@dataclass(frozen=True)
class RagContext:
    # Oldest first, already trimmed to what the prompt shows.
    recent_messages: tuple[ContextLine, ...]
    rules: tuple[ModerationRule, ...]
    content: str
    user_id: int
    channel_id: int


@dataclass(frozen=True)
class AIEvaluation:
    analysis: AIAnalysisResult
    decision: ActionDecision


def safe_default(reasoning: str) -> AIAnalysisResult:
    return AIAnalysisResult(action="none", reasoning=reasoning, confidence=0.0)


class RAGSystem:
    """Context-augmented analysis: recent channel messages + policy rules -> model -> scores."""

    def __init__(
        self,
        inference: InferenceProvider,
        policy: PolicyProvider,
        context: Optional[ContextProvider] = None,
        config: Optional[RagConfig] = None,
    ) -> None:
        self._inference = inference
        self._policy = policy
        self._context = context
        self.config = config or RagConfig()
        self._model: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self._model is not None

    @property
    def model(self) -> Optional[str]:
        return self._model

    async def initialize(self, model: Optional[str]) -> None:
        self._model = None
        if not model:
            raise ConfigurationError("No AI model configured")
        try:
            available = await self._inference.is_model_available(model)
        except Exception as e:
            raise ConfigurationError(f"Inference provider unavailable: {e}") from e
        if not available:
            raise ConfigurationError(f"Model {model} is not available. Please pull it first.")
        self._model = model
        log.info("RAG system initialized model=%s", model)

    async def gather_context(self, content: str, user_id: int, channel_id: int, pack_id: int) -> RagContext:
        lines: list[ContextLine] = []
        if self._context is not None:
            try:
                recent = await self._context.get_recent_messages(channel_id, self.config.context_message_limit)
            except Exception:
                log.exception("Failed to load message context channel=%s", channel_id)
                recent = []
            # Newest first from the store; the prompt reads oldest to newest.
            for m in list(recent)[: self.config.prompt_message_count]:
                lines.append(ContextLine(user_id=int(getattr(m, "user_id", 0)), content=str(getattr(m, "content", ""))))
            lines.reverse()

        rules = await self._policy.get_moderation_rules(pack_id)
        return RagContext(
            recent_messages=tuple(lines),
            rules=tuple(rules),
            content=content,
            user_id=user_id,
            channel_id=channel_id,
        )

    @staticmethod
    def build_prompt(context: RagContext) -> str:
        rules = "\n".join(f"{r.rule_type}: threshold {r.threshold:g}, action {r.action}" for r in context.rules)
        recent = "\n".join(f"User {m.user_id}: {m.content}" for m in context.recent_messages)
        return PROMPT_TEMPLATE.format(
            rules=rules,
            context=recent or "No recent messages available",
            user_id=context.user_id,
            content=context.content,
        )

    async def analyze(self, content: str, user_id: int, channel_id: int, pack_id: int) -> AIAnalysisResult:
        context = await self.gather_context(content, user_id, channel_id, pack_id)
        return await self._analyze(context)

    async def evaluate(self, content: str, user_id: int, channel_id: int, pack_id: int) -> AIEvaluation:
        """Analyze and match against the same rule set used to build the prompt."""
        context = await self.gather_context(content, user_id, channel_id, pack_id)
        analysis = await self._analyze(context)
        return AIEvaluation(analysis=analysis, decision=self.determine_action(analysis, context.rules))

    async def _analyze(self, context: RagContext) -> AIAnalysisResult:
        if self._model is None:
            raise ConfigurationError("RAG system not initialized")

        prompt = self.build_prompt(context)
        try:
            raw = await asyncio.wait_for(
                self._inference.generate(
                    prompt,
                    model=self._model,
                    json_mode=True,
                    temperature=self.config.temperature,
                    max_tokens=self.config.max_tokens,
                ),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            log.warning(
                "Inference timed out after %.1fs user=%s channel=%s",
                self.config.timeout_seconds,
                context.user_id,
                context.channel_id,
            )
            return safe_default(UNAVAILABLE_REASONING)
        except TransientProviderError as e:
            log.warning("Inference provider error user=%s channel=%s: %s", context.user_id, context.channel_id, e)
            return safe_default(UNAVAILABLE_REASONING)

        analysis = self.parse_response(raw)
        log.debug(
            "AI analysis completed len=%d user=%s scores=%s action=%s",
            len(context.content),
            context.user_id,
            analysis.scores(),
            analysis.action,
        )
        return analysis

    @staticmethod
    def _decode(response: str) -> dict[str, Any]:
        cleaned = _FENCE_RE.sub("", response or "").strip()
        try:
            parsed = json.loads(cleaned)
        except (TypeError, ValueError) as e:
            raise MalformedOutputError(f"Model output is not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise MalformedOutputError(f"Model output is not a JSON object: {type(parsed).__name__}")
        return parsed

    @classmethod
    def parse_response(cls, response: str) -> AIAnalysisResult:
        """Parse model output. Never raises; bad output becomes a zero-score "none" result."""
        try:
            parsed = cls._decode(response)
        except MalformedOutputError as e:
            log.error("Failed to parse AI response: %s response=%r", e, (response or "")[:500])
            return safe_default(PARSE_FAILED_REASONING)

        action = parsed.get("action")
        if action not in AI_ACTIONS:
            if action is not None:
                log.warning("Model suggested unknown action %r; using none", action)
            action = "none"

        reasoning = parsed.get("reasoning")
        if not isinstance(reasoning, str) or not reasoning:
            reasoning = NO_REASONING

        return AIAnalysisResult(
            toxicity=clamp_score(parsed.get("toxicity")),
            harassment=clamp_score(parsed.get("harassment")),
            spam=clamp_score(parsed.get("spam")),
            grooming=clamp_score(parsed.get("grooming")),
            action=action,
            reasoning=reasoning,
            confidence=clamp_score(parsed.get("confidence")),
        )

    def determine_action(self, analysis: AIAnalysisResult, rules: Sequence[ModerationRule]) -> ActionDecision:
        for category in RULE_TYPES:
            rule = next((r for r in rules if r.rule_type == category and r.enabled), None)
            if rule is None:
                continue
            score = analysis.score(category)
            if score >= rule.threshold:
                return ActionDecision(action=rule.action, confidence=score, rule_triggered=rule.label)

        cfg = self.config
        if cfg.high_confidence_fallback and analysis.action != "none" and analysis.confidence >= cfg.high_confidence_threshold:
            return ActionDecision(
                action=analysis.action,
                confidence=analysis.confidence,
                rule_triggered=HIGH_CONFIDENCE_RULE,
            )

        return ActionDecision(action="none", confidence=1.0)

    @staticmethod
    def generate_explanation(analysis: AIAnalysisResult, action: str) -> str:
        scores = ", ".join(
            [
                f"Toxicity: {analysis.toxicity * 100:.1f}%",
                f"Harassment: {analysis.harassment * 100:.1f}%",
                f"Spam: {analysis.spam * 100:.1f}%",
                f"Grooming Risk: {analysis.grooming * 100:.1f}%",
            ]
        )
        return f"AI Analysis - {scores}. Action: {action}. Reasoning: {analysis.reasoning}"
