from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, Sequence

from ..errors import ConfigurationError
from ..interfaces import (
    ContextProvider,
    InferenceProvider,
    ObservabilitySink,
    PlatformActionProvider,
    PolicyProvider,
    ViolationSink,
    validate_inference_provider,
    validate_policy_provider,
)
from ..observability import NullObservability
from ..services.periodic import PeriodicTask
from .actions import ModerationActions
from .content_sanitizer import ContentSanitizer, SanitizerConfig
from .fast_pass import FastPassFilter
from .input_validator import InputValidator
from .models import ChatMessage, DetectionType, ModerationDecision, PipelineConfig
from .rag import RagConfig, RAGSystem
from .rate_limiter import RateLimitConfig, RateLimiter
from .stages import (
    AIAnalysisStage,
    FastPassStage,
    InputValidationStage,
    ModerationStage,
    RateLimitStage,
    StageContext,
)

log = logging.getLogger("greatshield.pipeline")


class ModerationPipeline:
    """Runs a message through the ordered stages and returns one decision.

    ``moderate`` returns None only before a successful ``initialize``; every
    other failure is logged and downgraded to "no action" for that stage.
    """

    def __init__(
        self,
        policy: PolicyProvider,
        inference: InferenceProvider,
        platform: PlatformActionProvider,
        *,
        context: Optional[ContextProvider] = None,
        violation_sink: Optional[ViolationSink] = None,
        observability: Optional[ObservabilitySink] = None,
        rate_limit_config: Optional[RateLimitConfig] = None,
        sanitizer_config: Optional[SanitizerConfig] = None,
        rag_config: Optional[RagConfig] = None,
        escalation_expiry_seconds: float = 600.0,
        temp_mute_minutes: int = 10,
        temp_ban_hours: int = 24,
        clock: Callable[[], float] = time.time,
        stages: Optional[Sequence[ModerationStage]] = None,
    ) -> None:
        self.policy = validate_policy_provider(policy)
        self.inference = validate_inference_provider(inference)
        self.observability: ObservabilitySink = observability or NullObservability()

        self.rate_limiter = RateLimiter(rate_limit_config, violation_sink=violation_sink, clock=clock)
        self.input_validator = InputValidator(clock=clock)
        self.sanitizer = ContentSanitizer(sanitizer_config)
        self.fast_pass = FastPassFilter()
        self.rag = RAGSystem(self.inference, self.policy, context, rag_config)
        self.actions = ModerationActions(
            platform,
            escalation_expiry_seconds=escalation_expiry_seconds,
            temp_mute_minutes=temp_mute_minutes,
            temp_ban_hours=temp_ban_hours,
        )

        if stages is None:
            stages = [
                RateLimitStage(self.rate_limiter, self.actions),
                InputValidationStage(self.input_validator, self.sanitizer, self.actions),
                FastPassStage(self.fast_pass, self.actions),
                AIAnalysisStage(self.rag, self.actions),
            ]
        self.stages: list[ModerationStage] = list(stages)

        self._validator_sweeper = PeriodicTask(
            "input-validator-sweep",
            self.rate_limiter.config.cleanup_interval_seconds,
            self.input_validator.cleanup_counters,
        )
        self._config: Optional[PipelineConfig] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def config(self) -> Optional[PipelineConfig]:
        return self._config

    async def initialize(self, config: PipelineConfig) -> None:
        """Load fast-pass rules and verify the model. Raises ConfigurationError."""
        self._config = config
        self._initialized = False
        try:
            await self.fast_pass.initialize(self.policy, config.active_policy_pack_id)
            await self.rag.initialize(config.selected_model)
        except ConfigurationError:
            log.error(
                "Failed to initialize moderation pipeline guild=%s model=%s pack=%s",
                config.guild_id,
                config.selected_model,
                config.active_policy_pack_id,
                exc_info=True,
            )
            raise
        except Exception as e:
            log.exception("Failed to initialize moderation pipeline guild=%s", config.guild_id)
            raise ConfigurationError(f"Pipeline initialization failed: {e}") from e

        self._initialized = True
        log.info(
            "Moderation pipeline initialized guild=%s model=%s pack=%s stages=%s",
            config.guild_id,
            config.selected_model,
            config.active_policy_pack_id,
            [s.name for s in self.stages],
        )

    async def reload(self, config: PipelineConfig) -> None:
        self._initialized = False
        await self.initialize(config)
        log.info("Moderation pipeline reloaded guild=%s", config.guild_id)

    async def reload_rules(self) -> None:
        """Re-read the active pack's fast-pass rules without re-checking the model."""
        await self.fast_pass.reload_rules()

    async def moderate(self, message: ChatMessage) -> Optional[ModerationDecision]:
        config = self._config
        if not self._initialized or config is None:
            log.error("Moderation pipeline not initialized; message %s skipped", message.id)
            return None

        obs = self.observability
        total_timer = f"message_processing:{message.id}"
        obs.start_timer(total_timer)
        obs.record_event("message_processed")

        try:
            decision = await self._run_stages(message, StageContext(config=config))
        except Exception as e:
            # Stage errors are handled per stage; this only guards the loop itself.
            log.exception("Error in moderation pipeline message=%s", message.id)
            obs.end_timer(total_timer)
            return ModerationDecision(
                action="none",
                detection_type="fast_pass",
                confidence_scores={},
                success=False,
                error=str(e),
            )

        total_ms = obs.end_timer(total_timer)
        if decision.acted:
            obs.record_event("action_taken", total_ms, decision.action)
        return decision

    async def _run_stages(self, message: ChatMessage, ctx: StageContext) -> ModerationDecision:
        obs = self.observability
        last_type: DetectionType = "fast_pass"
        clean: Optional[ModerationDecision] = None
        failed: Optional[ModerationDecision] = None

        for stage in self.stages:
            timer = f"{stage.name}:{message.id}"
            obs.start_timer(timer)
            try:
                outcome = await stage.evaluate(message, ctx)
            except Exception:
                obs.end_timer(timer)
                log.exception(
                    "Stage %s failed message=%s user=%s channel=%s",
                    stage.name,
                    message.id,
                    message.author.id,
                    message.channel_id,
                )
                obs.record_event("stage_error", action=stage.name)
                last_type = stage.detection_type
                continue
            elapsed = obs.end_timer(timer)

            if outcome.skipped:
                continue
            last_type = stage.detection_type

            decision = outcome.decision
            if decision is None:
                continue
            if decision.acted:
                if stage.hit_event:
                    obs.record_event(stage.hit_event, elapsed, decision.action)
                log.info(
                    "Moderation action %s by %s rule=%s message=%s user=%s",
                    decision.action,
                    stage.name,
                    decision.rule_triggered,
                    message.id,
                    message.author.id,
                )
                return decision
            if decision.action != "none":
                # The stage wanted to act but the executor failed; keep going.
                log.error(
                    "Moderation action %s failed message=%s: %s",
                    decision.action,
                    message.id,
                    decision.error,
                )
                failed = failed or decision
            else:
                clean = decision

        if failed is not None:
            return failed
        if clean is not None:
            return clean
        return ModerationDecision(
            action="none",
            detection_type=last_type,
            confidence_scores=dict(ctx.ai_scores or {}),
            success=True,
        )

    def get_health_status(self) -> dict[str, Any]:
        config = self._config
        return {
            "initialized": self._initialized,
            "fast_pass_ready": self._initialized and self.fast_pass.ready,
            "ai_ready": self._initialized and bool(config and config.selected_model),
        }

    def start(self) -> None:
        self.rate_limiter.start()
        self._validator_sweeper.start()

    async def shutdown(self) -> None:
        await self._validator_sweeper.stop()
        await self.rate_limiter.stop()
        await self.actions.shutdown()
        log.info("Moderation pipeline shut down")
