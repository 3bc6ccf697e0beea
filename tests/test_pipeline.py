from __future__ import annotations

import asyncio
import json

import pytest

from greatshield.errors import ConfigurationError
from greatshield.moderation.actions import INSUFFICIENT_PERMISSIONS
from greatshield.moderation.models import BannedWord, ModerationDecision, ModerationRule, PipelineConfig
from greatshield.moderation.pipeline import ModerationPipeline
from greatshield.moderation.rate_limiter import RateLimitConfig
from greatshield.moderation.stages import StageOutcome
from greatshield.testing.fakes import (
    FakeClock,
    FakeInferenceProvider,
    FakePlatform,
    FakePolicyProvider,
    RecordingObservability,
    make_message,
)

CONFIG = PipelineConfig(guild_id=10, selected_model="phi", active_policy_pack_id=1)

TOXIC = json.dumps(
    {
        "toxicity": 0.9,
        "harassment": 0.1,
        "spam": 0.0,
        "grooming": 0.0,
        "action": "delete_warn",
        "reasoning": "insulting",
        "confidence": 0.9,
    }
)


class ExplodingRulesPolicy(FakePolicyProvider):
    async def get_moderation_rules(self, pack_id):
        raise RuntimeError("rules table locked")


class RecordingStage:
    detection_type = "fast_pass"
    hit_event = None

    def __init__(self, name, decision=None):
        self.name = name
        self.decision = decision
        self.seen = []

    async def evaluate(self, message, ctx):
        self.seen.append(message.id)
        return StageOutcome(self.decision)


def build(policy=None, inference=None, platform=None, **kwargs):
    if policy is None:
        policy = FakePolicyProvider(
            rules=[ModerationRule("toxicity", 0.7, "delete_warn")],
            banned_words=[BannedWord("badword")],
        )
    inference = inference or FakeInferenceProvider()
    platform = platform or FakePlatform()
    obs = RecordingObservability()
    pipeline = ModerationPipeline(policy, inference, platform, observability=obs, clock=FakeClock(), **kwargs)
    return pipeline, inference, platform, obs


def moderate(pipeline, *messages, config=CONFIG):
    async def run():
        await pipeline.initialize(config)
        return [await pipeline.moderate(m) for m in messages]

    return asyncio.run(run())


def test_rejects_providers_missing_the_contract():
    with pytest.raises(AttributeError):
        ModerationPipeline(object(), FakeInferenceProvider(), FakePlatform())


def test_moderate_before_initialize_returns_none():
    pipeline, inference, platform, _ = build()

    assert asyncio.run(pipeline.moderate(make_message())) is None
    assert inference.calls == 0
    assert platform.calls == []


def test_initialize_fails_for_unavailable_model():
    pipeline, _, _, _ = build(inference=FakeInferenceProvider(available=False))

    async def run():
        with pytest.raises(ConfigurationError):
            await pipeline.initialize(CONFIG)
        return await pipeline.moderate(make_message())

    assert asyncio.run(run()) is None
    assert not pipeline.initialized


def test_initialize_fails_without_a_pack():
    pipeline, _, _, _ = build()
    config = PipelineConfig(guild_id=10, selected_model="phi", active_policy_pack_id=None)

    with pytest.raises(ConfigurationError, match="No active policy pack"):
        asyncio.run(pipeline.initialize(config))


def test_fast_pass_hit_skips_inference():
    pipeline, inference, platform, obs = build()

    [decision] = moderate(pipeline, make_message("this has badword inside"))

    assert decision.action == "mask"
    assert decision.detection_type == "fast_pass"
    assert decision.rule_triggered == "banned_word:badword"
    assert decision.confidence_scores == {"banned_word:badword": 1.0}
    assert decision.success
    assert inference.calls == 0
    assert platform.deleted == [1]
    assert obs.names() == ["message_processed", "fast_pass_hit", "action_taken"]


def test_ai_decision_is_executed():
    pipeline, inference, platform, obs = build(inference=FakeInferenceProvider([TOXIC]))

    [decision] = moderate(pipeline, make_message("you are terrible at this"))

    assert decision.action == "delete_warn"
    assert decision.detection_type == "ai_analysis"
    assert decision.rule_triggered == "toxicity_threshold_0.7"
    assert decision.confidence_scores["toxicity"] == 0.9
    assert decision.confidence_scores["overall"] == 0.9
    assert decision.reasoning.startswith("AI Analysis - Toxicity: 90.0%")
    assert inference.calls == 1
    assert platform.deleted == [1]
    assert ("ai_analysis", "delete_warn") in obs.events


def test_clean_message_returns_scored_none_decision():
    pipeline, inference, platform, obs = build()

    [decision] = moderate(pipeline, make_message("see you at the meetup"))

    assert decision.action == "none"
    assert decision.success
    assert decision.detection_type == "ai_analysis"
    assert decision.reasoning == "fine"
    assert decision.confidence_scores["overall"] == 0.1
    assert platform.deleted == []
    assert "action_taken" not in obs.names()


def test_security_failure_short_circuits():
    pipeline, inference, platform, obs = build()

    [decision] = moderate(pipeline, make_message("ok; rm -rf /"))

    assert decision.action == "ban_temp"
    assert decision.rule_triggered == "security_validation"
    assert decision.confidence_scores == {"security": 1.0}
    assert decision.reasoning == "Security issues detected: Potential code injection detected"
    assert inference.calls == 0
    assert platform.timeouts == [(10, 30, 24 * 3600)]
    assert ("security_violation", "ban_temp") in obs.events


def test_ip_literal_url_is_removed_by_sanitization():
    pipeline, inference, platform, obs = build()

    [decision] = moderate(pipeline, make_message("grab it at http://203.0.113.5/free.zip now"))

    assert decision.action == "delete"
    assert decision.rule_triggered == "content_sanitization"
    assert decision.reasoning == "Dangerous content patterns detected: URL: IP-based URL"
    assert decision.success
    assert inference.calls == 0
    assert platform.deleted == [1]
    assert ("security_violation", "delete") in obs.events


def test_rate_limit_runs_first_and_applies_penalty():
    pipeline, inference, platform, obs = build(rate_limit_config=RateLimitConfig(burst_limit=2))

    decisions = moderate(pipeline, *(make_message("hello there", id=i) for i in (1, 2, 3)))

    assert [d.action for d in decisions] == ["none", "none", "warn"]
    assert decisions[2].rule_triggered == "rate_limit"
    assert decisions[2].confidence_scores == {"rate_limit": 1.0}
    assert inference.calls == 2
    assert platform.texts == [(20, "<@30>, warning: Rate limit violation: Burst limit exceeded")]
    assert ("rate_limit_hit", "warn") in obs.events


def test_stage_exception_is_contained():
    policy = ExplodingRulesPolicy(banned_words=[BannedWord("badword")])
    pipeline, inference, platform, obs = build(policy=policy)

    [decision] = moderate(pipeline, make_message("see you at the meetup"))

    assert decision.action == "none"
    assert decision.success
    assert decision.detection_type == "ai_analysis"
    assert ("stage_error", "ai_analysis") in obs.events


def test_failed_action_does_not_stop_later_stages():
    pipeline, inference, platform, _ = build(platform=FakePlatform(capable=False))

    [decision] = moderate(pipeline, make_message("this has badword inside"))

    assert decision.action == "mask"
    assert not decision.success
    assert decision.error == INSUFFICIENT_PERMISSIONS
    assert inference.calls == 1


def test_first_acting_stage_wins():
    acted = ModerationDecision(
        action="delete", detection_type="fast_pass", confidence_scores={"x": 1.0}, success=True, rule_triggered="x"
    )
    first = RecordingStage("first", acted)
    second = RecordingStage("second")
    pipeline, _, _, _ = build(stages=[first, second])

    [decision] = moderate(pipeline, make_message())

    assert decision is acted
    assert first.seen == [1]
    assert second.seen == []


def test_no_decision_from_any_stage_yields_none():
    stage = RecordingStage("only")
    pipeline, _, _, _ = build(stages=[stage])

    [decision] = moderate(pipeline, make_message())

    assert decision.action == "none"
    assert decision.success
    assert decision.confidence_scores == {}


def test_reload_rules_is_idempotent():
    pipeline, _, _, _ = build()

    async def run():
        await pipeline.initialize(CONFIG)
        before = pipeline.fast_pass.rules
        await pipeline.reload_rules()
        return before, pipeline.fast_pass.rules

    before, after = asyncio.run(run())

    assert after.fingerprint == before.fingerprint
    assert after.banned_words == before.banned_words


def test_reload_switches_model():
    pipeline, inference, _, _ = build()

    async def run():
        await pipeline.initialize(CONFIG)
        await pipeline.reload(PipelineConfig(guild_id=10, selected_model="llama3", active_policy_pack_id=1))
        await pipeline.moderate(make_message("see you at the meetup"))

    asyncio.run(run())

    assert pipeline.rag.model == "llama3"
    assert inference.kwargs[-1]["model"] == "llama3"


def test_health_status():
    pipeline, _, _, _ = build()
    assert pipeline.get_health_status() == {"initialized": False, "fast_pass_ready": False, "ai_ready": False}

    moderate(pipeline)

    assert pipeline.get_health_status() == {"initialized": True, "fast_pass_ready": True, "ai_ready": True}


def test_start_and_shutdown():
    pipeline, _, _, _ = build()

    async def run():
        pipeline.start()
        running = pipeline.rate_limiter._sweeper.running
        await pipeline.shutdown()
        return running

    assert asyncio.run(run())
    assert not pipeline.rate_limiter._sweeper.running
