from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from greatshield.bot import GreatshieldBot
from greatshield.cogs.guardian import GuardianCog
from greatshield.database import initialize_database
from greatshield.moderation.models import ModerationDecision, PipelineConfig
from greatshield.moderation.pipeline import ModerationPipeline
from greatshield.services.moderation_log_store import ModerationLogStore
from greatshield.services.policy_store import PolicyStore
from greatshield.testing.fakes import FakeClock, FakeInferenceProvider, FakePlatform, make_message

CONFIG = PipelineConfig(guild_id=10, selected_model="phi", active_policy_pack_id=1)


class FakeResponse:
    def __init__(self) -> None:
        self.deferred = False
        self.sent: list[str] = []

    async def defer(self, **kwargs) -> None:
        self.deferred = True

    async def send_message(self, content: str, **kwargs) -> None:
        self.sent.append(content)


class FakeFollowup:
    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send(self, content=None, **kwargs) -> None:
        self.sent.append({"content": content, **kwargs})


def make_interaction(manage_guild: bool = True):
    return SimpleNamespace(
        user=SimpleNamespace(id=30, guild_permissions=SimpleNamespace(manage_guild=manage_guild)),
        guild=SimpleNamespace(id=10),
        response=FakeResponse(),
        followup=FakeFollowup(),
    )


@pytest.fixture
def cog(tmp_path):
    db_path = str(tmp_path / "greatshield.sqlite3")
    policy_store = PolicyStore(db_path)
    log_store = ModerationLogStore(db_path)
    pipeline = ModerationPipeline(policy_store, FakeInferenceProvider(), FakePlatform(), clock=FakeClock())

    async def pipeline_config():
        return CONFIG

    async def setup():
        await initialize_database(db_path, [policy_store, log_store])
        await policy_store.seed_defaults()
        await pipeline.initialize(CONFIG)

    asyncio.run(setup())
    bot = SimpleNamespace(
        pipeline=pipeline,
        policy_store=policy_store,
        moderation_log_store=log_store,
        pipeline_config=pipeline_config,
    )
    return GuardianCog(bot)


def test_status_reports_pipeline_and_pack(cog):
    interaction = make_interaction()

    asyncio.run(GuardianCog.status.callback(cog, interaction))

    assert interaction.response.deferred
    embed = interaction.followup.sent[0]["embed"]
    assert embed.title == "Greatshield Status"
    assert "**Initialized:** OK" in embed.fields[0].value
    assert "**Pack:** Strict Moderation (#1)" in embed.fields[1].value
    assert "**Model:** phi" in embed.fields[1].value


def test_policy_switch_activates_pack_and_reloads(cog):
    interaction = make_interaction()

    async def run():
        await GuardianCog.policy.callback(cog, interaction, 2)
        return await cog.bot.policy_store.get_active_policy_pack()

    active = asyncio.run(run())

    assert interaction.followup.sent[0]["content"] == "Policy pack #2 is now active."
    assert active.name == "Balanced Moderation"
    assert cog.bot.pipeline.initialized
    assert cog.bot.pipeline.config.active_policy_pack_id == 2


def test_unknown_pack_leaves_pipeline_alone(cog):
    message = asyncio.run(cog.switch_policy_pack(99))

    assert message == "Policy pack #99 not found."
    assert cog.bot.pipeline.config.active_policy_pack_id == 1


def test_policy_switch_requires_manage_guild(cog):
    interaction = make_interaction(manage_guild=False)

    asyncio.run(GuardianCog.policy.callback(cog, interaction, 2))

    assert interaction.response.sent == ["Requires Manage Server."]
    assert not interaction.response.deferred
    assert cog.bot.pipeline.config.active_policy_pack_id == 1


def test_reload_rules_needs_an_initialized_pipeline(cog):
    ready = make_interaction()
    asyncio.run(GuardianCog.reload.callback(cog, ready))

    cog.bot.pipeline = ModerationPipeline(cog.bot.policy_store, FakeInferenceProvider(), FakePlatform())
    idle = make_interaction()
    asyncio.run(GuardianCog.reload.callback(cog, idle))

    assert ready.followup.sent[0]["content"] == "Fast-pass rules reloaded."
    assert idle.followup.sent[0]["content"] == "Pipeline is not initialized; use /guardian policy."


def test_logs_lists_recent_decisions(cog):
    decision = ModerationDecision(
        action="mask",
        detection_type="fast_pass",
        confidence_scores={"banned_word:badword": 1.0},
        success=True,
        rule_triggered="banned_word:badword",
    )
    interaction = make_interaction()

    async def run():
        await cog.bot.moderation_log_store.record(make_message("badword"), decision)
        await GuardianCog.logs.callback(cog, interaction, 5)

    asyncio.run(run())

    [line] = interaction.followup.sent[0]["content"].splitlines()
    assert line.endswith("mask (ok) user=30 rule=banned_word:badword")


def test_reset_user_clears_rate_limit_state(cog):
    limiter = cog.bot.pipeline.rate_limiter
    asyncio.run(limiter.check(30, 20))
    interaction = make_interaction()
    member = SimpleNamespace(id=30, mention="<@30>")

    asyncio.run(GuardianCog.reset_user.callback(cog, interaction, member))

    assert interaction.response.sent == ["Rate limits reset for <@30>."]
    assert limiter.statistics()["user_entries"] == 0


def test_edits_with_new_text_are_moderated_again():
    seen = []

    async def moderate_message(message):
        seen.append(message.id)

    bot = SimpleNamespace(moderate_message=moderate_message)
    before = SimpleNamespace(id=1, content="nice weather")
    unfurled = SimpleNamespace(id=1, content="nice weather")
    edited = SimpleNamespace(id=1, content="now with badword")

    async def run():
        await GreatshieldBot.on_message_edit(bot, before, unfurled)
        await GreatshieldBot.on_message_edit(bot, before, edited)

    asyncio.run(run())

    assert seen == [1]
