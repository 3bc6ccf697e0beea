from __future__ import annotations

import logging
import time
from typing import Optional

import discord
from discord.ext import commands

from .cogs.guardian import GuardianCog
from .config import Settings
from .database import initialize_database
from .errors import ConfigurationError
from .inference.ollama import OllamaClient
from .moderation.log_notifier import ModerationLogNotifier
from .moderation.models import PipelineConfig
from .moderation.pipeline import ModerationPipeline
from .observability import observability
from .platform.discord_provider import DiscordActionProvider, chat_message_from_discord
from .services.context_store import MessageContextStore
from .services.moderation_log_store import ModerationLogStore
from .services.policy_store import PolicyStore
from .services.violation_store import ViolationStore

log = logging.getLogger("greatshield.bot")

CONTEXT_RETENTION_SECONDS = 7 * 24 * 3600


class GreatshieldBot(commands.Bot):
    def __init__(self, settings: Settings) -> None:
        intents = discord.Intents.default()
        intents.members = True
        intents.presences = True
        intents.message_content = bool(settings.message_content_intent)

        log.info(
            "INTENTS: guilds=%s members=%s presences=%s message_content=%s",
            intents.guilds,
            intents.members,
            intents.presences,
            intents.message_content,
        )

        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            allowed_mentions=discord.AllowedMentions(everyone=False, roles=False, users=True),
            help_command=None,
        )

        self.settings = settings

        self.policy_store = PolicyStore(settings.sqlite_path)
        self.context_store = MessageContextStore(settings.sqlite_path)
        self.violation_store = ViolationStore(settings.sqlite_path)
        self.moderation_log_store = ModerationLogStore(settings.sqlite_path)

        self.ollama = OllamaClient(
            settings.ollama_host,
            settings.ollama_model,
            timeout_seconds=settings.ollama_timeout_seconds,
        )
        self.action_provider = DiscordActionProvider(self)
        self.pipeline = ModerationPipeline(
            self.policy_store,
            self.ollama,
            self.action_provider,
            context=self.context_store,
            violation_sink=self.violation_store,
            observability=observability,
            rate_limit_config=settings.rate_limit_config(),
            sanitizer_config=settings.sanitizer_config(),
            rag_config=settings.rag_config(),
            escalation_expiry_seconds=settings.escalation_expiry_seconds,
            temp_mute_minutes=settings.rate_temp_mute_minutes,
            temp_ban_hours=settings.rate_temp_ban_hours,
        )
        self.mod_log = ModerationLogNotifier(self.action_provider, settings.mod_log_channel_id)

    async def setup_hook(self) -> None:
        started = time.perf_counter()
        await initialize_database(
            self.settings.sqlite_path,
            [self.policy_store, self.context_store, self.violation_store, self.moderation_log_store],
        )
        observability.log_startup_event("database", "OK")

        if await self.policy_store.seed_defaults():
            log.info("Seeded default policy packs")
        await self.context_store.prune_older_than(CONTEXT_RETENTION_SECONDS)

        config = await self.pipeline_config()
        try:
            await self.pipeline.initialize(config)
            observability.log_startup_event("pipeline", "OK")
        except ConfigurationError as e:
            # Stay connected; an admin can fix the model or pack and restart.
            log.error("Moderation pipeline not initialized: %s", e)
            observability.log_startup_event("pipeline", "FAILED", {"error": str(e)})

        self.pipeline.start()

        await self.add_cog(GuardianCog(self))
        await self.sync_commands()
        log.info("Startup complete in %.0fms", (time.perf_counter() - started) * 1000)

    async def sync_commands(self) -> None:
        try:
            if self.settings.guild_id:
                guild = discord.Object(id=self.settings.guild_id)
                self.tree.copy_global_to(guild=guild)
                await self.tree.sync(guild=guild)
                log.info("Commands synced to guild %d", self.settings.guild_id)
            else:
                await self.tree.sync()
                log.info("Commands synced globally")
        except discord.HTTPException:
            # Moderation does not depend on slash commands.
            log.exception("Command sync failed")

    async def pipeline_config(self) -> PipelineConfig:
        pack_id: Optional[int] = self.settings.active_policy_pack_id or None
        if pack_id is None:
            active = await self.policy_store.get_active_policy_pack()
            pack_id = active.id if active else None
        return PipelineConfig(
            guild_id=self.settings.guild_id,
            selected_model=self.settings.ollama_model or None,
            active_policy_pack_id=pack_id,
            mod_log_channel_id=self.settings.mod_log_channel_id or None,
        )

    async def on_message(self, message: discord.Message) -> None:
        await self.moderate_message(message)

    async def on_message_edit(self, before: discord.Message, after: discord.Message) -> None:
        # Embed unfurls also fire edits; only re-check when the text changed.
        if before.content == after.content:
            return
        log.debug(
            "Message %s edited old_len=%d new_len=%d", after.id, len(before.content or ""), len(after.content or "")
        )
        await self.moderate_message(after)

    async def moderate_message(self, message: discord.Message) -> None:
        if message.guild is None or message.author.bot or message.is_system():
            return
        if self.settings.guild_id and message.guild.id != self.settings.guild_id:
            return
        if not message.content and not message.attachments:
            return

        chat = chat_message_from_discord(message, self.user.id if self.user else None)
        try:
            await self.context_store.add_message(
                chat.channel_id,
                chat.id,
                chat.author.id,
                chat.text,
                chat.created_at.isoformat(timespec="seconds"),
            )
        except Exception:
            log.exception("Failed to record message context %s", chat.id)

        decision = await self.pipeline.moderate(chat)
        if decision is None or decision.action == "none":
            return

        try:
            await self.moderation_log_store.record(chat, decision)
        except Exception:
            log.exception("Failed to persist moderation decision for message %s", chat.id)
        await self.mod_log.notify(chat, decision)

    async def close(self) -> None:
        try:
            await self.pipeline.shutdown()
            await self.ollama.close()
        finally:
            await super().close()
