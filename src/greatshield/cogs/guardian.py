from __future__ import annotations

import dataclasses
import logging

import discord
from discord import app_commands
from discord.ext import commands

from ..errors import ConfigurationError
from ..moderation.models import PipelineConfig

log = logging.getLogger("greatshield.cogs.guardian")


def _flag(value: bool) -> str:
    return "OK" if value else "DOWN"


class GuardianCog(commands.Cog):
    """Runtime control of the moderation pipeline: health, policy packs and logs."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot  # type: ignore[assignment]

    guardian = app_commands.Group(name="guardian", description="Greatshield moderation controls")

    @staticmethod
    def _can_manage(interaction: discord.Interaction) -> bool:
        perms = getattr(interaction.user, "guild_permissions", None)
        return bool(perms and perms.manage_guild)

    async def build_status_embed(self) -> discord.Embed:
        pipeline = self.bot.pipeline  # type: ignore[attr-defined]
        health = pipeline.get_health_status()
        config = pipeline.config
        stats = pipeline.rate_limiter.statistics()

        pack_name = "none"
        if config and config.active_policy_pack_id:
            pack = await self.bot.policy_store.get_policy_pack(config.active_policy_pack_id)  # type: ignore[attr-defined]
            pack_name = f"{pack.name} (#{pack.id})" if pack else f"missing (#{config.active_policy_pack_id})"

        healthy = all(health.values())
        embed = discord.Embed(
            title="Greatshield Status",
            color=discord.Color.green() if healthy else discord.Color.orange(),
            timestamp=discord.utils.utcnow(),
        )
        embed.add_field(
            name="Pipeline",
            value=(
                f"**Initialized:** {_flag(health['initialized'])}\n"
                f"**Fast pass:** {_flag(health['fast_pass_ready'])}\n"
                f"**AI analysis:** {_flag(health['ai_ready'])}"
            ),
            inline=False,
        )
        embed.add_field(
            name="Policy",
            value=f"**Pack:** {pack_name}\n**Model:** {(config.selected_model if config else None) or 'none'}",
            inline=False,
        )
        embed.add_field(
            name="Rate limiter",
            value=(
                f"**Tracked users:** {stats['user_entries']}\n"
                f"**Tracked channels:** {stats['channel_entries']}\n"
                f"**Violations:** {stats['total_violations']}"
            ),
            inline=False,
        )
        return embed

    async def switch_policy_pack(self, pack_id: int) -> str:
        """Activate a stored pack and reload the pipeline against it."""
        store = self.bot.policy_store  # type: ignore[attr-defined]
        pipeline = self.bot.pipeline  # type: ignore[attr-defined]
        try:
            await store.set_active_policy_pack(pack_id)
        except KeyError:
            return f"Policy pack #{pack_id} not found."

        current: PipelineConfig = pipeline.config or await self.bot.pipeline_config()  # type: ignore[attr-defined]
        try:
            await pipeline.reload(dataclasses.replace(current, active_policy_pack_id=pack_id))
        except ConfigurationError as e:
            log.error("Pipeline reload failed after switching to pack %s: %s", pack_id, e)
            return f"Policy pack #{pack_id} activated, but the pipeline failed to reload: {e}"
        log.info("Switched active policy pack to %s", pack_id)
        return f"Policy pack #{pack_id} is now active."

    @guardian.command(name="status", description="Show moderation pipeline health")
    async def status(self, interaction: discord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        embed = await self.build_status_embed()
        await interaction.followup.send(embed=embed, ephemeral=True)

    @guardian.command(name="policies", description="List stored policy packs")
    async def policies(self, interaction: discord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        packs = await self.bot.policy_store.list_policy_packs()  # type: ignore[attr-defined]
        if not packs:
            await interaction.followup.send("No policy packs stored.", ephemeral=True)
            return
        lines = [f"#{p.id} {'*' if p.active else ' '} {p.name}" for p in packs]
        await interaction.followup.send("```\n" + "\n".join(lines) + "\n```", ephemeral=True)

    @guardian.command(name="policy", description="Switch the active policy pack")
    @app_commands.describe(pack_id="ID from /guardian policies")
    async def policy(self, interaction: discord.Interaction, pack_id: int) -> None:
        if not self._can_manage(interaction):
            await interaction.response.send_message("Requires Manage Server.", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        await interaction.followup.send(await self.switch_policy_pack(int(pack_id)), ephemeral=True)

    @guardian.command(name="reload", description="Re-read banned words and blocked URLs")
    async def reload(self, interaction: discord.Interaction) -> None:
        if not self._can_manage(interaction):
            await interaction.response.send_message("Requires Manage Server.", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        pipeline = self.bot.pipeline  # type: ignore[attr-defined]
        if not pipeline.initialized:
            await interaction.followup.send("Pipeline is not initialized; use /guardian policy.", ephemeral=True)
            return
        await pipeline.reload_rules()
        await interaction.followup.send("Fast-pass rules reloaded.", ephemeral=True)

    @guardian.command(name="logs", description="Show recent moderation actions")
    async def logs(self, interaction: discord.Interaction, limit: app_commands.Range[int, 1, 20] = 5) -> None:
        if not self._can_manage(interaction):
            await interaction.response.send_message("Requires Manage Server.", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        guild_id = interaction.guild.id if interaction.guild else None
        records = await self.bot.moderation_log_store.recent(int(limit), guild_id=guild_id)  # type: ignore[attr-defined]
        if not records:
            await interaction.followup.send("No moderation actions logged.", ephemeral=True)
            return
        lines = []
        for r in records:
            status = "ok" if r.success else "failed"
            lines.append(f"{r.processed_at_iso} {r.action} ({status}) user={r.user_id} rule={r.rule_triggered or '-'}")
        await interaction.followup.send("\n".join(lines), ephemeral=True)

    @guardian.command(name="reset_user", description="Clear a member's rate-limit history")
    async def reset_user(self, interaction: discord.Interaction, member: discord.Member) -> None:
        if not self._can_manage(interaction):
            await interaction.response.send_message("Requires Manage Server.", ephemeral=True)
            return
        self.bot.pipeline.rate_limiter.reset_user(member.id)  # type: ignore[attr-defined]
        await interaction.response.send_message(f"Rate limits reset for {member.mention}.", ephemeral=True)
