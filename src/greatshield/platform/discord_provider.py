from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional, Sequence

import discord

from ..errors import ActionExecutionError
from ..interfaces import Notice
from ..moderation.models import ChatMessage, MessageAttachment, MessageAuthor

log = logging.getLogger("greatshield.discord")

RESTRICTION_ROLE_COLOR = 0x2C2F33

RESTRICTION_OVERWRITE = discord.PermissionOverwrite(
    send_messages=False,
    add_reactions=False,
    speak=False,
    use_voice_activation=False,
)


def chat_message_from_discord(message: discord.Message, bot_user_id: Optional[int] = None) -> ChatMessage:
    """Normalize a discord.Message for the moderation pipeline."""
    channel_name = getattr(message.channel, "name", "") or ""
    return ChatMessage(
        id=message.id,
        guild_id=message.guild.id if message.guild else 0,
        channel_id=message.channel.id,
        author=MessageAuthor(
            id=message.author.id,
            username=message.author.name,
            bot=message.author.bot,
            is_self=bot_user_id is not None and message.author.id == bot_user_id,
        ),
        content=message.content,
        created_at=message.created_at,
        channel_name=channel_name,
        attachments=tuple(MessageAttachment(name=a.filename, size=a.size) for a in message.attachments),
        raw=message,
    )


def build_embed(notice: Notice) -> discord.Embed:
    embed = discord.Embed(
        title=notice.title,
        description=notice.description,
        color=notice.color,
        timestamp=discord.utils.utcnow(),
    )
    for name, value, inline in notice.fields:
        embed.add_field(name=name, value=value[:1024] or "-", inline=inline)
    if notice.footer:
        embed.set_footer(text=notice.footer)
    return embed


class DiscordActionProvider:
    """Platform action provider backed by a discord.py client."""

    def __init__(self, client: discord.Client) -> None:
        self.client = client

    def _guild(self, guild_id: int) -> discord.Guild:
        guild = self.client.get_guild(guild_id)
        if guild is None:
            raise ActionExecutionError("lookup", f"Guild {guild_id} not found")
        return guild

    async def _messageable(self, channel_id: int) -> discord.abc.Messageable:
        channel = self.client.get_channel(channel_id)
        if channel is None:
            channel = await self.client.fetch_channel(channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            raise ActionExecutionError("lookup", f"Channel {channel_id} cannot receive messages")
        return channel

    async def _member(self, guild: discord.Guild, user_id: int) -> discord.Member:
        member = guild.get_member(user_id)
        if member is None:
            try:
                member = await guild.fetch_member(user_id)
            except discord.NotFound as e:
                raise ActionExecutionError("lookup", f"Member {user_id} not found") from e
        return member

    async def has_capabilities(self, message: ChatMessage, scope: str, capabilities: Sequence[str]) -> bool:
        guild = self.client.get_guild(message.guild_id)
        if guild is None or guild.me is None:
            return False
        me = guild.me
        if scope == "guild":
            perms = me.guild_permissions
        else:
            channel = guild.get_channel_or_thread(message.channel_id)
            if channel is None:
                return False
            perms = channel.permissions_for(me)
        return all(getattr(perms, cap, False) for cap in capabilities)

    async def delete_message(self, message: ChatMessage) -> None:
        try:
            if isinstance(message.raw, discord.Message):
                await message.raw.delete()
                return
            channel = await self._messageable(message.channel_id)
            if isinstance(channel, (discord.TextChannel, discord.Thread, discord.VoiceChannel)):
                await channel.get_partial_message(message.id).delete()
        except discord.NotFound:
            log.debug("Message %s already deleted", message.id)

    async def send_notice(self, channel_id: int, notice: Notice) -> Optional[int]:
        channel = await self._messageable(channel_id)
        content = " ".join(f"<@{uid}>" for uid in notice.mentions) or None
        sent = await channel.send(
            content=content,
            embed=build_embed(notice),
            allowed_mentions=discord.AllowedMentions(users=True, roles=False, everyone=False),
        )
        return sent.id

    async def send_text(self, channel_id: int, text: str, *, reply_to: Optional[int] = None) -> Optional[int]:
        channel = await self._messageable(channel_id)
        reference = None
        if reply_to is not None:
            reference = discord.MessageReference(message_id=reply_to, channel_id=channel_id, fail_if_not_exists=False)
        sent = await channel.send(
            text[:2000],
            reference=reference,
            allowed_mentions=discord.AllowedMentions(users=True, roles=False, everyone=False),
        )
        return sent.id

    async def send_direct(self, user_id: int, notice: Notice) -> bool:
        try:
            user = self.client.get_user(user_id) or await self.client.fetch_user(user_id)
            await user.send(embed=build_embed(notice))
            return True
        except (discord.Forbidden, discord.NotFound, discord.HTTPException):
            return False

    async def ensure_restriction_role(self, guild_id: int, role_name: str) -> int:
        guild = self._guild(guild_id)
        role = discord.utils.get(guild.roles, name=role_name)
        if role is not None:
            return role.id

        role = await guild.create_role(
            name=role_name,
            color=discord.Color(RESTRICTION_ROLE_COLOR),
            reason="Greatshield shadowban role",
        )
        for channel in guild.channels:
            if isinstance(channel, discord.CategoryChannel):
                continue
            try:
                await channel.set_permissions(role, overwrite=RESTRICTION_OVERWRITE, reason="Greatshield shadowban role")
            except (discord.Forbidden, discord.HTTPException) as e:
                log.warning("Could not restrict channel %s for role %s: %r", channel.id, role.id, e)
        log.info("Created restriction role %s in guild %s", role.id, guild_id)
        return role.id

    async def assign_role(self, guild_id: int, user_id: int, role_id: int, *, reason: str) -> None:
        guild = self._guild(guild_id)
        role = guild.get_role(role_id)
        if role is None:
            raise ActionExecutionError("shadowban", f"Role {role_id} not found")
        member = await self._member(guild, user_id)
        await member.add_roles(role, reason=reason)

    async def timeout_member(self, guild_id: int, user_id: int, seconds: int, *, reason: str) -> None:
        guild = self._guild(guild_id)
        member = await self._member(guild, user_id)
        await member.timeout(timedelta(seconds=seconds), reason=reason)

    async def list_moderators(self, guild_id: int, limit: int = 3) -> list[int]:
        guild = self._guild(guild_id)
        mods = [m for m in guild.members if not m.bot and m.guild_permissions.manage_messages]
        online = [m for m in mods if m.status == discord.Status.online]
        return [m.id for m in (online or mods)[:limit]]

    async def delete_sent_message(self, channel_id: int, message_id: int) -> None:
        channel = await self._messageable(channel_id)
        if not isinstance(channel, (discord.TextChannel, discord.Thread, discord.VoiceChannel)):
            return
        try:
            await channel.get_partial_message(message_id).delete()
        except discord.NotFound:
            pass
