"""
tether.bot.cogs.invites — Gateway Event Capture
================================================

Normalizes the gateway events the invite pipeline cares about into typed
:mod:`tether.engine.events` and submits them to the bot's per-guild event
queue.  Nothing is processed inline here; ordering and error isolation
belong to :class:`~tether.services.dispatcher.GuildEventQueue`.

Requires the GUILD_MEMBERS (privileged) and GUILD_INVITES intents.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from tether.engine.events import (
    InviteCreated,
    InviteDeleted,
    MemberJoined,
    MemberLeft,
    MemberRolesChanged,
)

if TYPE_CHECKING:
    from tether.bot.core import TetherBot

logger = logging.getLogger(__name__)


def _role_ids(member: discord.Member) -> frozenset[int]:
    return frozenset(role.id for role in member.roles)


class Invites(commands.Cog, name="Invites"):
    """Feeds member and invite gateway events into the invite pipeline."""

    def __init__(self, bot: TetherBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member) -> None:
        """GUILD_MEMBER_ADD → MemberJoined."""
        try:
            if member.bot:
                return
            self.bot.events.submit(MemberJoined(guild_id=member.guild.id, user_id=member.id))
            logger.debug("Queued join of %s (ID: %d)", member.display_name, member.id)
        except Exception:
            logger.exception(
                "Error queueing member_join for %s", member.id,
                extra={"event_type": "member_join", "user_id": member.id},
            )

    @commands.Cog.listener()
    async def on_member_remove(self, member: discord.Member) -> None:
        """GUILD_MEMBER_REMOVE → MemberLeft."""
        try:
            if member.bot:
                return
            self.bot.events.submit(MemberLeft(guild_id=member.guild.id, user_id=member.id))
        except Exception:
            logger.exception(
                "Error queueing member_leave for %s", member.id,
                extra={"event_type": "member_leave", "user_id": member.id},
            )

    @commands.Cog.listener()
    async def on_member_update(self, before: discord.Member, after: discord.Member) -> None:
        """GUILD_MEMBER_UPDATE with a role change → MemberRolesChanged."""
        try:
            old_roles, new_roles = _role_ids(before), _role_ids(after)
            if old_roles == new_roles or after.bot:
                return
            self.bot.events.submit(MemberRolesChanged(
                guild_id=after.guild.id,
                user_id=after.id,
                old_roles=old_roles,
                new_roles=new_roles,
            ))
        except Exception:
            logger.exception(
                "Error queueing role change for %s", after.id,
                extra={"event_type": "member_update", "user_id": after.id},
            )

    @commands.Cog.listener()
    async def on_invite_create(self, invite: discord.Invite) -> None:
        """INVITE_CREATE → InviteCreated."""
        if invite.guild is None:
            return
        try:
            self.bot.events.submit(InviteCreated(
                guild_id=invite.guild.id,
                code=invite.code,
                inviter_id=invite.inviter.id if invite.inviter else None,
            ))
        except Exception:
            logger.exception(
                "Error queueing invite_create for %s", invite.code,
                extra={"event_type": "invite_create"},
            )

    @commands.Cog.listener()
    async def on_invite_delete(self, invite: discord.Invite) -> None:
        """INVITE_DELETE → InviteDeleted."""
        if invite.guild is None:
            return
        try:
            self.bot.events.submit(InviteDeleted(
                guild_id=invite.guild.id,
                code=invite.code,
                inviter_id=invite.inviter.id if invite.inviter else None,
            ))
        except Exception:
            logger.exception(
                "Error queueing invite_delete for %s", invite.code,
                extra={"event_type": "invite_delete"},
            )


async def setup(bot: TetherBot) -> None:
    await bot.add_cog(Invites(bot))
