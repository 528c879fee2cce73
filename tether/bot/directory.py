"""
tether.bot.directory — discord.py Guild Directory
==================================================

The production :class:`~tether.engine.directory.GuildDirectory`: every
call the engine makes about invites, members and roles lands here and is
translated into discord.py.

Error mapping:
    - ``discord.NotFound`` on a member lookup → ``None`` (not in guild).
    - ``discord.Forbidden`` / ``discord.HTTPException`` → :class:`DirectoryError`.
    - An unknown guild (bot not a member, cache not ready) → ``DirectoryError``.
"""

from __future__ import annotations

import logging

import discord

from tether.engine.directory import MemberState
from tether.engine.snapshot import InviteRecord
from tether.errors import DirectoryError

logger = logging.getLogger(__name__)

AUDIT_REASON = "Invite reward rules"


def member_state(member: discord.Member) -> MemberState:
    """Project a discord.py member onto the engine's :class:`MemberState`."""
    return MemberState(
        id=member.id,
        role_ids=frozenset(role.id for role in member.roles),
        display_name=member.display_name,
    )


def invite_record(invite: discord.Invite) -> InviteRecord:
    """Project a discord.py invite onto an :class:`InviteRecord`."""
    return InviteRecord(
        code=invite.code,
        uses=invite.uses or 0,
        inviter_id=invite.inviter.id if invite.inviter else None,
        max_uses=invite.max_uses,
        expires_at=invite.expires_at,
        created_at=invite.created_at,
        temporary=bool(invite.temporary),
        channel_id=invite.channel.id if invite.channel else None,
    )


class DiscordDirectory:
    """Guild directory backed by a connected ``discord.Client``."""

    def __init__(self, client: discord.Client) -> None:
        self._client = client

    def _guild(self, guild_id: int) -> discord.Guild:
        guild = self._client.get_guild(guild_id)
        if guild is None:
            raise DirectoryError(f"Guild {guild_id} is not available")
        return guild

    async def _member(self, guild: discord.Guild, user_id: int) -> discord.Member | None:
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user_id)
        except discord.NotFound:
            return None
        except discord.HTTPException as exc:
            raise DirectoryError(f"Could not fetch member {user_id} in guild {guild.id}") from exc

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    async def list_invites(self, guild_id: int) -> list[InviteRecord]:
        guild = self._guild(guild_id)
        try:
            invites = await guild.invites()
        except discord.HTTPException as exc:
            raise DirectoryError(f"Could not list invites for guild {guild_id}") from exc
        return [invite_record(invite) for invite in invites]

    async def fetch_member(self, guild_id: int, user_id: int) -> MemberState | None:
        member = await self._member(self._guild(guild_id), user_id)
        return member_state(member) if member is not None else None

    async def list_members(self, guild_id: int) -> list[MemberState]:
        guild = self._guild(guild_id)
        if not guild.chunked:
            try:
                await guild.chunk()
            except discord.HTTPException as exc:
                raise DirectoryError(f"Could not fetch members for guild {guild_id}") from exc
        return [member_state(member) for member in guild.members]

    def resolve_role(
        self, guild_id: int, role_id: int | None = None, name: str | None = None,
    ) -> int | None:
        guild = self._client.get_guild(guild_id)
        if guild is None:
            return None
        if role_id is not None:
            role = guild.get_role(role_id)
            if role is not None:
                return role.id
        if name:
            role = discord.utils.get(guild.roles, name=name)
            if role is not None:
                return role.id
        return None

    # -------------------------------------------------------------------
    # Role mutations
    # -------------------------------------------------------------------
    async def add_role(self, guild_id: int, user_id: int, role_id: int) -> None:
        guild = self._guild(guild_id)
        member = await self._member(guild, user_id)
        if member is None:
            raise DirectoryError(f"Member {user_id} is not in guild {guild_id}")
        try:
            await member.add_roles(discord.Object(id=role_id), reason=AUDIT_REASON)
        except discord.HTTPException as exc:
            raise DirectoryError(
                f"Could not add role {role_id} to {user_id} in guild {guild_id}: {exc}"
            ) from exc

    async def remove_role(self, guild_id: int, user_id: int, role_id: int) -> None:
        guild = self._guild(guild_id)
        member = await self._member(guild, user_id)
        if member is None:
            raise DirectoryError(f"Member {user_id} is not in guild {guild_id}")
        try:
            await member.remove_roles(discord.Object(id=role_id), reason=AUDIT_REASON)
        except discord.HTTPException as exc:
            raise DirectoryError(
                f"Could not remove role {role_id} from {user_id} in guild {guild_id}: {exc}"
            ) from exc
