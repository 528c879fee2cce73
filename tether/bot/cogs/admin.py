"""
tether.bot.cogs.admin — Admin Slash Commands
=============================================

Discord slash commands for server admins:
- /add-invite — record an inviter → invitee mapping by hand
- /remove-invite — drop an inviter → invitee mapping
- /list-invites — show everyone an inviter is credited with
- /reconcile-invites — run the retroactive pass for this guild now

Usable by members with Administrator or Manage Guild, or the configured
``admin_role_id``.  Every reply is ephemeral.  Mutations take the same
guild lock and reconciliation path as live gateway events.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from tether.constants import chunk_lines
from tether.errors import PersistenceError

if TYPE_CHECKING:
    from tether.bot.core import TetherBot

logger = logging.getLogger(__name__)


def has_admin_access(member: discord.Member | discord.User, admin_role_id: int | None) -> bool:
    """Administrator, Manage Guild, or the configured admin role."""
    perms = getattr(member, "guild_permissions", None)
    if perms is not None and (perms.administrator or perms.manage_guild):
        return True
    if admin_role_id is None:
        return False
    return any(role.id == admin_role_id for role in getattr(member, "roles", ()))


def is_admin():
    """Decorator that gates a command behind :func:`has_admin_access`."""
    async def predicate(interaction: discord.Interaction) -> bool:
        bot: TetherBot = interaction.client  # type: ignore[assignment]
        if interaction.guild is None or not interaction.user:
            return False
        return has_admin_access(interaction.user, bot.cfg.admin_role_id)
    return app_commands.check(predicate)


def invitee_lines(
    inviter_label: str,
    invitee_ids: list[int],
    display_name: Callable[[int], str | None],
) -> list[str]:
    """Render the /list-invites body; absent invitees are marked."""
    if not invitee_ids:
        return [f"{inviter_label} has no recorded invitees."]
    lines = [f"{inviter_label} invited {len(invitee_ids)} member(s):"]
    for invitee_id in invitee_ids:
        name = display_name(invitee_id)
        if name is None:
            lines.append(f"- {invitee_id} (not in guild)")
        else:
            lines.append(f"- {name} ({invitee_id})")
    return lines


class Admin(commands.Cog, name="Admin"):
    """Invite ledger administration commands."""

    def __init__(self, bot: TetherBot) -> None:
        self.bot = bot

    # -------------------------------------------------------------------
    # /add-invite
    # -------------------------------------------------------------------
    @app_commands.command(name="add-invite", description="Credit an inviter with an invitee.")
    @app_commands.describe(inviter="Member who gets the credit", invitee="Member they invited")
    @app_commands.guild_only()
    @is_admin()
    async def add_invite(
        self,
        interaction: discord.Interaction,
        inviter: discord.User,
        invitee: discord.User,
    ) -> None:
        assert interaction.guild_id is not None
        if inviter.id == invitee.id:
            await interaction.response.send_message(
                "❌ A member cannot invite themselves.", ephemeral=True,
            )
            return

        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            result = await self.bot.service.add_mapping(
                interaction.guild_id, inviter.id, invitee.id,
            )
        except PersistenceError:
            logger.exception("add-invite failed to persist")
            await interaction.followup.send(
                "❌ Could not save the ledger; nothing was changed.", ephemeral=True,
            )
            return

        if not result.created:
            message = f"ℹ️ {invitee.mention} is already credited to {inviter.mention}."
        elif result.previous_inviter is not None:
            message = (
                f"✅ Moved {invitee.mention} to {inviter.mention} "
                f"(was <@{result.previous_inviter}>)."
            )
        else:
            message = f"✅ Credited {inviter.mention} with inviting {invitee.mention}."
        await interaction.followup.send(message, ephemeral=True)

    # -------------------------------------------------------------------
    # /remove-invite
    # -------------------------------------------------------------------
    @app_commands.command(name="remove-invite", description="Remove an inviter → invitee credit.")
    @app_commands.describe(inviter="Member credited with the invite", invitee="Invited member")
    @app_commands.guild_only()
    @is_admin()
    async def remove_invite(
        self,
        interaction: discord.Interaction,
        inviter: discord.User,
        invitee: discord.User,
    ) -> None:
        assert interaction.guild_id is not None
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            found = await self.bot.service.remove_mapping(
                interaction.guild_id, inviter.id, invitee.id,
            )
        except PersistenceError:
            logger.exception("remove-invite failed to persist")
            await interaction.followup.send(
                "❌ Could not save the ledger; nothing was changed.", ephemeral=True,
            )
            return

        if found:
            message = f"✅ Removed {invitee.mention} from {inviter.mention}'s invitees."
        else:
            message = f"ℹ️ {invitee.mention} is not credited to {inviter.mention}."
        await interaction.followup.send(message, ephemeral=True)

    # -------------------------------------------------------------------
    # /list-invites
    # -------------------------------------------------------------------
    @app_commands.command(name="list-invites", description="List everyone an inviter brought in.")
    @app_commands.describe(inviter="Member to look up")
    @app_commands.guild_only()
    @is_admin()
    async def list_invites(
        self,
        interaction: discord.Interaction,
        inviter: discord.User,
    ) -> None:
        guild = interaction.guild
        assert guild is not None
        invitee_ids = self.bot.service.list_invitees(guild.id, inviter.id)

        def display_name(user_id: int) -> str | None:
            member = guild.get_member(user_id)
            return member.display_name if member else None

        chunks = chunk_lines(invitee_lines(inviter.display_name, invitee_ids, display_name))
        await interaction.response.send_message(chunks[0], ephemeral=True)
        for chunk in chunks[1:]:
            await interaction.followup.send(chunk, ephemeral=True)

    # -------------------------------------------------------------------
    # /reconcile-invites
    # -------------------------------------------------------------------
    @app_commands.command(
        name="reconcile-invites",
        description="Recompute every inviter's reward roles now.",
    )
    @app_commands.guild_only()
    @is_admin()
    async def reconcile_invites(self, interaction: discord.Interaction) -> None:
        assert interaction.guild_id is not None
        await interaction.response.defer(ephemeral=True, thinking=True)
        summary = await self.bot.service.run_retroactive_pass(interaction.guild_id)
        if summary.aborted:
            await interaction.followup.send(
                "❌ Could not fetch the member list; try again later.", ephemeral=True,
            )
            return
        await interaction.followup.send(
            f"✅ Checked {summary.inviters} inviters ({summary.invitees} invitees): "
            f"+{summary.added} / -{summary.removed} roles, {summary.failed} failed.",
            ephemeral=True,
        )

    # -------------------------------------------------------------------
    # Error handler for missing permissions
    # -------------------------------------------------------------------
    async def cog_app_command_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        if isinstance(error, app_commands.CheckFailure):
            await interaction.response.send_message(
                "🔒 You need Manage Server or the admin role to use this command.",
                ephemeral=True,
            )
        else:
            raise error


async def setup(bot: TetherBot) -> None:
    await bot.add_cog(Admin(bot))
