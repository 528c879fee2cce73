"""
tether.bot.cogs.tasks — Periodic Background Tasks
==================================================

Scheduled jobs that run on ``discord.ext.tasks`` loops:

- **Retroactive pass** — every ``retroactive_interval_hours`` (default
  24), recomputes every inviter's reward roles in every guild so drift
  from missed events or manual role edits is corrected.

The first iteration is skipped: the bot already runs a pass per guild
on startup.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discord.ext import commands, tasks

from tether.constants import DEFAULT_RETROACTIVE_INTERVAL_HOURS

if TYPE_CHECKING:
    from tether.bot.core import TetherBot

logger = logging.getLogger(__name__)


class PeriodicTasks(commands.Cog):
    """Cog for scheduled background maintenance tasks."""

    def __init__(self, bot: TetherBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        """Start task loops when the cog is loaded."""
        self.retroactive_loop.change_interval(hours=self.bot.cfg.retroactive_interval_hours)
        self.retroactive_loop.start()

    async def cog_unload(self) -> None:
        """Cancel task loops on unload."""
        self.retroactive_loop.cancel()

    # -------------------------------------------------------------------
    # Retroactive pass
    # -------------------------------------------------------------------
    @tasks.loop(hours=DEFAULT_RETROACTIVE_INTERVAL_HOURS)
    async def retroactive_loop(self):
        """Run the retroactive pass for every guild the bot is in."""
        if self.retroactive_loop.current_loop == 0:
            return

        for guild in self.bot.guilds:
            try:
                summary = await self.bot.service.run_retroactive_pass(guild.id)
                logger.info(
                    "Scheduled retroactive pass for guild %d: %s",
                    guild.id, summary.to_dict(),
                )
            except Exception:
                logger.exception(
                    "Retroactive task failed for guild %d", guild.id,
                    extra={"task": "retroactive", "guild_id": guild.id},
                )

    @retroactive_loop.before_loop
    async def _wait_retroactive(self):
        await self.bot.wait_until_ready()


async def setup(bot: TetherBot) -> None:
    await bot.add_cog(PeriodicTasks(bot))
