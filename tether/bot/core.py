"""
tether.bot.core — Bot Instance & Cog Loader
============================================

**Why this file exists:**
It defines :class:`TetherBot`, a ``commands.Bot`` subclass that:

1. Holds the shared config (``bot.cfg``), the invite reward service
   (``bot.service``) and the per-guild event queue (``bot.events``) so
   every Cog can reach them via ``self.bot.*``.
2. Loads every Cog listed in :data:`EXTENSIONS`.
3. Syncs the slash-command tree on startup (guild-scoped for dev, global
   for production, controlled by the ``DEV_GUILD_ID`` env var).
4. Opens the service in ``setup_hook``.  On the first ready it catalogues
   each guild's invites, runs the startup retroactive pass, then releases
   the held log-mirror backlog.

Intents:
    ``GUILD_MEMBERS`` (privileged) for join/leave/role updates and the
    member list, ``GUILD_INVITES`` for invite create/delete events.
    Message content is not needed.
"""

from __future__ import annotations

import asyncio
import logging
import os

import discord
from discord.ext import commands

from tether.bot.directory import DiscordDirectory
from tether.config import TetherConfig
from tether.services.dispatcher import GuildEventQueue
from tether.services.invite_service import InviteRewardService
from tether.services.log_mirror import LogMirror
from tether.services.persistence import PersistenceGateway

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "tether.bot.cogs.invites",
    "tether.bot.cogs.admin",
    "tether.bot.cogs.tasks",
]


class TetherBot(commands.Bot):
    """Custom Bot subclass that carries project-wide state.

    Parameters
    ----------
    cfg:
        The parsed :class:`TetherConfig` from ``config.yaml``.
    gateway:
        Persistence gateway for ledgers and invite snapshots.
    mirror:
        Optional log mirror; released into ``cfg.log_channel_id`` once the
        startup pass is done.
    """

    def __init__(
        self,
        cfg: TetherConfig,
        gateway: PersistenceGateway,
        mirror: LogMirror | None = None,
    ) -> None:
        intents = discord.Intents.default()
        intents.members = True            # Privileged: join/leave, member list
        intents.invites = True            # Invite create/delete events
        intents.message_content = False
        intents.presences = False

        super().__init__(
            command_prefix=cfg.bot_prefix,
            intents=intents,
            description=f"{cfg.bot_name}: invite tracking and reward roles",
        )

        self.cfg = cfg
        self.directory = DiscordDirectory(self)
        self.service = InviteRewardService(gateway, self.directory, cfg.rules)
        self.events = GuildEventQueue(self.service.handle_event)
        self.mirror = mirror
        self._startup_done = False

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Load all Cog extensions before connecting.

        A Cog that fails to load is logged and skipped.
        """
        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

        await self.service.open()

        if self.mirror is not None:
            self.mirror.start(asyncio.get_running_loop(), self.log_channel)

    async def on_ready(self) -> None:
        """Fired when the bot has connected and the cache is populated."""
        assert self.user is not None
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)

        # on_ready fires again after every reconnect
        if self._startup_done:
            return
        self._startup_done = True

        # --- Slash-command sync ---------------------------------------------
        dev_guild_id = os.getenv("DEV_GUILD_ID")
        if dev_guild_id:
            guild = discord.Object(id=int(dev_guild_id))
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            logger.info("Synced %d commands to dev guild %s", len(synced), dev_guild_id)
        else:
            synced = await self.tree.sync()
            logger.info("Synced %d commands globally", len(synced))

        # --- Catalogue invites + startup retroactive pass -------------------
        for guild in self.guilds:
            try:
                await self.service.prime_guild(guild.id)
                await self.service.run_retroactive_pass(guild.id)
            except Exception:
                logger.exception(
                    "Startup pass failed for guild %s", guild.id,
                    extra={"guild_id": guild.id},
                )

        # --- Flush the startup backlog to the log channel -------------------
        if self.mirror is not None:
            sent = await self.mirror.release(self.log_channel())
            logger.info("Startup log batch sent (%d messages)", sent)

    async def on_guild_join(self, guild: discord.Guild) -> None:
        """Catalogue invites for a guild the bot was just added to."""
        try:
            await self.service.prime_guild(guild.id)
        except Exception:
            logger.exception(
                "Could not catalogue invites for new guild %s", guild.id,
                extra={"guild_id": guild.id},
            )

    async def close(self) -> None:
        """Graceful shutdown: stop the event queue and flush state first."""
        logger.info("Bot shutting down…")
        await self.events.stop()
        try:
            await self.service.close()
        except Exception:
            logger.exception("Could not flush invite state on shutdown")
        if self.mirror is not None:
            await self.mirror.flush(self.log_channel())
            self.mirror.stop()
        await super().close()

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------
    def log_channel(self) -> discord.abc.Messageable | None:
        """The configured log-mirror channel, if it is visible to the bot."""
        if self.cfg.log_channel_id is None:
            return None
        channel = self.get_channel(self.cfg.log_channel_id)
        if isinstance(channel, discord.abc.Messageable):
            return channel
        return None
