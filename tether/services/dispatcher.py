"""
tether.services.dispatcher — Per-Guild Event Queues
====================================================

Cog listeners never run the pipeline inline.  They submit a typed event
here, and one worker task per guild drains that guild's queue in order:

- Events for the **same guild** are processed strictly one at a time, in
  arrival order.
- Events for **different guilds** run concurrently.
- A failing event is logged and dropped; the worker moves on to the next
  one, so one bad event never stalls a guild or crashes the bot.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from tether.engine.events import GuildEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[GuildEvent], Awaitable[object]]


class GuildEventQueue:
    """One ``asyncio.Queue`` + worker task per guild.

    Usage::

        queue = GuildEventQueue(service.handle_event)
        queue.submit(MemberJoined(guild_id=..., user_id=...))
        ...
        await queue.join()     # wait until everything submitted is handled
        await queue.stop()
    """

    def __init__(self, handler: EventHandler) -> None:
        self._handler = handler
        self._queues: dict[int, asyncio.Queue[GuildEvent]] = {}
        self._workers: dict[int, asyncio.Task] = {}
        self._stopped = False

    def submit(self, event: GuildEvent) -> None:
        """Enqueue *event*; starts the guild's worker on first use."""
        if self._stopped:
            logger.warning("Dropping %s for guild %d: queue stopped", event.kind, event.guild_id)
            return
        queue = self._queues.get(event.guild_id)
        if queue is None:
            queue = self._queues[event.guild_id] = asyncio.Queue()
            self._workers[event.guild_id] = asyncio.get_running_loop().create_task(
                self._drain(event.guild_id, queue), name=f"guild-events-{event.guild_id}",
            )
        queue.put_nowait(event)

    async def _drain(self, guild_id: int, queue: asyncio.Queue[GuildEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self._handler(event)
            except Exception:
                logger.exception(
                    "Error processing %s in guild %d", event.kind, guild_id,
                    extra={"event_type": event.kind, "guild_id": guild_id},
                )
            finally:
                queue.task_done()

    def pending(self, guild_id: int) -> int:
        queue = self._queues.get(guild_id)
        return queue.qsize() if queue else 0

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def stop(self) -> None:
        """Cancel all workers.  Events still queued are dropped."""
        self._stopped = True
        for task in self._workers.values():
            task.cancel()
        for task in self._workers.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        self._queues.clear()
