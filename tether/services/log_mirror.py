"""
tether.services.log_mirror — Discord Channel Log Mirror
========================================================

Mirrors the bot's log output into a configured Discord channel so admins
can follow attributions and role changes without shell access.

Architecture:
    - :class:`ChannelLogHandler` is a plain ``logging.Handler``; it only
      appends formatted lines to a bounded :class:`LogMirror` buffer and
      never does I/O itself.
    - A background drain task posts whatever is buffered every few
      seconds, packed into code blocks under Discord's message limit.
    - While *held* (startup), nothing is posted.  ``release()`` flushes the
      whole startup backlog as one combined batch.

The core never imports this module: it logs through ``logging`` like
everything else and the handler is attached by the bot entry point.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime

from discord.abc import Messageable

from tether.constants import MESSAGE_CHUNK, chunk_lines

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 2000
DRAIN_INTERVAL_SECONDS = 5

# Records from these loggers are never mirrored: our own send failures
# would loop back, and discord.py's gateway chatter is noise.
_IGNORED_PREFIXES = (__name__, "discord")

# Room for the ``` fences around each chunk
_FENCE_OVERHEAD = 8


class LogMirror:
    """Thread-safe line buffer with hold/release startup batching."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._lines: deque[str] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._held = True
        self._drain_task: asyncio.Task | None = None

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)

    def take(self) -> list[str]:
        """Remove and return everything buffered."""
        with self._lock:
            lines = list(self._lines)
            self._lines.clear()
        return lines

    @property
    def held(self) -> bool:
        return self._held

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._lines)

    def hold(self) -> None:
        self._held = True

    async def release(self, channel: Messageable | None) -> int:
        """Stop holding and flush the backlog as one combined batch."""
        self._held = False
        return await self.flush(channel)

    async def flush(self, channel: Messageable | None) -> int:
        """Post buffered lines to *channel*; returns messages sent."""
        if channel is None or self._held:
            return 0
        lines = self.take()
        if not lines:
            return 0
        sent = 0
        for chunk in chunk_lines(lines, MESSAGE_CHUNK - _FENCE_OVERHEAD):
            try:
                await channel.send(f"```\n{chunk}\n```")
                sent += 1
            except Exception:
                logger.exception("Failed to mirror logs to channel")
                break
        return sent

    def start(
        self,
        loop: asyncio.AbstractEventLoop,
        resolve_channel: Callable[[], Messageable | None],
    ) -> None:
        """Start the background drain task."""
        if self._drain_task is not None:
            return

        async def _drain_loop() -> None:
            while True:
                await asyncio.sleep(DRAIN_INTERVAL_SECONDS)
                try:
                    await self.flush(resolve_channel())
                except Exception:
                    logger.exception("Log mirror drain error")

        self._drain_task = loop.create_task(_drain_loop(), name="log-mirror-drain")

    def stop(self) -> None:
        """Cancel the drain task."""
        if self._drain_task:
            self._drain_task.cancel()
            self._drain_task = None


class ChannelLogHandler(logging.Handler):
    """Logging handler that appends records to a :class:`LogMirror`."""

    def __init__(self, mirror: LogMirror, level: int = logging.INFO) -> None:
        super().__init__(level)
        self._mirror = mirror

    def emit(self, record: logging.LogRecord) -> None:
        if record.name.startswith(_IGNORED_PREFIXES):
            return
        try:
            stamp = datetime.fromtimestamp(record.created, tz=UTC).isoformat()
            message = self.format(record) if self.formatter else record.getMessage()
            self._mirror.append(f"[{stamp}] [{record.levelname}] {message}")
        except Exception:
            self.handleError(record)


def install_handler(mirror: LogMirror, level: int = logging.INFO) -> ChannelLogHandler:
    """Attach a :class:`ChannelLogHandler` for *mirror* to the root logger."""
    handler = ChannelLogHandler(mirror, level=level)
    logging.getLogger().addHandler(handler)
    return handler
