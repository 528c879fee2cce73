"""
tether.constants — Shared Constants
====================================

Single source of truth for defaults and Discord limits.  Import from here
instead of duplicating literals in cogs and services.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Rule defaults
# ---------------------------------------------------------------------------
DEFAULT_THRESHOLD = 3

# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------
DEFAULT_RETROACTIVE_INTERVAL_HOURS = 24

# ---------------------------------------------------------------------------
# Persistence keys (state_documents table)
# ---------------------------------------------------------------------------
SUMMARY_KEY_PREFIX = "ledger.summary."


def summary_key(guild_id: int) -> str:
    """Key of the human-readable ledger summary for *guild_id*."""
    return f"{SUMMARY_KEY_PREFIX}{guild_id}"


# ---------------------------------------------------------------------------
# Discord message limits
# ---------------------------------------------------------------------------
# Discord caps messages at 2000 characters; leaves room for a code fence
MESSAGE_CHUNK = 1990


def chunk_lines(lines: list[str], limit: int = MESSAGE_CHUNK) -> list[str]:
    """Pack *lines* into newline-joined chunks no longer than *limit*.

    A single line longer than *limit* is hard-split.
    """
    chunks: list[str] = []
    current = ""
    for line in lines:
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks
