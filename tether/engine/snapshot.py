"""
tether.engine.snapshot — Invite Snapshot Store
===============================================

Holds, per guild, the last observed ``{code → InviteRecord}`` map.

The snapshot is a disposable cache: it exists only so the next
``MemberJoined`` can be diffed against it to find the invite that was
used.  It is **never** authoritative for rewards — that is the ledger's job.

Snapshots are replaced wholesale on every directory poll and never merged
field-by-field, so a stale code can never linger next to fresh ones.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from types import MappingProxyType

# code → InviteRecord, ordered by code
InviteSnapshot = Mapping[str, "InviteRecord"]

EMPTY_SNAPSHOT: InviteSnapshot = MappingProxyType({})


@dataclass(frozen=True, slots=True)
class InviteRecord:
    """One invite link as observed on a poll.

    Only ``code``, ``uses`` and ``inviter_id`` take part in attribution.
    The remaining fields are catalogue metadata kept for display.
    """

    code: str
    uses: int = 0
    inviter_id: int | None = None
    max_uses: int | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    temporary: bool = False
    channel_id: int | None = None


def build_snapshot(records: Iterable[InviteRecord]) -> InviteSnapshot:
    """Build an immutable snapshot ordered by invite code.

    Negative use counts are clamped to zero.
    """
    by_code: dict[str, InviteRecord] = {}
    for record in sorted(records, key=lambda r: r.code):
        if record.uses < 0:
            record = replace(record, uses=0)
        by_code[record.code] = record
    return MappingProxyType(by_code)


class InviteSnapshotStore:
    """Thread-safe per-guild holder of the last observed invite snapshot.

    Usage::

        store = InviteSnapshotStore()
        old = store.get(guild_id)
        store.replace(guild_id, build_snapshot(await directory.list_invites(guild_id)))
    """

    def __init__(self, initial: Mapping[int, InviteSnapshot] | None = None) -> None:
        self._lock = threading.Lock()
        self._snapshots: dict[int, InviteSnapshot] = dict(initial or {})

    def get(self, guild_id: int) -> InviteSnapshot:
        with self._lock:
            return self._snapshots.get(guild_id, EMPTY_SNAPSHOT)

    def replace(self, guild_id: int, snapshot: InviteSnapshot) -> InviteSnapshot:
        """Swap in *snapshot* for *guild_id*; returns the previous one."""
        with self._lock:
            previous = self._snapshots.get(guild_id, EMPTY_SNAPSHOT)
            self._snapshots[guild_id] = snapshot
        return previous

    def guild_ids(self) -> list[int]:
        with self._lock:
            return list(self._snapshots)


def with_record(snapshot: InviteSnapshot, record: InviteRecord) -> InviteSnapshot:
    """Return a new snapshot with *record* catalogued under its code."""
    records = {code: r for code, r in snapshot.items()}
    records[record.code] = record
    return build_snapshot(records.values())


def without_code(snapshot: InviteSnapshot, code: str) -> InviteSnapshot:
    """Return a new snapshot with *code* dropped (unchanged if absent)."""
    return build_snapshot(r for c, r in snapshot.items() if c != code)
