"""
tether.engine.ledger — Persistent Inviter → Invitee Ledger
===========================================================

The ledger is the single source of truth for "who invited whom" in one
guild.  It is authoritative for rewards and is **independent of the
invite lifecycle**: deleting or expiring the invite link that produced an
entry never removes or alters that entry.  Entries only go away when the
invitee leaves the guild or an admin removes the mapping.

Shape::

    {inviter_id: [invitee_id, ...]}   # insertion order kept for display

Uniqueness: an invitee appears at most once in the whole guild ledger.

This class is pure in-memory state.  Loading and saving go through
:class:`~tether.services.persistence.PersistenceGateway`.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AddResult:
    """Outcome of :meth:`MembershipLedger.add_invitee`.

    ``previous_inviter`` is set when the invitee was moved away from a
    different inviter, so the caller can re-evaluate that inviter too.
    """

    created: bool
    previous_inviter: int | None = None


class MembershipLedger:
    """Inviter → invitees mapping for a single guild."""

    def __init__(self, guild_id: int, entries: Mapping[int, Sequence[int]] | None = None) -> None:
        self.guild_id = guild_id
        self._invitees: dict[int, list[int]] = {}
        # invitee_id → inviter_id
        self._index: dict[int, int] = {}
        for inviter_id, invitee_ids in (entries or {}).items():
            for invitee_id in invitee_ids:
                self._append(int(inviter_id), int(invitee_id))

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------
    def add_invitee(self, inviter_id: int, invitee_id: int) -> AddResult:
        """Record *invitee_id* under *inviter_id*.

        Idempotent: adding an existing pair changes nothing.
        """
        current = self._index.get(invitee_id)
        if current == inviter_id:
            return AddResult(created=False)

        previous = None
        if current is not None:
            self._drop(current, invitee_id)
            previous = current
            logger.info(
                "Moved invitee %d from inviter %d to %d in guild %d",
                invitee_id, current, inviter_id, self.guild_id,
            )

        self._append(inviter_id, invitee_id)
        return AddResult(created=True, previous_inviter=previous)

    def remove_invitee(self, invitee_id: int) -> int | None:
        """Remove *invitee_id* wherever it is; return its former inviter."""
        inviter_id = self._index.get(invitee_id)
        if inviter_id is None:
            return None
        self._drop(inviter_id, invitee_id)
        return inviter_id

    def remove_mapping(self, inviter_id: int, invitee_id: int) -> bool:
        """Remove the exact pair; ``False`` when it is not recorded."""
        if self._index.get(invitee_id) != inviter_id:
            return False
        self._drop(inviter_id, invitee_id)
        return True

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def inviter_of(self, invitee_id: int) -> int | None:
        return self._index.get(invitee_id)

    def invitees_of(self, inviter_id: int) -> list[int]:
        return list(self._invitees.get(inviter_id, ()))

    def all_inviters(self) -> set[int]:
        """Inviters with at least one recorded invitee."""
        return {inviter for inviter, invitees in self._invitees.items() if invitees}

    def contains(self, inviter_id: int, invitee_id: int) -> bool:
        return self._index.get(invitee_id) == inviter_id

    def __len__(self) -> int:
        return len(self._index)

    def to_dict(self) -> dict[int, list[int]]:
        """Plain ``{inviter: [invitees]}`` copy, empty inviters omitted."""
        return {
            inviter: list(invitees)
            for inviter, invitees in self._invitees.items()
            if invitees
        }

    def summary(self) -> dict:
        """Human-readable projection regenerated on every save.

        Read-only: nothing ever loads the ledger back from this.
        """
        entries = self.to_dict()
        return {
            "guild_id": self.guild_id,
            "total_inviters": len(entries),
            "total_invitees": sum(len(v) for v in entries.values()),
            "summary": {
                str(inviter): {
                    "invitee_count": len(invitees),
                    "invitee_ids": [str(i) for i in invitees],
                }
                for inviter, invitees in entries.items()
            },
        }

    def copy(self) -> MembershipLedger:
        clone = MembershipLedger(self.guild_id)
        clone._invitees = copy.deepcopy(self._invitees)
        clone._index = dict(self._index)
        return clone

    def restore(self, other: MembershipLedger) -> None:
        """Overwrite this ledger's contents with *other*'s (rollback helper)."""
        self._invitees = copy.deepcopy(other._invitees)
        self._index = dict(other._index)

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    def _append(self, inviter_id: int, invitee_id: int) -> None:
        if invitee_id in self._index:
            # Duplicate rows in persisted state: first occurrence wins.
            return
        self._invitees.setdefault(inviter_id, []).append(invitee_id)
        self._index[invitee_id] = inviter_id

    def _drop(self, inviter_id: int, invitee_id: int) -> None:
        invitees = self._invitees.get(inviter_id, [])
        if invitee_id in invitees:
            invitees.remove(invitee_id)
        if not invitees:
            self._invitees.pop(inviter_id, None)
        self._index.pop(invitee_id, None)
