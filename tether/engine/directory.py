"""
tether.engine.directory — Guild Directory Contract
===================================================

The engine never talks to Discord directly.  Everything it needs from the
guild (invite list, member lookups, role mutations, role resolution) goes
through the :class:`GuildDirectory` protocol.  The production
implementation lives in :mod:`tether.bot.directory`; tests use an
in-memory fake.

Contract:
    - ``fetch_member`` returns ``None`` for members that are not in the
      guild.  Any other failure raises :class:`~tether.errors.DirectoryError`.
    - ``add_role`` / ``remove_role`` raise ``DirectoryError`` on failure
      (missing permission, hierarchy, network).
    - No timeouts are imposed here; that policy belongs to the implementation.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from tether.engine.snapshot import InviteRecord


@dataclass(frozen=True, slots=True)
class MemberState:
    """A guild member as seen by the rule engine."""

    id: int
    role_ids: frozenset[int] = frozenset()
    display_name: str = ""

    def has_role(self, role_id: int) -> bool:
        return role_id in self.role_ids

    def has_any_role(self, role_ids: frozenset[int] | set[int]) -> bool:
        return not self.role_ids.isdisjoint(role_ids)


class GuildDirectory(Protocol):
    """Async view of one Discord deployment's guilds."""

    async def list_invites(self, guild_id: int) -> Sequence[InviteRecord]: ...

    async def fetch_member(self, guild_id: int, user_id: int) -> MemberState | None: ...

    async def list_members(self, guild_id: int) -> Sequence[MemberState]: ...

    async def add_role(self, guild_id: int, user_id: int, role_id: int) -> None: ...

    async def remove_role(self, guild_id: int, user_id: int, role_id: int) -> None: ...

    def resolve_role(
        self, guild_id: int, role_id: int | None = None, name: str | None = None,
    ) -> int | None: ...
