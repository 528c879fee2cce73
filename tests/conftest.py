"""
tests/conftest.py — Shared Test Fixtures
=========================================

- ``db_engine``: in-memory SQLite with every Tether table.
- ``directory``: :class:`FakeDirectory`, an in-memory guild directory with
  failure injection and a log of every role mutation.
"""

from __future__ import annotations

from collections.abc import Iterable

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.pool import StaticPool

from tether.database.models import Base
from tether.engine.directory import MemberState
from tether.engine.snapshot import InviteRecord
from tether.errors import DirectoryError

GUILD = 1000

# Role ids used across the suite
VERIFIED = 10
MEMBER = 11
RECRUITER = 20
TOP_RECRUITER = 21

ROLE_NAMES = {
    "Verified": VERIFIED,
    "Member": MEMBER,
    "Recruiter": RECRUITER,
    "Top Recruiter": TOP_RECRUITER,
}


class FakeDirectory:
    """In-memory :class:`~tether.engine.directory.GuildDirectory`.

    Failure switches:
        ``fail_invites`` / ``fail_members`` — list calls raise DirectoryError.
        ``fail_fetch`` — user ids whose ``fetch_member`` raises.
        ``fail_roles`` — ``(user_id, role_id)`` pairs whose mutation raises.
    """

    def __init__(self, roles: dict[str, int] | None = None) -> None:
        self.invites: dict[int, dict[str, InviteRecord]] = {}
        self.members: dict[int, dict[int, set[int]]] = {}
        self.roles: dict[int, dict[str, int]] = {GUILD: dict(roles or ROLE_NAMES)}
        self.mutations: list[tuple[str, int, int]] = []
        self.fail_invites = False
        self.fail_members = False
        self.fail_fetch: set[int] = set()
        self.fail_roles: set[tuple[int, int]] = set()
        self.invite_polls = 0

    # -------------------------------------------------------------------
    # Test set-up helpers
    # -------------------------------------------------------------------
    def create_invite(
        self, code: str, inviter_id: int | None, uses: int = 0, guild_id: int = GUILD,
    ) -> None:
        self.invites.setdefault(guild_id, {})[code] = InviteRecord(
            code=code, uses=uses, inviter_id=inviter_id,
        )

    def delete_invite(self, code: str, guild_id: int = GUILD) -> None:
        self.invites.get(guild_id, {}).pop(code, None)

    def use_invite(self, code: str, guild_id: int = GUILD) -> None:
        record = self.invites[guild_id][code]
        self.invites[guild_id][code] = InviteRecord(
            code=code, uses=record.uses + 1, inviter_id=record.inviter_id,
        )

    def add_member(self, user_id: int, roles: Iterable[int] = (), guild_id: int = GUILD) -> None:
        self.members.setdefault(guild_id, {})[user_id] = set(roles)

    def remove_member(self, user_id: int, guild_id: int = GUILD) -> None:
        self.members.get(guild_id, {}).pop(user_id, None)

    def set_roles(self, user_id: int, roles: Iterable[int], guild_id: int = GUILD) -> None:
        self.members[guild_id][user_id] = set(roles)

    def roles_of(self, user_id: int, guild_id: int = GUILD) -> set[int]:
        return set(self.members.get(guild_id, {}).get(user_id, set()))

    # -------------------------------------------------------------------
    # GuildDirectory
    # -------------------------------------------------------------------
    async def list_invites(self, guild_id: int) -> list[InviteRecord]:
        self.invite_polls += 1
        if self.fail_invites:
            raise DirectoryError("invite list unavailable")
        return list(self.invites.get(guild_id, {}).values())

    async def fetch_member(self, guild_id: int, user_id: int) -> MemberState | None:
        if user_id in self.fail_fetch:
            raise DirectoryError(f"fetch of {user_id} failed")
        roles = self.members.get(guild_id, {}).get(user_id)
        if roles is None:
            return None
        return MemberState(id=user_id, role_ids=frozenset(roles))

    async def list_members(self, guild_id: int) -> list[MemberState]:
        if self.fail_members:
            raise DirectoryError("member list unavailable")
        return [
            MemberState(id=uid, role_ids=frozenset(roles))
            for uid, roles in self.members.get(guild_id, {}).items()
        ]

    async def add_role(self, guild_id: int, user_id: int, role_id: int) -> None:
        self._check_mutation(guild_id, user_id, role_id)
        self.members[guild_id][user_id].add(role_id)
        self.mutations.append(("add", user_id, role_id))

    async def remove_role(self, guild_id: int, user_id: int, role_id: int) -> None:
        self._check_mutation(guild_id, user_id, role_id)
        self.members[guild_id][user_id].discard(role_id)
        self.mutations.append(("remove", user_id, role_id))

    def resolve_role(
        self, guild_id: int, role_id: int | None = None, name: str | None = None,
    ) -> int | None:
        roles = self.roles.get(guild_id, {})
        if role_id is not None and role_id in roles.values():
            return role_id
        if name is not None:
            return roles.get(name)
        return None

    def _check_mutation(self, guild_id: int, user_id: int, role_id: int) -> None:
        if (user_id, role_id) in self.fail_roles:
            raise DirectoryError(f"missing permission for role {role_id}")
        if user_id not in self.members.get(guild_id, {}):
            raise DirectoryError(f"member {user_id} not in guild")


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Tether tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()
