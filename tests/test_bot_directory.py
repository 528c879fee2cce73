"""
tests/test_bot_directory.py — discord.py Directory Adapter Tests
=================================================================
Error mapping and model projection, using mocked discord.py objects.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from tether.bot.directory import DiscordDirectory, invite_record, member_state
from tether.errors import DirectoryError

GUILD = 1000


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


def _http_error(cls=discord.HTTPException, status: int = 500):
    response = MagicMock(status=status, reason="error")
    return cls(response, "failed")


def _make_member(user_id: int, role_ids=()) -> MagicMock:
    member = MagicMock(spec=discord.Member)
    member.id = user_id
    member.display_name = f"user{user_id}"
    member.roles = [SimpleNamespace(id=r) for r in role_ids]
    member.add_roles = AsyncMock()
    member.remove_roles = AsyncMock()
    return member


def _make_client(guild) -> MagicMock:
    client = MagicMock(spec=discord.Client)
    client.get_guild.side_effect = lambda gid: guild if guild and gid == guild.id else None
    return client


def _make_guild(members=()) -> MagicMock:
    guild = MagicMock(spec=discord.Guild)
    guild.id = GUILD
    by_id = {m.id: m for m in members}
    guild.get_member.side_effect = by_id.get
    guild.fetch_member = AsyncMock(side_effect=_http_error(discord.NotFound, 404))
    guild.members = list(members)
    guild.chunked = True
    guild.roles = []
    return guild


class TestProjections:

    def test_member_state(self):
        state = member_state(_make_member(7, (1, 2)))
        assert state.id == 7
        assert state.role_ids == {1, 2}
        assert state.display_name == "user7"

    def test_invite_record(self):
        created = datetime(2024, 1, 1, tzinfo=UTC)
        invite = SimpleNamespace(
            code="abc", uses=4, inviter=SimpleNamespace(id=9), max_uses=0,
            expires_at=None, created_at=created, temporary=False,
            channel=SimpleNamespace(id=55),
        )
        record = invite_record(invite)
        assert (record.code, record.uses, record.inviter_id) == ("abc", 4, 9)
        assert record.channel_id == 55
        assert record.created_at == created

    def test_invite_record_without_inviter(self):
        invite = SimpleNamespace(
            code="vanity", uses=None, inviter=None, max_uses=None,
            expires_at=None, created_at=None, temporary=None, channel=None,
        )
        record = invite_record(invite)
        assert record.uses == 0
        assert record.inviter_id is None
        assert record.channel_id is None


class TestDiscordDirectory:

    def test_unknown_guild_raises(self):
        directory = DiscordDirectory(_make_client(None))
        with pytest.raises(DirectoryError):
            run_async(directory.list_invites(GUILD))
        assert directory.resolve_role(GUILD, role_id=1) is None

    def test_fetch_member_not_found_is_none(self):
        directory = DiscordDirectory(_make_client(_make_guild()))
        assert run_async(directory.fetch_member(GUILD, 42)) is None

    def test_fetch_member_http_error_raises(self):
        guild = _make_guild()
        guild.fetch_member.side_effect = _http_error()
        directory = DiscordDirectory(_make_client(guild))
        with pytest.raises(DirectoryError):
            run_async(directory.fetch_member(GUILD, 42))

    def test_list_invites_http_error_raises(self):
        guild = _make_guild()
        guild.invites = AsyncMock(side_effect=_http_error(discord.Forbidden, 403))
        directory = DiscordDirectory(_make_client(guild))
        with pytest.raises(DirectoryError):
            run_async(directory.list_invites(GUILD))

    def test_list_members_from_cache(self):
        guild = _make_guild([_make_member(1, (10,)), _make_member(2)])
        directory = DiscordDirectory(_make_client(guild))
        members = run_async(directory.list_members(GUILD))
        assert [m.id for m in members] == [1, 2]

    def test_add_role_forbidden_raises(self):
        member = _make_member(1)
        member.add_roles.side_effect = _http_error(discord.Forbidden, 403)
        directory = DiscordDirectory(_make_client(_make_guild([member])))
        with pytest.raises(DirectoryError):
            run_async(directory.add_role(GUILD, 1, 20))

    def test_remove_role_calls_discord(self):
        member = _make_member(1, (20,))
        directory = DiscordDirectory(_make_client(_make_guild([member])))
        run_async(directory.remove_role(GUILD, 1, 20))
        (role,), kwargs = member.remove_roles.await_args
        assert role.id == 20
        assert "reason" in kwargs

    def test_role_mutation_for_absent_member_raises(self):
        directory = DiscordDirectory(_make_client(_make_guild()))
        with pytest.raises(DirectoryError):
            run_async(directory.add_role(GUILD, 1, 20))

    def test_resolve_role_by_id_then_name(self):
        guild = _make_guild()
        recruiter = MagicMock(spec=discord.Role)
        recruiter.id = 20
        recruiter.name = "Recruiter"
        guild.roles = [recruiter]
        guild.get_role.side_effect = {20: recruiter}.get
        directory = DiscordDirectory(_make_client(guild))

        assert directory.resolve_role(GUILD, role_id=20) == 20
        assert directory.resolve_role(GUILD, role_id=999, name="Recruiter") == 20
        assert directory.resolve_role(GUILD, name="Ghost") is None
