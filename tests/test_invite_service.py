"""
tests/test_invite_service.py — Invite Reward Pipeline Integration Tests
========================================================================
End-to-end behavior of :class:`InviteRewardService` against the in-memory
directory and a real (SQLite) persistence gateway: join attribution, the
A/B/C and deleted-invite scenarios, threshold rules, admin mutations,
retroactive pass idempotence, and the fail-closed / rollback paths.

Each test drives one coroutine end to end so the per-guild locks live on
a single event loop.
"""

from __future__ import annotations

import asyncio
import dataclasses
from unittest.mock import patch

import pytest
from conftest import GUILD, MEMBER, RECRUITER, TOP_RECRUITER, VERIFIED, FakeDirectory

from tether.engine.events import (
    EventKind,
    InviteCreated,
    InviteDeleted,
    MemberJoined,
    MemberLeft,
    MemberRolesChanged,
)
from tether.engine.ledger import MembershipLedger
from tether.engine.rules import PerInviteeRule, RoleRef, ThresholdRule
from tether.errors import PersistenceError
from tether.services.invite_service import InviteRewardService, JoinOutcome, JoinStage
from tether.services.persistence import PersistenceGateway

A, B, C, D, E = 1, 2, 3, 4, 5
CODE = "abc"

RULES = (
    PerInviteeRule(RoleRef(name="Recruiter"), (RoleRef(name="Verified"),)),
    ThresholdRule(RoleRef(name="Top Recruiter"), (RoleRef(name="Verified"),), threshold=3),
)


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


@pytest.fixture
def gateway(db_engine) -> PersistenceGateway:
    return PersistenceGateway(db_engine)


@pytest.fixture
def service(gateway, directory) -> InviteRewardService:
    return InviteRewardService(gateway, directory, RULES)


async def _start(service: InviteRewardService, directory: FakeDirectory) -> None:
    """A is in the guild with one unused invite; the service has primed it."""
    directory.add_member(A)
    directory.create_invite(CODE, A)
    await service.open()
    await service.prime_guild(GUILD)


async def _join(service, directory, user_id, roles=(), code=CODE) -> JoinOutcome:
    directory.add_member(user_id, roles)
    if code is not None:
        directory.use_invite(code)
    return await service.on_member_joined(MemberJoined(guild_id=GUILD, user_id=user_id))


async def _leave(service, directory, user_id):
    directory.remove_member(user_id)
    return await service.on_member_left(MemberLeft(guild_id=GUILD, user_id=user_id))


# ===========================================================================
# Join pipeline
# ===========================================================================
class TestJoinPipeline:

    def test_join_is_attributed_recorded_and_rewarded(self, service, directory, gateway):
        async def scenario():
            await _start(service, directory)
            return await _join(service, directory, B, {VERIFIED})

        outcome = run_async(scenario())
        assert outcome.stage is JoinStage.ROLES_RECONCILED
        assert outcome.inviter_id == A
        assert outcome.attribution.code == CODE
        assert outcome.created is True
        assert directory.roles_of(A) == {RECRUITER}
        assert gateway.load_ledger(GUILD).to_dict() == {A: [B]}
        assert gateway.load_snapshot(GUILD)[CODE].uses == 1
        assert gateway.load_summary(GUILD)["total_invitees"] == 1

    def test_unattributed_join_only_refreshes_snapshot(self, service, directory, gateway):
        async def scenario():
            await _start(service, directory)
            directory.create_invite("fresh", D)
            return await _join(service, directory, B, {VERIFIED}, code=None)

        outcome = run_async(scenario())
        assert outcome.stage is JoinStage.UNRESOLVED
        assert outcome.attribution is None
        assert len(service.ledger(GUILD)) == 0
        assert "fresh" in service.snapshot(GUILD)
        assert "fresh" in gateway.load_snapshot(GUILD)
        assert directory.mutations == []

    def test_invite_without_inviter_is_not_recorded(self, service, directory):
        async def scenario():
            await _start(service, directory)
            directory.create_invite("vanity", None)
            return await _join(service, directory, B, {VERIFIED}, code="vanity")

        outcome = run_async(scenario())
        assert outcome.stage is JoinStage.UNRESOLVED
        assert outcome.attribution.code == "vanity"
        assert outcome.inviter_id is None
        assert len(service.ledger(GUILD)) == 0
        assert service.snapshot(GUILD)["vanity"].uses == 1

    def test_invite_poll_failure_fails_closed(self, service, directory, gateway):
        async def scenario():
            await _start(service, directory)
            directory.fail_invites = True
            return await _join(service, directory, B, {VERIFIED})

        outcome = run_async(scenario())
        assert outcome.stage is JoinStage.UNRESOLVED
        assert len(service.ledger(GUILD)) == 0
        assert service.snapshot(GUILD)[CODE].uses == 0
        assert gateway.load_snapshot(GUILD)[CODE].uses == 0
        assert directory.mutations == []

    def test_persistence_failure_restores_ledger(self, service, directory, gateway):
        async def scenario():
            await _start(service, directory)
            with patch.object(gateway, "save_state", side_effect=PersistenceError("db down")):
                with pytest.raises(PersistenceError):
                    await _join(service, directory, B, {VERIFIED})

        run_async(scenario())
        assert len(service.ledger(GUILD)) == 0
        assert service.snapshot(GUILD)[CODE].uses == 0
        assert gateway.load_ledger(GUILD).to_dict() == {}
        assert directory.mutations == []

    def test_rejoin_under_new_inviter_moves_credit(self, service, directory):
        async def scenario():
            await _start(service, directory)
            directory.add_member(D)
            directory.create_invite("ddd", D)
            await service.prime_guild(GUILD)
            await _join(service, directory, B, {VERIFIED})
            directory.remove_member(B)
            return await _join(service, directory, B, {VERIFIED}, code="ddd")

        outcome = run_async(scenario())
        assert outcome.inviter_id == D
        assert service.ledger(GUILD).to_dict() == {D: [B]}
        assert RECRUITER not in directory.roles_of(A)
        assert RECRUITER in directory.roles_of(D)


# ===========================================================================
# Reward scenarios
# ===========================================================================
class TestRewardScenarios:

    def test_a_invites_b_then_c(self, service, directory):
        """Granted after C joins, kept after B leaves, removed after C leaves."""
        snapshots: list[set[int]] = []

        async def scenario():
            await _start(service, directory)
            await _join(service, directory, B, {MEMBER})
            snapshots.append(directory.roles_of(A))
            await _join(service, directory, C, {VERIFIED})
            snapshots.append(directory.roles_of(A))
            await _leave(service, directory, B)
            snapshots.append(directory.roles_of(A))
            await _leave(service, directory, C)
            snapshots.append(directory.roles_of(A))

        run_async(scenario())
        assert snapshots == [set(), {RECRUITER}, {RECRUITER}, set()]
        assert directory.mutations == [("add", A, RECRUITER), ("remove", A, RECRUITER)]
        assert len(service.ledger(GUILD)) == 0

    def test_deleted_invite_keeps_ledger_and_roles(self, service, directory, gateway):
        async def scenario():
            await _start(service, directory)
            await _join(service, directory, B, {VERIFIED})
            directory.delete_invite(CODE)
            return await service.on_invite_deleted(
                InviteDeleted(guild_id=GUILD, code=CODE, inviter_id=A),
            )

        result = run_async(scenario())
        assert result is not None and result.mutations == 0
        assert service.ledger(GUILD).to_dict() == {A: [B]}
        assert gateway.load_ledger(GUILD).to_dict() == {A: [B]}
        assert directory.roles_of(A) == {RECRUITER}
        assert directory.mutations == [("add", A, RECRUITER)]
        assert CODE not in service.snapshot(GUILD)

    def test_threshold_of_three(self, service, directory):
        steps: list[set[int]] = []

        async def scenario():
            await _start(service, directory)
            for invitee in (B, C, D):
                await _join(service, directory, invitee, {VERIFIED})
                steps.append(directory.roles_of(A))
            # D drops the qualifying role
            directory.set_roles(D, set())
            await service.on_member_roles_changed(MemberRolesChanged(
                guild_id=GUILD, user_id=D,
                old_roles=frozenset({VERIFIED}), new_roles=frozenset(),
            ))
            steps.append(directory.roles_of(A))

        run_async(scenario())
        assert steps == [
            {RECRUITER},
            {RECRUITER},
            {RECRUITER, TOP_RECRUITER},
            {RECRUITER},
        ]

    def test_role_change_of_untracked_member_is_ignored(self, service, directory):
        async def scenario():
            await _start(service, directory)
            directory.add_member(E, {VERIFIED})
            return await service.on_member_roles_changed(MemberRolesChanged(
                guild_id=GUILD, user_id=E,
                old_roles=frozenset(), new_roles=frozenset({VERIFIED}),
            ))

        assert run_async(scenario()) is None
        assert directory.mutations == []

    def test_unchanged_roles_skip_reconciliation(self, service, directory):
        async def scenario():
            await _start(service, directory)
            await _join(service, directory, B)
            # Stale reward a full reconcile would strip
            directory.set_roles(A, {RECRUITER})
            return await service.on_member_roles_changed(MemberRolesChanged(
                guild_id=GUILD, user_id=B, old_roles=frozenset(), new_roles=frozenset(),
            ))

        assert run_async(scenario()) is None
        assert directory.mutations == []
        assert directory.roles_of(A) == {RECRUITER}

    def test_event_kinds_are_class_level(self):
        joined = MemberJoined(guild_id=GUILD, user_id=B)
        assert joined.kind is EventKind.MEMBER_JOINED
        assert MemberRolesChanged.kind is EventKind.MEMBER_ROLES_CHANGED
        assert InviteDeleted(guild_id=GUILD, code=CODE).kind is EventKind.INVITE_DELETED
        assert "kind" not in {f.name for f in dataclasses.fields(joined)}


# ===========================================================================
# Invite events
# ===========================================================================
class TestInviteEvents:

    def test_created_invite_catalogued_without_polling(self, service, directory):
        polls: list[int] = []

        async def scenario():
            await _start(service, directory)
            directory.create_invite("new", D)
            polls.append(directory.invite_polls)
            await service.on_invite_created(InviteCreated(guild_id=GUILD, code="new", inviter_id=D))
            polls.append(directory.invite_polls)

        run_async(scenario())
        assert polls[0] == polls[1]
        assert service.snapshot(GUILD)["new"].uses == 0
        assert service.snapshot(GUILD)["new"].inviter_id == D

    def test_join_through_created_invite_is_attributed(self, service, directory):
        async def scenario():
            await _start(service, directory)
            directory.add_member(D)
            directory.create_invite("new", D)
            await service.on_invite_created(InviteCreated(guild_id=GUILD, code="new", inviter_id=D))
            return await _join(service, directory, B, {VERIFIED}, code="new")

        outcome = run_async(scenario())
        assert outcome.inviter_id == D
        assert directory.roles_of(D) == {RECRUITER}

    def test_deleted_invite_of_inviter_without_invitees(self, service, directory):
        async def scenario():
            await _start(service, directory)
            return await service.on_invite_deleted(
                InviteDeleted(guild_id=GUILD, code=CODE, inviter_id=A),
            )

        assert run_async(scenario()) is None

    def test_handle_event_dispatches_by_kind(self, service, directory):
        async def scenario():
            await _start(service, directory)
            directory.add_member(B, {VERIFIED})
            directory.use_invite(CODE)
            return await service.handle_event(MemberJoined(guild_id=GUILD, user_id=B))

        outcome = run_async(scenario())
        assert isinstance(outcome, JoinOutcome)
        assert outcome.inviter_id == A


# ===========================================================================
# Admin surface
# ===========================================================================
class TestAdminSurface:

    def test_add_mapping_reconciles_and_is_idempotent(self, service, directory, gateway):
        async def scenario():
            await _start(service, directory)
            directory.add_member(B, {VERIFIED})
            first = await service.add_mapping(GUILD, A, B)
            second = await service.add_mapping(GUILD, A, B)
            return first, second

        first, second = run_async(scenario())
        assert first.created is True
        assert second.created is False
        assert gateway.load_ledger(GUILD).to_dict() == {A: [B]}
        assert directory.mutations == [("add", A, RECRUITER)]

    def test_add_mapping_moves_invitee(self, service, directory):
        async def scenario():
            await _start(service, directory)
            directory.add_member(D)
            directory.add_member(B, {VERIFIED})
            await service.add_mapping(GUILD, A, B)
            return await service.add_mapping(GUILD, D, B)

        result = run_async(scenario())
        assert result.previous_inviter == A
        assert directory.roles_of(A) == set()
        assert directory.roles_of(D) == {RECRUITER}

    def test_remove_mapping(self, service, directory, gateway):
        async def scenario():
            await _start(service, directory)
            directory.add_member(B, {VERIFIED})
            await service.add_mapping(GUILD, A, B)
            found = await service.remove_mapping(GUILD, A, B)
            missing = await service.remove_mapping(GUILD, A, B)
            return found, missing

        found, missing = run_async(scenario())
        assert (found, missing) == (True, False)
        assert directory.roles_of(A) == set()
        assert gateway.load_ledger(GUILD).to_dict() == {}

    def test_list_invitees(self, service, directory):
        async def scenario():
            await _start(service, directory)
            await service.add_mapping(GUILD, A, C)
            await service.add_mapping(GUILD, A, B)

        run_async(scenario())
        assert service.list_invitees(GUILD, A) == [C, B]
        assert service.list_invitees(GUILD, D) == []


# ===========================================================================
# Per-guild serialisation
# ===========================================================================
class SlowDirectory(FakeDirectory):
    """Directory whose reads yield to the loop and record overlap."""

    def __init__(self) -> None:
        super().__init__()
        self.in_flight = 0
        self.max_in_flight = 0

    async def _pause(self) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0.005)
        self.in_flight -= 1

    async def list_invites(self, guild_id):
        await self._pause()
        return await super().list_invites(guild_id)

    async def fetch_member(self, guild_id, user_id):
        await self._pause()
        return await super().fetch_member(guild_id, user_id)


def _sorted(ledger: dict[int, list[int]]) -> dict[int, list[int]]:
    return {inviter: sorted(invitees) for inviter, invitees in ledger.items()}


class TestGuildSerialisation:

    @pytest.fixture
    def slow(self) -> SlowDirectory:
        return SlowDirectory()

    def test_join_and_admin_add_do_not_interleave(self, gateway, slow):
        service = InviteRewardService(gateway, slow, RULES)

        async def scenario():
            await _start(service, slow)
            await _join(service, slow, B, {VERIFIED})
            slow.max_in_flight = 0

            slow.add_member(C, {VERIFIED})
            slow.use_invite(CODE)
            slow.add_member(D, {VERIFIED})
            await asyncio.gather(
                service.on_member_joined(MemberJoined(guild_id=GUILD, user_id=C)),
                service.add_mapping(GUILD, A, D),
            )

        run_async(scenario())
        assert slow.max_in_flight == 1
        assert _sorted(service.ledger(GUILD).to_dict()) == {A: [B, C, D]}
        assert _sorted(gateway.load_ledger(GUILD).to_dict()) == {A: [B, C, D]}
        assert slow.roles_of(A) == {RECRUITER, TOP_RECRUITER}
        assert slow.mutations == [("add", A, RECRUITER), ("add", A, TOP_RECRUITER)]

    def test_join_and_leave_do_not_interleave(self, gateway, slow):
        service = InviteRewardService(gateway, slow, RULES)

        async def scenario():
            await _start(service, slow)
            await _join(service, slow, B, {VERIFIED})
            slow.max_in_flight = 0

            slow.add_member(C, {VERIFIED})
            slow.use_invite(CODE)
            slow.remove_member(B)
            await asyncio.gather(
                service.on_member_joined(MemberJoined(guild_id=GUILD, user_id=C)),
                service.on_member_left(MemberLeft(guild_id=GUILD, user_id=B)),
            )

        run_async(scenario())
        assert slow.max_in_flight == 1
        assert service.ledger(GUILD).to_dict() == {A: [C]}
        assert gateway.load_ledger(GUILD).to_dict() == {A: [C]}
        assert gateway.load_snapshot(GUILD)[CODE].uses == 2
        assert slow.roles_of(A) == {RECRUITER}


# ===========================================================================
# Retroactive pass
# ===========================================================================
class TestRetroactivePass:

    def _seed(self, gateway, directory, entries):
        gateway.save_ledger(MembershipLedger(GUILD, entries))
        directory.add_member(A)

    def test_second_pass_makes_no_mutations(self, service, directory, gateway):
        self._seed(gateway, directory, {A: [B, C], E: [99]})
        directory.add_member(B, {VERIFIED})
        directory.add_member(C, {VERIFIED})

        async def scenario():
            await service.open()
            first = await service.run_retroactive_pass(GUILD)
            count = len(directory.mutations)
            second = await service.run_retroactive_pass(GUILD)
            return first, count, second

        first, count, second = run_async(scenario())
        assert (first.inviters, first.invitees, first.added) == (1, 2, 1)
        assert count == 1
        assert second.mutations == 0
        assert len(directory.mutations) == count

    def test_stale_reward_removed(self, service, directory, gateway):
        self._seed(gateway, directory, {A: [B]})
        directory.set_roles(A, {RECRUITER, TOP_RECRUITER})
        directory.add_member(B, {VERIFIED})

        async def scenario():
            await service.open()
            return await service.run_retroactive_pass(GUILD)

        summary = run_async(scenario())
        assert summary.removed == 1
        assert directory.roles_of(A) == {RECRUITER}

    def test_member_list_failure_aborts(self, service, directory, gateway):
        self._seed(gateway, directory, {A: [B]})
        directory.add_member(B, {VERIFIED})
        directory.fail_members = True

        async def scenario():
            await service.open()
            return await service.run_retroactive_pass(GUILD)

        summary = run_async(scenario())
        assert summary.aborted is True
        assert directory.mutations == []

    def test_no_resolvable_rules(self, gateway, directory):
        self._seed(gateway, directory, {A: [B]})
        directory.add_member(B, {VERIFIED})
        directory.roles[GUILD] = {}
        service = InviteRewardService(gateway, directory, RULES)

        async def scenario():
            await service.open()
            return await service.run_retroactive_pass(GUILD)

        assert run_async(scenario()).to_dict()["inviters"] == 0
        assert directory.mutations == []


# ===========================================================================
# Lifecycle
# ===========================================================================
class TestLifecycle:

    def test_close_then_reopen_restores_state(self, service, directory, gateway):
        async def scenario():
            await _start(service, directory)
            await _join(service, directory, B, {VERIFIED})
            await service.close()

            reopened = InviteRewardService(gateway, directory, RULES)
            await reopened.open()
            return reopened

        reopened = run_async(scenario())
        assert reopened.ledger(GUILD).to_dict() == {A: [B]}
        assert reopened.snapshot(GUILD)[CODE].uses == 1

    def test_prime_failure_keeps_previous_snapshot(self, service, directory):
        async def scenario():
            await _start(service, directory)
            directory.fail_invites = True
            return await service.prime_guild(GUILD)

        assert run_async(scenario()) == -1
        assert CODE in service.snapshot(GUILD)
