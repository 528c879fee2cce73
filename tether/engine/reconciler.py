"""
tether.engine.reconciler — Desired vs. Actual Reward Roles
===========================================================

Compares the reward roles an inviter *should* hold (from
:mod:`tether.engine.rules`) with the roles they *do* hold, and issues the
minimal set of add/remove calls through the guild directory.

How it works:
    1. Fetch the inviter.  Absent from the guild → nothing to do.
    2. For each governed reward role:
       desired and not held → add; held and not desired → remove.
    3. A failed mutation is logged and counted, never retried in the same
       pass.  Desired state is recomputed from scratch on every pass, so the
       next triggering event or retroactive run re-attempts it.

Roles that no evaluated rule governs are never removed.

Two entry points share the same apply step:
    - :meth:`Reconciler.reconcile_inviter` — incremental; fetches each
      invitee of one inviter.
    - :meth:`Reconciler.reconcile_group` — retroactive; evaluates an
      inviter against a membership map fetched once for the whole guild.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from tether.engine.directory import GuildDirectory, MemberState
from tether.engine.rules import ResolvedRule, desired_roles, evaluate_rules
from tether.errors import DirectoryError

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """What one reconciliation of one inviter did."""

    inviter_id: int
    added: list[int] = field(default_factory=list)
    removed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    inviter_present: bool = True
    present_invitees: int = 0

    @property
    def mutations(self) -> int:
        return len(self.added) + len(self.removed)


class Reconciler:
    """Applies rule outcomes to an inviter via a :class:`GuildDirectory`."""

    def __init__(self, directory: GuildDirectory) -> None:
        self._directory = directory

    # -------------------------------------------------------------------
    # Apply step
    # -------------------------------------------------------------------
    async def apply(
        self,
        guild_id: int,
        inviter_id: int,
        desired: Mapping[int, bool],
        *,
        inviter: MemberState | None = None,
    ) -> ReconcileResult:
        """Bring *inviter_id*'s governed reward roles in line with *desired*."""
        result = ReconcileResult(inviter_id=inviter_id)
        if not desired:
            return result

        if inviter is None:
            try:
                inviter = await self._directory.fetch_member(guild_id, inviter_id)
            except DirectoryError:
                logger.exception(
                    "Could not fetch inviter %d in guild %d", inviter_id, guild_id,
                )
                result.inviter_present = False
                return result
        if inviter is None:
            result.inviter_present = False
            return result

        for role_id, should_hold in desired.items():
            holds = inviter.has_role(role_id)
            if should_hold and not holds:
                await self._mutate(guild_id, inviter_id, role_id, add=True, result=result)
            elif holds and not should_hold:
                await self._mutate(guild_id, inviter_id, role_id, add=False, result=result)

        return result

    async def _mutate(
        self, guild_id: int, inviter_id: int, role_id: int, *, add: bool,
        result: ReconcileResult,
    ) -> None:
        try:
            if add:
                await self._directory.add_role(guild_id, inviter_id, role_id)
            else:
                await self._directory.remove_role(guild_id, inviter_id, role_id)
        except DirectoryError as exc:
            result.failed.append(role_id)
            logger.error(
                "Failed to %s reward role %d %s inviter %d in guild %d: %s",
                "add" if add else "remove", role_id, "to" if add else "from",
                inviter_id, guild_id, exc,
                extra={"inviter_id": inviter_id, "role_id": role_id},
            )
            return

        if add:
            result.added.append(role_id)
            logger.info("Awarded reward role %d to inviter %d", role_id, inviter_id)
        else:
            result.removed.append(role_id)
            logger.info("Removed reward role %d from inviter %d", role_id, inviter_id)

    # -------------------------------------------------------------------
    # Incremental
    # -------------------------------------------------------------------
    async def reconcile_inviter(
        self,
        guild_id: int,
        inviter_id: int,
        invitee_ids: Sequence[int],
        rules: Sequence[ResolvedRule],
    ) -> ReconcileResult:
        """Fetch every invitee of *inviter_id*, evaluate *rules*, apply."""
        present: list[MemberState] = []
        for invitee_id in invitee_ids:
            try:
                member = await self._directory.fetch_member(guild_id, invitee_id)
            except DirectoryError as exc:
                logger.warning(
                    "Could not fetch invitee %d in guild %d, not counting it: %s",
                    invitee_id, guild_id, exc,
                )
                continue
            if member is not None:
                present.append(member)

        result = await self.apply(
            guild_id, inviter_id, desired_roles(evaluate_rules(present, rules)),
        )
        result.present_invitees = len(present)
        return result

    # -------------------------------------------------------------------
    # Retroactive
    # -------------------------------------------------------------------
    async def reconcile_group(
        self,
        guild_id: int,
        inviter_id: int,
        invitee_ids: Sequence[int],
        members: Mapping[int, MemberState],
        rules: Sequence[ResolvedRule],
    ) -> ReconcileResult:
        """Evaluate one inviter against a pre-fetched *members* map.

        Inviters with no present invitee are skipped entirely.
        """
        present = [members[i] for i in invitee_ids if i in members]
        if not present:
            return ReconcileResult(inviter_id=inviter_id, present_invitees=0)

        inviter = members.get(inviter_id)
        if inviter is None:
            return ReconcileResult(
                inviter_id=inviter_id, inviter_present=False,
                present_invitees=len(present),
            )

        result = await self.apply(
            guild_id,
            inviter_id,
            desired_roles(evaluate_rules(present, rules)),
            inviter=inviter,
        )
        result.present_invitees = len(present)
        return result
