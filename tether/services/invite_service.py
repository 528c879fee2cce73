"""
tether.services.invite_service — Invite Attribution & Reward Pipeline
======================================================================

The service object that owns the in-memory ledgers and invite snapshots,
and drives every event through the pipeline:

    event → attribution / ledger lookup → ledger mutation
          → rule evaluation → role reconciliation → persistence commit

Join pipeline states (strictly forward, single pass, no retries)::

    UNRESOLVED → ATTRIBUTED → RECORDED → ROLES_RECONCILED

A directory failure while polling invites aborts the join with the ledger
and snapshot untouched (fail-closed).  A persistence failure restores the
in-memory ledger to its pre-event copy and propagates
:class:`~tether.errors.PersistenceError` to the caller.

Concurrency:
    One ``asyncio.Lock`` per guild spans "mutate → evaluate → apply →
    persist" for every live event and admin mutation.  The retroactive
    pass fetches the member list once without the lock and then takes it
    per inviter, so incremental events keep flowing during a long pass.

Lifecycle::

    service = InviteRewardService(gateway, directory, cfg.rules)
    await service.open()        # load ledgers + snapshots
    ...
    await service.close()       # flush everything
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from tether.database.engine import run_db
from tether.engine.attribution import Attribution, attribute
from tether.engine.directory import GuildDirectory
from tether.engine.events import (
    EventKind,
    GuildEvent,
    InviteCreated,
    InviteDeleted,
    MemberJoined,
    MemberLeft,
    MemberRolesChanged,
)
from tether.engine.ledger import AddResult, MembershipLedger
from tether.engine.reconciler import ReconcileResult, Reconciler
from tether.engine.rules import ResolvedRule, Rule, resolve_rules
from tether.engine.snapshot import (
    InviteRecord,
    InviteSnapshot,
    InviteSnapshotStore,
    build_snapshot,
    with_record,
    without_code,
)
from tether.errors import DirectoryError, PersistenceError
from tether.services.persistence import PersistenceGateway

logger = logging.getLogger(__name__)


class JoinStage(enum.StrEnum):
    UNRESOLVED = "unresolved"
    ATTRIBUTED = "attributed"
    RECORDED = "recorded"
    ROLES_RECONCILED = "roles_reconciled"


@dataclass
class JoinOutcome:
    """How far one ``MemberJoined`` got through the pipeline."""

    stage: JoinStage = JoinStage.UNRESOLVED
    attribution: Attribution | None = None
    created: bool = False
    reconciled: list[ReconcileResult] = field(default_factory=list)

    @property
    def inviter_id(self) -> int | None:
        return self.attribution.inviter_id if self.attribution else None


@dataclass
class RetroactiveSummary:
    """Totals from one retroactive pass over a guild."""

    guild_id: int
    inviters: int = 0
    invitees: int = 0
    added: int = 0
    removed: int = 0
    failed: int = 0
    aborted: bool = False

    @property
    def mutations(self) -> int:
        return self.added + self.removed

    def to_dict(self) -> dict:
        return {
            "guild_id": self.guild_id,
            "inviters": self.inviters,
            "invitees": self.invitees,
            "added": self.added,
            "removed": self.removed,
            "failed": self.failed,
            "aborted": self.aborted,
        }


class InviteRewardService:
    """Ledger owner and single writer for invite-reward state.

    Parameters
    ----------
    gateway:
        Where ledgers and snapshots are loaded from and saved to.
    directory:
        The guild directory used for invite polls, member fetches and role
        mutations.
    rules:
        Configured reward rules, in evaluation order.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        directory: GuildDirectory,
        rules: Sequence[Rule],
    ) -> None:
        self._gateway = gateway
        self._directory = directory
        self._rules: tuple[Rule, ...] = tuple(rules)
        self._reconciler = Reconciler(directory)
        self._snapshots = InviteSnapshotStore()
        self._ledgers: dict[int, MembershipLedger] = {}
        self._locks: dict[int, asyncio.Lock] = {}
        self._opened = False

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    async def open(self) -> None:
        """Load every persisted ledger and invite snapshot."""
        ledgers = await run_db(self._gateway.load_all_ledgers)
        snapshots = await run_db(self._gateway.load_all_snapshots)
        self._ledgers = ledgers
        self._snapshots = InviteSnapshotStore(snapshots)
        self._opened = True
        logger.info(
            "Invite service opened: %d ledgers (%d invitees), %d snapshots",
            len(ledgers), sum(len(ledger) for ledger in ledgers.values()), len(snapshots),
        )

    async def close(self) -> None:
        """Flush every guild's ledger and snapshot."""
        if not self._opened:
            return
        snapshot_guilds = set(self._snapshots.guild_ids())
        for guild_id in sorted(set(self._ledgers) | snapshot_guilds):
            async with self._lock(guild_id):
                await run_db(
                    self._gateway.save_state,
                    self._ledgers.get(guild_id),
                    guild_id=guild_id,
                    snapshot=(
                        self._snapshots.get(guild_id) if guild_id in snapshot_guilds else None
                    ),
                )
        self._opened = False
        logger.info("Invite service closed")

    @property
    def rules(self) -> tuple[Rule, ...]:
        return self._rules

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    def _lock(self, guild_id: int) -> asyncio.Lock:
        lock = self._locks.get(guild_id)
        if lock is None:
            lock = self._locks[guild_id] = asyncio.Lock()
        return lock

    def ledger(self, guild_id: int) -> MembershipLedger:
        ledger = self._ledgers.get(guild_id)
        if ledger is None:
            ledger = self._ledgers[guild_id] = MembershipLedger(guild_id)
        return ledger

    def snapshot(self, guild_id: int) -> InviteSnapshot:
        return self._snapshots.get(guild_id)

    def resolved_rules(self, guild_id: int) -> list[ResolvedRule]:
        return resolve_rules(guild_id, self._rules, self._directory.resolve_role)

    async def _poll_invites(self, guild_id: int) -> InviteSnapshot:
        return build_snapshot(await self._directory.list_invites(guild_id))

    async def _commit(
        self,
        ledger: MembershipLedger,
        backup: MembershipLedger,
        *,
        snapshot: InviteSnapshot | None = None,
    ) -> None:
        """Persist *ledger*; on failure roll the in-memory copy back."""
        try:
            await run_db(self._gateway.save_state, ledger, snapshot=snapshot)
        except PersistenceError:
            ledger.restore(backup)
            raise

    async def _reconcile(self, guild_id: int, inviter_id: int) -> ReconcileResult | None:
        """Incremental reconciliation for one inviter (caller holds the lock)."""
        rules = self.resolved_rules(guild_id)
        if not rules:
            return None
        return await self._reconciler.reconcile_inviter(
            guild_id, inviter_id, self.ledger(guild_id).invitees_of(inviter_id), rules,
        )

    # -------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------
    async def prime_guild(self, guild_id: int) -> int:
        """Take a fresh invite snapshot for *guild_id* and persist it.

        Returns the number of invites catalogued, or ``-1`` when the poll
        failed (the previous snapshot is kept).
        """
        async with self._lock(guild_id):
            try:
                snapshot = await self._poll_invites(guild_id)
            except DirectoryError as exc:
                logger.warning("Could not catalogue invites for guild %d: %s", guild_id, exc)
                return -1
            await run_db(self._gateway.save_snapshot, guild_id, snapshot)
            self._snapshots.replace(guild_id, snapshot)
        logger.info("Catalogued %d active invites for guild %d", len(snapshot), guild_id)
        return len(snapshot)

    # -------------------------------------------------------------------
    # Event dispatch
    # -------------------------------------------------------------------
    async def handle_event(self, event: GuildEvent):
        """Route a typed event to its handler.  Errors propagate."""
        handlers = {
            EventKind.MEMBER_JOINED: self.on_member_joined,
            EventKind.MEMBER_LEFT: self.on_member_left,
            EventKind.MEMBER_ROLES_CHANGED: self.on_member_roles_changed,
            EventKind.INVITE_CREATED: self.on_invite_created,
            EventKind.INVITE_DELETED: self.on_invite_deleted,
        }
        return await handlers[event.kind](event)

    async def on_member_joined(self, event: MemberJoined) -> JoinOutcome:
        outcome = JoinOutcome()
        guild_id = event.guild_id

        async with self._lock(guild_id):
            old = self._snapshots.get(guild_id)
            try:
                new = await self._poll_invites(guild_id)
            except DirectoryError as exc:
                logger.error(
                    "Invite poll failed for join of %d in guild %d; ledger unchanged: %s",
                    event.user_id, guild_id, exc,
                    extra={"event_type": event.kind, "user_id": event.user_id},
                )
                return outcome

            attribution = attribute(old, new)
            ledger = self.ledger(guild_id)

            if attribution is None or attribution.inviter_id is None:
                await run_db(self._gateway.save_snapshot, guild_id, new)
                self._snapshots.replace(guild_id, new)
                logger.info(
                    "Could not determine who invited %d in guild %d", event.user_id, guild_id,
                    extra={"event_type": event.kind, "user_id": event.user_id},
                )
                outcome.attribution = attribution
                return outcome

            outcome.attribution = attribution
            outcome.stage = JoinStage.ATTRIBUTED

            backup = ledger.copy()
            added: AddResult = ledger.add_invitee(attribution.inviter_id, event.user_id)
            await self._commit(ledger, backup, snapshot=new)
            self._snapshots.replace(guild_id, new)
            outcome.created = added.created
            outcome.stage = JoinStage.RECORDED
            logger.info(
                "%d was invited by %d (code: %s)",
                event.user_id, attribution.inviter_id, attribution.code,
                extra={"event_type": event.kind, "user_id": event.user_id},
            )

            for inviter_id in (attribution.inviter_id, added.previous_inviter):
                if inviter_id is None:
                    continue
                result = await self._reconcile(guild_id, inviter_id)
                if result is not None:
                    outcome.reconciled.append(result)
            outcome.stage = JoinStage.ROLES_RECONCILED

        return outcome

    async def on_member_left(self, event: MemberLeft) -> ReconcileResult | None:
        guild_id = event.guild_id
        async with self._lock(guild_id):
            ledger = self.ledger(guild_id)
            backup = ledger.copy()
            inviter_id = ledger.remove_invitee(event.user_id)
            if inviter_id is None:
                return None
            await self._commit(ledger, backup)
            logger.info(
                "%d left guild %d. They were invited by %d",
                event.user_id, guild_id, inviter_id,
                extra={"event_type": event.kind, "user_id": event.user_id},
            )
            return await self._reconcile(guild_id, inviter_id)

    async def on_member_roles_changed(self, event: MemberRolesChanged) -> ReconcileResult | None:
        if event.old_roles == event.new_roles:
            return None
        guild_id = event.guild_id
        async with self._lock(guild_id):
            inviter_id = self.ledger(guild_id).inviter_of(event.user_id)
            if inviter_id is None:
                return None
            return await self._reconcile(guild_id, inviter_id)

    async def on_invite_created(self, event: InviteCreated) -> None:
        """Catalogue the new code with zero uses.

        The directory is not re-polled here: a join still queued behind
        this event would have its use increment absorbed by the poll.
        """
        guild_id = event.guild_id
        async with self._lock(guild_id):
            old = self._snapshots.get(guild_id)
            if event.code not in old:
                new = with_record(old, InviteRecord(code=event.code, inviter_id=event.inviter_id))
                await run_db(self._gateway.save_snapshot, guild_id, new)
                self._snapshots.replace(guild_id, new)
        logger.info(
            "Invite created in guild %d: %s by %s",
            guild_id, event.code, event.inviter_id or "unknown",
            extra={"event_type": event.kind},
        )

    async def on_invite_deleted(self, event: InviteDeleted) -> ReconcileResult | None:
        """Drop the code from the snapshot and re-verify the inviter's rewards.

        The ledger is never touched: rewards stay tied to recorded invitees.
        """
        guild_id = event.guild_id
        async with self._lock(guild_id):
            old = self._snapshots.get(guild_id)
            if event.code in old:
                new = without_code(old, event.code)
                await run_db(self._gateway.save_snapshot, guild_id, new)
                self._snapshots.replace(guild_id, new)
            logger.info(
                "Invite deleted in guild %d: %s. Rewards stay tied to recorded invitees",
                guild_id, event.code,
                extra={"event_type": event.kind},
            )
            if event.inviter_id is None:
                return None
            if not self.ledger(guild_id).invitees_of(event.inviter_id):
                return None
            return await self._reconcile(guild_id, event.inviter_id)

    # -------------------------------------------------------------------
    # Admin surface
    # -------------------------------------------------------------------
    async def add_mapping(self, guild_id: int, inviter_id: int, invitee_id: int) -> AddResult:
        """Record inviter → invitee by hand and reconcile as for a live join."""
        async with self._lock(guild_id):
            ledger = self.ledger(guild_id)
            backup = ledger.copy()
            result = ledger.add_invitee(inviter_id, invitee_id)
            if result.created:
                await self._commit(ledger, backup)
                logger.info(
                    "Admin recorded inviter %d → invitee %d in guild %d",
                    inviter_id, invitee_id, guild_id,
                )
            await self._reconcile(guild_id, inviter_id)
            if result.previous_inviter is not None:
                await self._reconcile(guild_id, result.previous_inviter)
        return result

    async def remove_mapping(self, guild_id: int, inviter_id: int, invitee_id: int) -> bool:
        """Drop inviter → invitee by hand; ``False`` when no such mapping."""
        async with self._lock(guild_id):
            ledger = self.ledger(guild_id)
            backup = ledger.copy()
            if not ledger.remove_mapping(inviter_id, invitee_id):
                return False
            await self._commit(ledger, backup)
            logger.info(
                "Admin removed inviter %d → invitee %d in guild %d",
                inviter_id, invitee_id, guild_id,
            )
            await self._reconcile(guild_id, inviter_id)
        return True

    def list_invitees(self, guild_id: int, inviter_id: int) -> list[int]:
        return self.ledger(guild_id).invitees_of(inviter_id)

    # -------------------------------------------------------------------
    # Retroactive pass
    # -------------------------------------------------------------------
    async def run_retroactive_pass(self, guild_id: int) -> RetroactiveSummary:
        """Recompute every inviter's reward roles from current membership.

        The member list is fetched once for the whole guild; each inviter
        is then evaluated once under the guild lock.
        """
        summary = RetroactiveSummary(guild_id=guild_id)
        logger.info("Applying roles retroactively for guild %d…", guild_id)

        try:
            members = {m.id: m for m in await self._directory.list_members(guild_id)}
        except DirectoryError as exc:
            logger.error("Retroactive pass for guild %d aborted: %s", guild_id, exc)
            summary.aborted = True
            return summary

        rules = self.resolved_rules(guild_id)
        if not rules:
            logger.info("No resolvable reward rules for guild %d; nothing to do", guild_id)
            return summary

        for inviter_id in sorted(self.ledger(guild_id).all_inviters()):
            async with self._lock(guild_id):
                invitee_ids = self.ledger(guild_id).invitees_of(inviter_id)
                result = await self._reconciler.reconcile_group(
                    guild_id, inviter_id, invitee_ids, members, rules,
                )
            if result.present_invitees == 0:
                continue
            summary.inviters += 1
            summary.invitees += result.present_invitees
            summary.added += len(result.added)
            summary.removed += len(result.removed)
            summary.failed += len(result.failed)

        logger.info(
            "Retroactively processed %d inviters with %d total invitees in guild %d "
            "(+%d / -%d roles, %d failed)",
            summary.inviters, summary.invitees, guild_id,
            summary.added, summary.removed, summary.failed,
        )
        return summary
