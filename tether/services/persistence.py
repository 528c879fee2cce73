"""
tether.services.persistence — Persistence Gateway
==================================================

Atomic load/save of ledger and invite-snapshot state.

Every mutation path in the bot funnels through this gateway's
load → mutate → save contract; nothing writes individual rows behind its
back.  A save runs in a single transaction:

    1. Replace the guild's ``invite_ledger`` rows with the in-memory ledger.
    2. Replace the guild's ``invite_snapshots`` rows (when a snapshot is given).
    3. Regenerate the ``ledger.summary.<guild>`` document.
    4. Commit.  On any database error the transaction rolls back, so the
       last durable state is what a reader sees.

After commit, the summary is optionally mirrored to a JSON file
(``summary_path`` in ``config.yaml``).  That file is a human-readable
projection only; a failure writing it is logged, not raised.

All methods are synchronous — call them through
:func:`~tether.database.engine.run_db` from async code.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import Engine, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tether.constants import SUMMARY_KEY_PREFIX, summary_key
from tether.database.engine import get_session
from tether.database.models import InviteSnapshotEntry, LedgerEntry, StateDocument
from tether.engine.ledger import MembershipLedger
from tether.engine.snapshot import InviteRecord, InviteSnapshot, build_snapshot
from tether.errors import PersistenceError

logger = logging.getLogger(__name__)


class PersistenceGateway:
    """SQLAlchemy-backed store for ledgers, snapshots and summaries.

    Usage::

        gateway = PersistenceGateway(engine, summary_path="member_invites.json")
        ledgers = gateway.load_all_ledgers()
        gateway.save_state(ledger, snapshot=new_snapshot)
    """

    def __init__(self, engine: Engine, *, summary_path: str | Path | None = None) -> None:
        self._engine = engine
        self._summary_path = Path(summary_path) if summary_path else None

    # -------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------
    def load_ledger(self, guild_id: int) -> MembershipLedger:
        try:
            with Session(self._engine) as session:
                rows = session.scalars(
                    select(LedgerEntry)
                    .where(LedgerEntry.guild_id == guild_id)
                    .order_by(LedgerEntry.inviter_id, LedgerEntry.position, LedgerEntry.id)
                ).all()
                return self._ledger_from_rows(guild_id, rows)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not load ledger for guild {guild_id}") from exc

    def load_all_ledgers(self) -> dict[int, MembershipLedger]:
        try:
            with Session(self._engine) as session:
                rows = session.scalars(
                    select(LedgerEntry).order_by(
                        LedgerEntry.guild_id,
                        LedgerEntry.inviter_id,
                        LedgerEntry.position,
                        LedgerEntry.id,
                    )
                ).all()
                by_guild: dict[int, list[LedgerEntry]] = {}
                for row in rows:
                    by_guild.setdefault(row.guild_id, []).append(row)
                return {
                    guild_id: self._ledger_from_rows(guild_id, guild_rows)
                    for guild_id, guild_rows in by_guild.items()
                }
        except SQLAlchemyError as exc:
            raise PersistenceError("Could not load ledgers") from exc

    def load_snapshot(self, guild_id: int) -> InviteSnapshot:
        try:
            with Session(self._engine) as session:
                rows = session.scalars(
                    select(InviteSnapshotEntry).where(InviteSnapshotEntry.guild_id == guild_id)
                ).all()
                return build_snapshot(self._record_from_row(r) for r in rows)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not load invite snapshot for guild {guild_id}") from exc

    def load_all_snapshots(self) -> dict[int, InviteSnapshot]:
        try:
            with Session(self._engine) as session:
                rows = session.scalars(select(InviteSnapshotEntry)).all()
                by_guild: dict[int, list[InviteRecord]] = {}
                for row in rows:
                    by_guild.setdefault(row.guild_id, []).append(self._record_from_row(row))
                return {gid: build_snapshot(records) for gid, records in by_guild.items()}
        except SQLAlchemyError as exc:
            raise PersistenceError("Could not load invite snapshots") from exc

    def load_summary(self, guild_id: int) -> dict | None:
        """Return the last saved summary projection for *guild_id*."""
        try:
            with Session(self._engine) as session:
                doc = session.get(StateDocument, summary_key(guild_id))
                return json.loads(doc.value_json) if doc else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not load summary for guild {guild_id}") from exc

    # -------------------------------------------------------------------
    # Saving
    # -------------------------------------------------------------------
    def save_state(
        self,
        ledger: MembershipLedger | None = None,
        *,
        guild_id: int | None = None,
        snapshot: InviteSnapshot | None = None,
    ) -> None:
        """Atomically persist *ledger* and/or *snapshot* for one guild.

        Raises
        ------
        PersistenceError
            If the transaction fails.  Nothing from this call is durable.
        """
        if ledger is None and snapshot is None:
            return
        gid = ledger.guild_id if ledger is not None else guild_id
        if gid is None:
            raise ValueError("guild_id is required when saving only a snapshot")

        try:
            with get_session(self._engine) as session:
                if ledger is not None:
                    self._write_ledger(session, ledger)
                if snapshot is not None:
                    self._write_snapshot(session, gid, snapshot)
        except SQLAlchemyError as exc:
            logger.error("Persisting state for guild %d failed: %s", gid, exc)
            raise PersistenceError(f"Could not save state for guild {gid}") from exc

        if ledger is not None:
            self._mirror_summary_file()

    def save_ledger(self, ledger: MembershipLedger) -> None:
        self.save_state(ledger)

    def save_snapshot(self, guild_id: int, snapshot: InviteSnapshot) -> None:
        self.save_state(guild_id=guild_id, snapshot=snapshot)

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    @staticmethod
    def _ledger_from_rows(guild_id: int, rows) -> MembershipLedger:
        entries: dict[int, list[int]] = {}
        for row in rows:
            entries.setdefault(row.inviter_id, []).append(row.invitee_id)
        return MembershipLedger(guild_id, entries)

    @staticmethod
    def _record_from_row(row: InviteSnapshotEntry) -> InviteRecord:
        return InviteRecord(
            code=row.code,
            uses=row.uses,
            inviter_id=row.inviter_id,
            max_uses=row.max_uses,
            expires_at=row.expires_at,
            created_at=row.created_at,
            temporary=row.temporary,
            channel_id=row.channel_id,
        )

    @staticmethod
    def _write_ledger(session: Session, ledger: MembershipLedger) -> None:
        # Pairs that survive the rewrite keep their original timestamp
        recorded = {
            (row.inviter_id, row.invitee_id): row.recorded_at
            for row in session.execute(
                select(
                    LedgerEntry.inviter_id, LedgerEntry.invitee_id, LedgerEntry.recorded_at,
                ).where(LedgerEntry.guild_id == ledger.guild_id)
            )
        }
        session.execute(delete(LedgerEntry).where(LedgerEntry.guild_id == ledger.guild_id))
        session.flush()
        now = datetime.now(UTC)
        for inviter_id, invitee_ids in ledger.to_dict().items():
            for position, invitee_id in enumerate(invitee_ids):
                session.add(LedgerEntry(
                    guild_id=ledger.guild_id,
                    inviter_id=inviter_id,
                    invitee_id=invitee_id,
                    position=position,
                    recorded_at=recorded.get((inviter_id, invitee_id)) or now,
                ))

        summary = ledger.summary()
        summary["last_updated"] = datetime.now(UTC).isoformat()
        session.merge(StateDocument(
            key=summary_key(ledger.guild_id),
            value_json=json.dumps(summary),
        ))

    @staticmethod
    def _write_snapshot(session: Session, guild_id: int, snapshot: InviteSnapshot) -> None:
        session.execute(
            delete(InviteSnapshotEntry).where(InviteSnapshotEntry.guild_id == guild_id)
        )
        session.flush()
        for record in snapshot.values():
            session.add(InviteSnapshotEntry(
                guild_id=guild_id,
                code=record.code,
                uses=record.uses,
                inviter_id=record.inviter_id,
                max_uses=record.max_uses,
                expires_at=record.expires_at,
                created_at=record.created_at,
                temporary=record.temporary,
                channel_id=record.channel_id,
            ))

    def _mirror_summary_file(self) -> None:
        """Write every guild's summary to ``summary_path`` (temp file + rename)."""
        if self._summary_path is None:
            return
        try:
            with Session(self._engine) as session:
                docs = session.scalars(
                    select(StateDocument).where(StateDocument.key.startswith(SUMMARY_KEY_PREFIX))
                ).all()
                guilds = {
                    doc.key.removeprefix(SUMMARY_KEY_PREFIX): json.loads(doc.value_json)
                    for doc in docs
                }
        except SQLAlchemyError:
            logger.exception("Could not read summaries for %s", self._summary_path)
            return

        payload = {
            "last_updated": datetime.now(UTC).isoformat(),
            "total_inviters": sum(g["total_inviters"] for g in guilds.values()),
            "total_invitees": sum(g["total_invitees"] for g in guilds.values()),
            "guilds": guilds,
        }
        target = self._summary_path
        tmp_name: str | None = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=target.parent, prefix=f".{target.name}.", suffix=".tmp",
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp_name, target)
        except (OSError, TypeError, ValueError):
            logger.exception("Could not write ledger summary file %s", target)
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
