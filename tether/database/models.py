"""
tether.database.models — SQLAlchemy 2.0 Data Models
====================================================

Tables:
- invite_ledger      — Inviter → invitee ledger (authoritative for rewards)
- invite_snapshots   — Last observed invite use counts per guild (cache)
- state_documents    — Key-value JSON documents (ledger summary projection)
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Tether ORM models."""


# ---------------------------------------------------------------------------
# Ledger — one row per (guild, invitee)
# ---------------------------------------------------------------------------
class LedgerEntry(Base):
    """One inviter → invitee pair.

    Rows are never deleted because an invite link expired or was deleted;
    only a member leaving or an admin removal drops them.
    """
    __tablename__ = "invite_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    inviter_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    invitee_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Insertion order under the inviter; display only
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("guild_id", "invitee_id", name="uq_invite_ledger_invitee"),
        Index("ix_invite_ledger_inviter", "guild_id", "inviter_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry guild={self.guild_id} "
            f"inviter={self.inviter_id} invitee={self.invitee_id}>"
        )


# ---------------------------------------------------------------------------
# Invite snapshots — replaced wholesale per guild on every poll
# ---------------------------------------------------------------------------
class InviteSnapshotEntry(Base):
    __tablename__ = "invite_snapshots"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    inviter_id: Mapped[int | None] = mapped_column(BigInteger, default=None)
    max_uses: Mapped[int | None] = mapped_column(Integer, default=None)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    temporary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    channel_id: Mapped[int | None] = mapped_column(BigInteger, default=None)

    def __repr__(self) -> str:
        return f"<InviteSnapshotEntry guild={self.guild_id} code={self.code!r} uses={self.uses}>"


# ---------------------------------------------------------------------------
# Key-value documents
# ---------------------------------------------------------------------------
class StateDocument(Base):
    """Key-value JSON store.

    Holds derived, read-only projections such as the per-guild ledger
    summary.  Nothing here is a source of truth.
    """
    __tablename__ = "state_documents"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<StateDocument key={self.key!r}>"
