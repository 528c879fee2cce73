"""Create invite ledger, invite snapshot and state document tables

Revision ID: 4c2d9e7a1b3f
Revises:
Create Date: 2026-10-17 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "4c2d9e7a1b3f"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the three tables backing the persistence gateway.

    - invite_ledger: one row per (guild, invitee), authoritative
    - invite_snapshots: last observed invite use counts, replaced per poll
    - state_documents: JSON projections such as the ledger summary
    """
    op.create_table(
        "invite_ledger",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.BigInteger, nullable=False),
        sa.Column("inviter_id", sa.BigInteger, nullable=False),
        sa.Column("invitee_id", sa.BigInteger, nullable=False),
        sa.Column("position", sa.Integer, nullable=False, server_default="0"),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("guild_id", "invitee_id", name="uq_invite_ledger_invitee"),
    )
    op.create_index("ix_invite_ledger_inviter", "invite_ledger", ["guild_id", "inviter_id"])

    op.create_table(
        "invite_snapshots",
        sa.Column("guild_id", sa.BigInteger, primary_key=True),
        sa.Column("code", sa.String(64), primary_key=True),
        sa.Column("uses", sa.Integer, nullable=False, server_default="0"),
        sa.Column("inviter_id", sa.BigInteger, nullable=True),
        sa.Column("max_uses", sa.Integer, nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("temporary", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("channel_id", sa.BigInteger, nullable=True),
    )

    op.create_table(
        "state_documents",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value_json", sa.Text, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("state_documents")
    op.drop_table("invite_snapshots")
    op.drop_index("ix_invite_ledger_inviter", table_name="invite_ledger")
    op.drop_table("invite_ledger")
