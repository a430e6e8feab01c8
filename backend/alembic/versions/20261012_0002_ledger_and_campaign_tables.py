"""Create idempotency ledger and campaign tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261012_0002"
down_revision = "20261012_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "idempotency_ledger",
        sa.Column("entry_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("idempotency_key", sa.String(length=256), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("recipient", sa.String(length=64), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("entry_id"),
    )
    op.create_index("ix_idempotency_ledger_idempotency_key", "idempotency_ledger", ["idempotency_key"], unique=False)
    op.create_index("ix_idempotency_ledger_event_type", "idempotency_ledger", ["event_type"], unique=False)
    op.create_index("ix_idempotency_ledger_processed_at", "idempotency_ledger", ["processed_at"], unique=False)
    op.create_index(
        "uq_idempotency_ledger_success",
        "idempotency_ledger",
        ["idempotency_key", "event_type"],
        unique=True,
        postgresql_where=sa.text("outcome = 'SUCCESS'"),
        sqlite_where=sa.text("outcome = 'SUCCESS'"),
    )

    op.create_table(
        "campaigns",
        sa.Column("campaign_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("template_name", sa.String(length=128), nullable=False),
        sa.Column("variables", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="sending"),
        sa.Column("audience_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("campaign_id"),
    )
    op.create_index("ix_campaigns_created_at", "campaigns", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_campaigns_created_at", table_name="campaigns")
    op.drop_table("campaigns")

    op.drop_index("uq_idempotency_ledger_success", table_name="idempotency_ledger")
    op.drop_index("ix_idempotency_ledger_processed_at", table_name="idempotency_ledger")
    op.drop_index("ix_idempotency_ledger_event_type", table_name="idempotency_ledger")
    op.drop_index("ix_idempotency_ledger_idempotency_key", table_name="idempotency_ledger")
    op.drop_table("idempotency_ledger")
