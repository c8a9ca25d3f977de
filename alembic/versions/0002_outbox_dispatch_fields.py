from alembic import op
import sqlalchemy as sa

revision = "0002_outbox_dispatch_fields"
down_revision = "0001_outbox_messages"
branch_labels = None
depends_on = None


def upgrade():
    op.add_column("outbox_messages", sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"))
    op.add_column("outbox_messages", sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("outbox_messages", sa.Column("claimed_by", sa.String(length=64), nullable=True))
    op.add_column("outbox_messages", sa.Column("claim_expires_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("outbox_messages", sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("outbox_messages", sa.Column("dead_lettered_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("outbox_messages", sa.Column("last_error", sa.Text(), nullable=True))

    op.create_index(
        "idx_outbox_messages_status_next_attempt_at",
        "outbox_messages",
        ["status", "next_attempt_at"],
    )
    op.create_index(
        "idx_outbox_messages_status_claim_expires_at",
        "outbox_messages",
        ["status", "claim_expires_at"],
    )


def downgrade():
    op.drop_index("idx_outbox_messages_status_claim_expires_at", table_name="outbox_messages")
    op.drop_index("idx_outbox_messages_status_next_attempt_at", table_name="outbox_messages")
    op.drop_column("outbox_messages", "last_error")
    op.drop_column("outbox_messages", "dead_lettered_at")
    op.drop_column("outbox_messages", "dispatched_at")
    op.drop_column("outbox_messages", "claim_expires_at")
    op.drop_column("outbox_messages", "claimed_by")
    op.drop_column("outbox_messages", "next_attempt_at")
    op.drop_column("outbox_messages", "retry_count")
