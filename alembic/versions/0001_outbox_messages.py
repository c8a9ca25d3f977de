from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_outbox_messages"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        "outbox_messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("exchange_name", sa.String(length=255), nullable=False),
        sa.Column("routing_key", sa.String(length=255), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="READY"),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_outbox_messages_status_created_at", "outbox_messages", ["status", "created_at"])

    # wake dispatchers whenever a row is written as ready (status compared case-insensitively)
    op.execute(
        """
        CREATE OR REPLACE FUNCTION notify_outbox_message() RETURNS TRIGGER AS $$
        DECLARE
            body TEXT;
        BEGIN
            IF LOWER(NEW.status) = 'ready' THEN
                body := json_build_object(
                    'operation', TG_OP,
                    'table', TG_TABLE_NAME,
                    'data', row_to_json(NEW)
                )::text;
                IF octet_length(body) > 7900 THEN
                    body := json_build_object(
                        'operation', TG_OP,
                        'table', TG_TABLE_NAME,
                        'data', to_jsonb(NEW) - 'payload',
                        'truncated', true
                    )::text;
                END IF;
                PERFORM pg_notify('outbox_channel', body);
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER outbox_notify_trigger
            AFTER INSERT OR UPDATE ON outbox_messages
            FOR EACH ROW EXECUTE PROCEDURE notify_outbox_message();
        """
    )


def downgrade():
    op.execute("DROP TRIGGER IF EXISTS outbox_notify_trigger ON outbox_messages")
    op.execute("DROP FUNCTION IF EXISTS notify_outbox_message()")
    op.drop_index("idx_outbox_messages_status_created_at", table_name="outbox_messages")
    op.drop_table("outbox_messages")
