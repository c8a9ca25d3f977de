import uuid
from datetime import datetime, timezone

from sqlalchemy import DDL, Index, String, Text, Uuid, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import JSON, DateTime, Integer

from app.models.base import Base


class OutboxStatus:
    READY = "READY"
    CLAIMED = "CLAIMED"
    FAILED = "FAILED"
    DISPATCHED = "DISPATCHED"
    DEAD = "DEAD"

    ALL = (READY, CLAIMED, FAILED, DISPATCHED, DEAD)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"
    __table_args__ = (
        Index("idx_outbox_messages_status_created_at", "status", "created_at"),
        Index("idx_outbox_messages_status_next_attempt_at", "status", "next_attempt_at"),
        Index("idx_outbox_messages_status_claim_expires_at", "status", "claim_expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    exchange_name: Mapped[str] = mapped_column(String(255), nullable=False)   # e.g. "messages.events"
    routing_key: Mapped[str] = mapped_column(String(255), nullable=False)     # e.g. "messages.created"
    payload: Mapped[dict] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default=OutboxStatus.READY)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    # dispatch bookkeeping
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dead_lettered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def partition(self) -> tuple[str, str]:
        return self.exchange_name, self.routing_key


# Postgres only: wake listeners whenever a row is (re)written as ready.
# Notifications above the 8000 byte NOTIFY limit are sent without the payload.
NOTIFY_FUNCTION_SQL = """
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

NOTIFY_TRIGGER_SQL = """
CREATE TRIGGER outbox_notify_trigger
    AFTER INSERT OR UPDATE ON outbox_messages
    FOR EACH ROW EXECUTE PROCEDURE notify_outbox_message();
"""

event.listen(
    OutboxMessage.__table__, "after_create", DDL(NOTIFY_FUNCTION_SQL).execute_if(dialect="postgresql")
)
event.listen(
    OutboxMessage.__table__, "after_create", DDL(NOTIFY_TRIGGER_SQL).execute_if(dialect="postgresql")
)
