from app.models.base import Base  # noqa: F401

from app.models.outbox import OutboxMessage, OutboxStatus  # noqa: F401
