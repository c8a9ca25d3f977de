from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class OutboxMessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    exchange_name: str
    routing_key: str
    payload: dict[str, Any]
    status: str
    retry_count: int
    last_error: str | None
    created_at: datetime
    failed_at: datetime | None
    next_attempt_at: datetime | None
    dispatched_at: datetime | None
    dead_lettered_at: datetime | None


class OutboxStatsOut(BaseModel):
    counts: dict[str, int]
    oldest_ready_age_seconds: float | None


class TransitionOut(BaseModel):
    id: UUID
    status: str
