"""
Outbox store: the durable staging table and its status transitions.

Every function works inside the caller's session/transaction and never
commits. Producers call `enqueue` next to their business write; the
dispatcher owns everything else.
"""
from __future__ import annotations

import functools
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from app.core.errors import ClaimConflict, InvalidTransition, PersistenceError
from app.models.outbox import OutboxMessage, OutboxStatus, utcnow
from app.services.outbox_events import OutboxEventRecord, serialize_payload
from app.services.retry import RetryPolicy


MAX_ERROR_LENGTH = 1000


def _persistence(fn):
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"{fn.__name__}: {type(e).__name__}: {e}") from e
    return wrapper


def _truncate(error: str | None) -> str | None:
    return error[:MAX_ERROR_LENGTH] if error else None


@_persistence
async def enqueue(db: AsyncSession, *, exchange_name: str, routing_key: str, payload: Any) -> uuid.UUID:
    if not exchange_name or not exchange_name.strip():
        raise ValueError("exchange_name must not be blank")
    if not routing_key or not routing_key.strip():
        raise ValueError("routing_key must not be blank")

    message = OutboxMessage(
        id=uuid.uuid4(),
        exchange_name=exchange_name,
        routing_key=routing_key,
        payload=serialize_payload(payload),
        status=OutboxStatus.READY,
        created_at=utcnow(),
    )
    db.add(message)
    # flush inside the caller's transaction so a broken insert aborts the business write too
    await db.flush()
    return message.id


@_persistence
async def enqueue_event(db: AsyncSession, record: OutboxEventRecord) -> uuid.UUID:
    message = OutboxMessage(
        id=record.id,
        exchange_name=record.routing.exchange,
        routing_key=record.routing.routing_key,
        payload=serialize_payload(record.payload),
        status=OutboxStatus.READY,
        created_at=utcnow(),
    )
    db.add(message)
    await db.flush()
    return message.id


def _eligible_stmt(limit: int, *, strict_order: bool):
    stmt = select(OutboxMessage).where(OutboxMessage.status == OutboxStatus.READY)

    if strict_order:
        # an earlier row of the same partition still in flight or waiting for retry blocks later ones
        earlier = aliased(OutboxMessage)
        blocker = (
            select(earlier.id)
            .where(
                earlier.exchange_name == OutboxMessage.exchange_name,
                earlier.routing_key == OutboxMessage.routing_key,
                earlier.status.in_((OutboxStatus.CLAIMED, OutboxStatus.FAILED)),
                or_(
                    earlier.created_at < OutboxMessage.created_at,
                    and_(earlier.created_at == OutboxMessage.created_at, earlier.id < OutboxMessage.id),
                ),
            )
            .correlate(OutboxMessage)
            .exists()
        )
        stmt = stmt.where(~blocker)

    return stmt.order_by(OutboxMessage.created_at.asc(), OutboxMessage.id.asc()).limit(limit)


@_persistence
async def fetch_eligible(
    db: AsyncSession,
    limit: int,
    *,
    lock: bool = False,
    strict_order: bool = True,
) -> list[OutboxMessage]:
    if limit <= 0:
        return []
    stmt = _eligible_stmt(limit, strict_order=strict_order)
    if lock:
        stmt = stmt.with_for_update(skip_locked=True, of=OutboxMessage)
    return list((await db.execute(stmt)).scalars().all())


@_persistence
async def claim_eligible(
    db: AsyncSession,
    *,
    limit: int,
    claimed_by: str,
    visibility_timeout: timedelta,
    now: datetime | None = None,
    strict_order: bool = True,
) -> list[OutboxMessage]:
    """
    Lock eligible rows (SKIP LOCKED) and move them to CLAIMED under `claimed_by`.
    The claim stays valid until `now + visibility_timeout`; after that
    `reclaim_expired` hands the row back to READY.
    """
    now = now or utcnow()
    rows = await fetch_eligible(db, limit, lock=True, strict_order=strict_order)
    if not rows:
        return []

    await db.execute(
        update(OutboxMessage)
        .where(OutboxMessage.id.in_([r.id for r in rows]), OutboxMessage.status == OutboxStatus.READY)
        .values(status=OutboxStatus.CLAIMED, claimed_by=claimed_by, claim_expires_at=now + visibility_timeout)
        .execution_options(synchronize_session="evaluate")
    )
    return rows


async def _current_status(db: AsyncSession, message_id: uuid.UUID) -> str | None:
    return (await db.execute(
        select(OutboxMessage.status).where(OutboxMessage.id == message_id)
    )).scalar_one_or_none()


async def _retry_count(db: AsyncSession, message_id: uuid.UUID, *, target: str) -> int:
    retry_count = (await db.execute(
        select(OutboxMessage.retry_count).where(OutboxMessage.id == message_id)
    )).scalar_one_or_none()
    if retry_count is None:
        raise InvalidTransition(message_id, target, None)
    return retry_count


async def _transition(
    db: AsyncSession,
    message_id: uuid.UUID,
    *,
    target: str,
    claimed_by: str | None,
    values: dict[str, Any],
) -> None:
    if claimed_by is None:
        allowed = (OutboxStatus.READY, OutboxStatus.CLAIMED)
    else:
        allowed = (OutboxStatus.CLAIMED,)

    stmt = update(OutboxMessage).where(OutboxMessage.id == message_id, OutboxMessage.status.in_(allowed))
    if claimed_by is not None:
        stmt = stmt.where(OutboxMessage.claimed_by == claimed_by)

    result = await db.execute(stmt.values(status=target, claimed_by=None, claim_expires_at=None, **values))
    if result.rowcount == 1:
        return

    current = await _current_status(db, message_id)
    if claimed_by is not None and current in (OutboxStatus.READY, OutboxStatus.CLAIMED):
        raise ClaimConflict(message_id, claimed_by)
    raise InvalidTransition(message_id, target, current)


@_persistence
async def mark_dispatched(
    db: AsyncSession,
    message_id: uuid.UUID,
    *,
    claimed_by: str | None = None,
    at: datetime | None = None,
) -> None:
    """Terminal. The row is kept as DISPATCHED until `purge_dispatched` archives it."""
    await _transition(
        db, message_id,
        target=OutboxStatus.DISPATCHED,
        claimed_by=claimed_by,
        values={"dispatched_at": at or utcnow(), "last_error": None},
    )


@_persistence
async def mark_failed(
    db: AsyncSession,
    message_id: uuid.UUID,
    at: datetime,
    *,
    claimed_by: str | None = None,
    error: str | None = None,
    policy: RetryPolicy | None = None,
) -> int:
    """Returns the new retry count."""
    policy = policy or RetryPolicy()
    attempts = await _retry_count(db, message_id, target=OutboxStatus.FAILED) + 1
    await _transition(
        db, message_id,
        target=OutboxStatus.FAILED,
        claimed_by=claimed_by,
        values={
            "failed_at": at,
            "retry_count": attempts,
            "next_attempt_at": policy.next_attempt_at(at, attempts),
            "last_error": _truncate(error),
        },
    )
    return attempts


@_persistence
async def mark_dead_lettered(
    db: AsyncSession,
    message_id: uuid.UUID,
    at: datetime,
    *,
    claimed_by: str | None = None,
    error: str | None = None,
) -> None:
    attempts = await _retry_count(db, message_id, target=OutboxStatus.DEAD) + 1
    await _transition(
        db, message_id,
        target=OutboxStatus.DEAD,
        claimed_by=claimed_by,
        values={
            "failed_at": at,
            "dead_lettered_at": at,
            "next_attempt_at": None,
            "retry_count": attempts,
            "last_error": _truncate(error),
        },
    )


@_persistence
async def requeue(db: AsyncSession, message_id: uuid.UUID) -> bool:
    """FAILED -> READY. Any other status (or unknown id) is left untouched and returns False."""
    result = await db.execute(
        update(OutboxMessage)
        .where(OutboxMessage.id == message_id, OutboxMessage.status == OutboxStatus.FAILED)
        .values(status=OutboxStatus.READY, failed_at=None, next_attempt_at=None)
    )
    return result.rowcount == 1


@_persistence
async def requeue_due(db: AsyncSession, *, now: datetime | None = None, max_attempts: int) -> tuple[int, int]:
    """
    Retry sweep: FAILED rows that used up their attempts go to DEAD,
    the rest go back to READY once their backoff has elapsed.
    Returns (requeued, dead_lettered).
    """
    now = now or utcnow()

    dead = await db.execute(
        update(OutboxMessage)
        .where(OutboxMessage.status == OutboxStatus.FAILED, OutboxMessage.retry_count >= max_attempts)
        .values(status=OutboxStatus.DEAD, dead_lettered_at=now, next_attempt_at=None)
        .execution_options(synchronize_session=False)
    )
    requeued = await db.execute(
        update(OutboxMessage)
        .where(
            OutboxMessage.status == OutboxStatus.FAILED,
            OutboxMessage.retry_count < max_attempts,
            or_(OutboxMessage.next_attempt_at.is_(None), OutboxMessage.next_attempt_at <= now),
        )
        .values(status=OutboxStatus.READY, failed_at=None, next_attempt_at=None)
        .execution_options(synchronize_session=False)
    )
    return int(requeued.rowcount or 0), int(dead.rowcount or 0)


@_persistence
async def reclaim_expired(db: AsyncSession, *, now: datetime | None = None) -> int:
    result = await db.execute(
        update(OutboxMessage)
        .where(
            OutboxMessage.status == OutboxStatus.CLAIMED,
            OutboxMessage.claim_expires_at.is_not(None),
            OutboxMessage.claim_expires_at < (now or utcnow()),
        )
        .values(
            status=OutboxStatus.READY,
            claimed_by=None,
            claim_expires_at=None,
            last_error="requeued: claim expired",
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


@_persistence
async def release_claims(db: AsyncSession, claimed_by: str, ids: list[uuid.UUID] | None = None) -> int:
    stmt = update(OutboxMessage).where(
        OutboxMessage.status == OutboxStatus.CLAIMED,
        OutboxMessage.claimed_by == claimed_by,
    )
    if ids is not None:
        if not ids:
            return 0
        stmt = stmt.where(OutboxMessage.id.in_(ids))

    result = await db.execute(
        stmt.values(status=OutboxStatus.READY, claimed_by=None, claim_expires_at=None)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


@_persistence
async def extend_claim(
    db: AsyncSession,
    message_id: uuid.UUID,
    *,
    claimed_by: str,
    until: datetime,
    now: datetime | None = None,
) -> bool:
    """
    Push the claim deadline of a row `claimed_by` still holds. Returns False
    when the claim already lapsed or moved to another instance; the caller
    must not publish the row then.
    """
    result = await db.execute(
        update(OutboxMessage)
        .where(
            OutboxMessage.id == message_id,
            OutboxMessage.status == OutboxStatus.CLAIMED,
            OutboxMessage.claimed_by == claimed_by,
            OutboxMessage.claim_expires_at > (now or utcnow()),
        )
        .values(claim_expires_at=until)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


@_persistence
async def revive_dead_letter(db: AsyncSession, message_id: uuid.UUID) -> bool:
    result = await db.execute(
        update(OutboxMessage)
        .where(OutboxMessage.id == message_id, OutboxMessage.status == OutboxStatus.DEAD)
        .values(
            status=OutboxStatus.READY,
            retry_count=0,
            failed_at=None,
            next_attempt_at=None,
            dead_lettered_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


@_persistence
async def purge_dispatched(db: AsyncSession, *, older_than: datetime) -> int:
    result = await db.execute(
        delete(OutboxMessage)
        .where(
            OutboxMessage.status == OutboxStatus.DISPATCHED,
            OutboxMessage.dispatched_at < older_than,
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


@_persistence
async def get_message(db: AsyncSession, message_id: uuid.UUID) -> OutboxMessage | None:
    return await db.get(OutboxMessage, message_id, populate_existing=True)


@_persistence
async def list_messages(db: AsyncSession, *, status: str | None = None, limit: int = 100) -> list[OutboxMessage]:
    stmt = select(OutboxMessage)
    if status:
        stmt = stmt.where(OutboxMessage.status == status)
    stmt = stmt.order_by(OutboxMessage.created_at.asc(), OutboxMessage.id.asc()).limit(limit)
    return list((await db.execute(stmt)).scalars().all())


@_persistence
async def outbox_stats(db: AsyncSession, *, now: datetime | None = None) -> dict[str, Any]:
    rows = (await db.execute(
        select(OutboxMessage.status, func.count()).group_by(OutboxMessage.status)
    )).all()
    counts = {status: 0 for status in OutboxStatus.ALL}
    for status, count in rows:
        counts[status] = int(count)

    oldest = (await db.execute(
        select(func.min(OutboxMessage.created_at)).where(OutboxMessage.status == OutboxStatus.READY)
    )).scalar_one_or_none()

    age = None
    if oldest is not None:
        if isinstance(oldest, str):
            # SQLite returns aggregate datetimes as text
            oldest = datetime.fromisoformat(oldest)
        if oldest.tzinfo is None:
            oldest = oldest.replace(tzinfo=(now or utcnow()).tzinfo)
        age = max(0.0, ((now or utcnow()) - oldest).total_seconds())

    return {"counts": counts, "oldest_ready_age_seconds": age}
