from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.models.outbox import OutboxStatus
from app.schemas.outbox import OutboxMessageOut, OutboxStatsOut, TransitionOut
from app.services import outbox_store
from app.services.internal_admin import require_internal_admin

router = APIRouter(prefix="/internal/outbox", dependencies=[Depends(require_internal_admin)])


@router.get("/stats", response_model=OutboxStatsOut)
async def outbox_stats(db: AsyncSession = Depends(get_db)) -> OutboxStatsOut:
    return OutboxStatsOut(**await outbox_store.outbox_stats(db))


@router.get("/messages", response_model=list[OutboxMessageOut])
async def list_outbox_messages(
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
) -> list[OutboxMessageOut]:
    if status is not None:
        status = status.upper()
        if status not in OutboxStatus.ALL:
            raise HTTPException(status_code=422, detail=f"Unknown status {status}")

    rows = await outbox_store.list_messages(db, status=status, limit=limit)
    return [OutboxMessageOut.model_validate(r) for r in rows]


@router.get("/messages/{message_id}", response_model=OutboxMessageOut)
async def get_outbox_message(message_id: UUID, db: AsyncSession = Depends(get_db)) -> OutboxMessageOut:
    row = await outbox_store.get_message(db, message_id)
    if not row:
        raise HTTPException(status_code=404, detail="Outbox message not found")
    return OutboxMessageOut.model_validate(row)


async def _current_status_or_404(db: AsyncSession, message_id: UUID) -> str:
    row = await outbox_store.get_message(db, message_id)
    if not row:
        raise HTTPException(status_code=404, detail="Outbox message not found")
    return row.status


@router.post("/messages/{message_id}/requeue", response_model=TransitionOut)
async def requeue_outbox_message(message_id: UUID, db: AsyncSession = Depends(get_db)) -> TransitionOut:
    if not await outbox_store.requeue(db, message_id):
        current = await _current_status_or_404(db, message_id)
        raise HTTPException(status_code=409, detail=f"Only FAILED messages can be requeued (status={current})")
    await db.commit()
    return TransitionOut(id=message_id, status=OutboxStatus.READY)


@router.post("/messages/{message_id}/revive", response_model=TransitionOut)
async def revive_outbox_message(message_id: UUID, db: AsyncSession = Depends(get_db)) -> TransitionOut:
    if not await outbox_store.revive_dead_letter(db, message_id):
        current = await _current_status_or_404(db, message_id)
        raise HTTPException(status_code=409, detail=f"Only DEAD messages can be revived (status={current})")
    await db.commit()
    return TransitionOut(id=message_id, status=OutboxStatus.READY)
