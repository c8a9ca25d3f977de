import asyncio
import logging
from datetime import timedelta

from app.core.config import settings
from app.core.db import make_engine, make_session_factory
from app.core.errors import PersistenceError
from app.models.outbox import utcnow
from app.services.outbox_store import purge_dispatched
from worker.celery_app import celery


log = logging.getLogger(__name__)


async def _archive_dispatched(retention_days: int, url: str | None = None) -> int:
    engine = make_engine(url)
    Session = make_session_factory(engine)

    try:
        async with Session() as db:
            deleted = await purge_dispatched(db, older_than=utcnow() - timedelta(days=retention_days))
            await db.commit()
    finally:
        await engine.dispose()

    log.info("archive: deleted %d dispatched outbox rows older than %d days", deleted, retention_days)
    return deleted


@celery.task(name="worker.tasks.archive_dispatched", bind=True, max_retries=3, default_retry_delay=300)
def archive_dispatched(self, retention_days: int | None = None) -> int:
    days = settings.dispatched_retention_days if retention_days is None else retention_days
    try:
        return asyncio.run(_archive_dispatched(days))
    except PersistenceError as e:
        log.warning("archive: outbox store unavailable, retrying: %s", e)
        raise self.retry(exc=e)
