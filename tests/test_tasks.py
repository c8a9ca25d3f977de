import pytest
from celery.exceptions import Retry

from app.core.errors import PersistenceError
from app.models.outbox import OutboxStatus, utcnow
from worker import tasks


@pytest.mark.asyncio
async def test_archive_deletes_only_old_dispatched_rows(async_engine, add_message, load_message):
    old = await add_message(offset=0, status=OutboxStatus.DISPATCHED, dispatched_at=utcnow().replace(year=2020))
    recent = await add_message(offset=1, status=OutboxStatus.DISPATCHED, dispatched_at=utcnow())
    ready = await add_message(offset=2)

    url = async_engine.url.render_as_string(hide_password=False)
    assert await tasks._archive_dispatched(7, url=url) == 1

    assert await load_message(old) is None
    assert await load_message(recent) is not None
    assert await load_message(ready) is not None


def test_archive_retries_when_store_is_unavailable(monkeypatch):
    async def _down(retention_days, url=None):
        raise PersistenceError("purge_dispatched: OperationalError: connection refused")

    retried = []

    def _retry(exc=None, **kwargs):
        retried.append(exc)
        return Retry("archive retry", exc=exc)

    monkeypatch.setattr(tasks, "_archive_dispatched", _down)
    monkeypatch.setattr(tasks.archive_dispatched, "retry", _retry)

    with pytest.raises(Retry):
        tasks.archive_dispatched.run(retention_days=7)

    assert len(retried) == 1
    assert isinstance(retried[0], PersistenceError)
