import asyncio
import logging
import signal

from app.core.config import settings
from app.core.db import asyncpg_dsn, make_engine, make_session_factory
from app.core.telemetry import setup_worker_telemetry
from app.services.dispatcher import Dispatcher
from app.services.notifier import NullListener, OutboxListener
from app.services.publisher import KombuPublisher
from worker.celery_app import celery


log = logging.getLogger(__name__)


def _listener():
    if not settings.listen_enabled:
        return NullListener()
    return OutboxListener(asyncpg_dsn(settings.database_url), channel=settings.outbox_channel)


async def main():
    logging.basicConfig(level=settings.log_level)
    with celery.connection_for_write() as conn:
        conn.ensure_connection(max_retries=3)

    engine = make_engine()
    setup_worker_telemetry(engine)
    Session = make_session_factory(engine)
    publisher = KombuPublisher(celery, timeout=settings.publish_timeout_seconds)

    try:
        async with _listener() as listener:
            dispatcher = Dispatcher.from_settings(Session, publisher, listener=listener, settings=settings)

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, dispatcher.request_stop)

            log.info("dispatcher: process started (listen=%s)", settings.listen_enabled)
            await dispatcher.run(shutdown_timeout=settings.shutdown_timeout_seconds)
    finally:
        await engine.dispose()
    log.info("dispatcher: process exited")


if __name__ == "__main__":
    asyncio.run(main())
