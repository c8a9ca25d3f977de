from celery import Celery
from celery.schedules import crontab

from app.core.config import settings


celery = Celery(
    "outbox-relay",
    broker=settings.rabbitmq_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="outbox-relay.maintenance",
    task_ignore_result=True,
    # publisher confirms: producer.publish() returns only once the broker acked
    broker_transport_options={"confirm_publish": True},
    broker_connection_retry_on_startup=True,
    beat_schedule={
        "archive-dispatched-outbox": {
            "task": "worker.tasks.archive_dispatched",
            "schedule": crontab(minute=0),
        },
    },
)
