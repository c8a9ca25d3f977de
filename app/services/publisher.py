from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, runtime_checkable

from celery import Celery
from kombu import Exchange
from kombu.exceptions import EncodeError, OperationalError

from app.core.errors import PublishError


log = logging.getLogger(__name__)

PERSISTENT_DELIVERY_MODE = 2


@runtime_checkable
class BrokerPublisher(Protocol):
    """
    Publishes one message to a topic exchange and returns once the broker
    has confirmed it. Any failure raises PublishError; `retryable=False`
    means retrying cannot help.

    Delivery is at-least-once: the same message may be published again
    after a crash, so consumers deduplicate on `message_id`.
    """

    async def publish(
        self,
        exchange_name: str,
        routing_key: str,
        payload: dict[str, Any],
        *,
        message_id: str | None = None,
    ) -> None:
        ...


class KombuPublisher:
    """
    BrokerPublisher over the Celery app's AMQP connection pool.
    Publisher confirms come from the `confirm_publish` transport option
    set in worker.celery_app.

    The blocking publish runs in a worker thread. kombu gets half of
    `timeout` to wait for the confirm and a single immediate reconnect, so
    the thread normally gives up before `publish()` stops waiting. A thread
    that still outlives the wait (e.g. stuck in a TCP connect) may deliver a
    message already recorded as FAILED; consumers dedupe on `message_id`.
    """

    def __init__(self, app: Celery, *, timeout: float = 10.0, exchange_type: str = "topic") -> None:
        self.app = app
        self.timeout = timeout
        self.exchange_type = exchange_type
        self._exchanges: dict[str, Exchange] = {}

    def _exchange(self, name: str) -> Exchange:
        exchange = self._exchanges.get(name)
        if exchange is None:
            exchange = Exchange(name, type=self.exchange_type, durable=True)
            self._exchanges[name] = exchange
        return exchange

    def _publish_sync(self, exchange_name: str, routing_key: str, payload: dict[str, Any], message_id: str | None) -> None:
        exchange = self._exchange(exchange_name)
        with self.app.producer_or_acquire() as producer:
            producer.publish(
                payload,
                exchange=exchange,
                routing_key=routing_key,
                declare=[exchange],
                serializer="json",
                delivery_mode=PERSISTENT_DELIVERY_MODE,
                message_id=message_id,
                timeout=self.timeout / 2,
                retry=True,
                retry_policy={"max_retries": 1, "interval_start": 0, "interval_step": 0, "interval_max": 0},
            )

    async def publish(
        self,
        exchange_name: str,
        routing_key: str,
        payload: dict[str, Any],
        *,
        message_id: str | None = None,
    ) -> None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._publish_sync, exchange_name, routing_key, payload, message_id),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise PublishError(f"publish timed out after {self.timeout}s", error_code="TIMEOUT") from e
        except EncodeError as e:
            raise PublishError(f"payload not serializable: {e}", retryable=False, error_code="ENCODE") from e
        except (OperationalError, ConnectionError, OSError) as e:
            raise PublishError(f"{type(e).__name__}: {e}", error_code="BROKER_UNAVAILABLE") from e
        except Exception as e:
            # broker-side rejection (nack, channel closed) surfaces as amqp errors
            raise PublishError(f"{type(e).__name__}: {e}", error_code="BROKER_ERROR") from e
