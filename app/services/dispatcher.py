"""
Outbox dispatcher.

Drains READY rows to the broker and is the only writer of status. Each
instance runs two tasks:

- the dispatch loop: idle until a change notification or the poll timer,
  claim a batch (SKIP LOCKED + claim lease), renew each row's lease right
  before publishing it (rows whose lease lapsed are skipped), publish rows in
  created_at order, record each outcome in its own transaction;
- the retry sweep: periodically hands expired claims back to READY,
  requeues FAILED rows whose backoff elapsed, dead-letters rows that
  used up their attempts.

Several instances can run against the same table. Ordering per
(exchange_name, routing_key) holds within one instance; across instances
it is best effort.
"""
from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import ClaimConflict, InvalidTransition, PersistenceError, PublishError
from app.models.outbox import OutboxMessage, utcnow
from app.services import outbox_store
from app.services.notifier import ChangeListener, ChangeNotification, NullListener
from app.services.publisher import BrokerPublisher
from app.services.retry import RetryPolicy


log = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def make_instance_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"[-64:]


@dataclass(frozen=True)
class SweepResult:
    reclaimed: int = 0
    requeued: int = 0
    dead_lettered: int = 0


class Dispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: BrokerPublisher,
        *,
        listener: ChangeListener | None = None,
        batch_size: int = 100,
        poll_interval: float = 2.0,
        visibility_timeout: timedelta = timedelta(minutes=10),
        retry_policy: RetryPolicy | None = None,
        retry_sweep_interval: float = 5.0,
        strict_order: bool = True,
        store_backoff_max: float = 30.0,
        instance_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.publisher = publisher
        self.listener = listener or NullListener()
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.visibility_timeout = visibility_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.retry_sweep_interval = retry_sweep_interval
        self.strict_order = strict_order
        self.store_backoff_max = store_backoff_max
        self.instance_id = instance_id or make_instance_id()
        self.clock = clock

        self._wakeup = asyncio.Event()
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def from_settings(cls, session_factory, publisher, *, listener=None, settings) -> "Dispatcher":
        return cls(
            session_factory,
            publisher,
            listener=listener,
            batch_size=settings.dispatcher_batch_size,
            poll_interval=settings.dispatcher_poll_seconds,
            visibility_timeout=timedelta(seconds=settings.claim_visibility_seconds),
            retry_policy=RetryPolicy.from_settings(settings),
            retry_sweep_interval=settings.retry_sweep_seconds,
            strict_order=settings.strict_partition_order,
            store_backoff_max=settings.store_backoff_max_seconds,
        )

    # -- lifecycle --

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def notify(self, notification: ChangeNotification | None = None) -> None:
        # hint only: eligibility is re-read from the table on the next cycle
        self._wakeup.set()

    def request_stop(self) -> None:
        self._stopping.set()
        self._wakeup.set()

    async def start(self) -> None:
        if self._tasks:
            log.warning("dispatcher: already running (instance=%s)", self.instance_id)
            return

        self._stopping.clear()
        self.listener.subscribe(self.notify)
        self._tasks = [
            asyncio.create_task(self._run_loop(), name=f"outbox-dispatch-{self.instance_id}"),
            asyncio.create_task(self._sweep_loop(), name=f"outbox-sweep-{self.instance_id}"),
        ]
        log.info(
            "dispatcher: started instance=%s batch=%d poll=%.1fs sweep=%.1fs max_attempts=%d",
            self.instance_id, self.batch_size, self.poll_interval,
            self.retry_sweep_interval, self.retry_policy.max_attempts,
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """
        Graceful shutdown: no new claims, the in-flight publish completes,
        claims still held by this instance go back to READY.
        """
        if not self._tasks:
            return

        self.request_stop()
        tasks, self._tasks = self._tasks, []
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            log.warning("dispatcher: shutdown timed out after %.1fs, cancelling", timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        await self._release_own_claims()
        log.info("dispatcher: stopped instance=%s", self.instance_id)

    async def run(self, shutdown_timeout: float = 30.0) -> None:
        """Run until request_stop() is called (e.g. from a signal handler)."""
        await self.start()
        try:
            await self._stopping.wait()
        finally:
            await self.stop(timeout=shutdown_timeout)

    # -- one dispatch cycle --

    @asynccontextmanager
    async def _session(self):
        try:
            async with self.session_factory() as db:
                yield db
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"{type(e).__name__}: {e}") from e

    async def run_once(self) -> int:
        """Claim one batch and publish it. Returns the number of rows claimed."""
        with tracer.start_as_current_span("outbox.dispatch_batch") as span:
            async with self._session() as db:
                rows = await outbox_store.claim_eligible(
                    db,
                    limit=self.batch_size,
                    claimed_by=self.instance_id,
                    visibility_timeout=self.visibility_timeout,
                    now=self.clock(),
                    strict_order=self.strict_order,
                )
                await db.commit()

            span.set_attribute("outbox.claimed", len(rows))
            if not rows:
                return 0

            log.info("dispatcher: claimed %d messages", len(rows))
            await self._publish_batch(rows)
            return len(rows)

    async def _publish_batch(self, rows: list[OutboxMessage]) -> None:
        blocked: set[tuple[str, str]] = set()
        unpublished: list[uuid.UUID] = []

        for index, row in enumerate(rows):
            if self._stopping.is_set():
                unpublished.extend(r.id for r in rows[index:])
                log.info("dispatcher: stopping, releasing %d unpublished claims", len(unpublished))
                break

            if row.partition in blocked:
                # keep per-partition order: later rows wait for the failed one
                unpublished.append(row.id)
                continue

            if not await self._renew_claim(row):
                # another instance may already own (or have dispatched) the row
                log.warning("dispatcher: claim on id=%s lapsed before publish, skipping", row.id)
                if self.strict_order:
                    blocked.add(row.partition)
                continue

            if not await self._dispatch_one(row) and self.strict_order:
                blocked.add(row.partition)

        if unpublished:
            async with self._session() as db:
                await outbox_store.release_claims(db, self.instance_id, unpublished)
                await db.commit()

    async def _renew_claim(self, row: OutboxMessage) -> bool:
        """Give the row a full visibility window before it goes to the broker."""
        now = self.clock()
        async with self._session() as db:
            held = await outbox_store.extend_claim(
                db, row.id, claimed_by=self.instance_id, until=now + self.visibility_timeout, now=now,
            )
            await db.commit()
        return held

    async def _dispatch_one(self, row: OutboxMessage) -> bool:
        with tracer.start_as_current_span("outbox.publish") as span:
            span.set_attribute("messaging.destination.name", row.exchange_name)
            span.set_attribute("messaging.rabbitmq.destination.routing_key", row.routing_key)
            span.set_attribute("messaging.message.id", str(row.id))
            try:
                await self.publisher.publish(
                    row.exchange_name, row.routing_key, row.payload, message_id=str(row.id),
                )
            except PublishError as e:
                span.set_attribute("outbox.publish_error", e.error_code or "PUBLISH_ERROR")
                await self._record_failure(row, e)
                return False
            except Exception as e:
                # anything unexpected from the publisher is treated as transient
                log.exception("dispatcher: publisher raised unexpectedly for id=%s", row.id)
                await self._record_failure(row, PublishError(f"{type(e).__name__}: {e}"))
                return False

        try:
            async with self._session() as db:
                await outbox_store.mark_dispatched(db, row.id, claimed_by=self.instance_id, at=self.clock())
                await db.commit()
        except (ClaimConflict, InvalidTransition) as e:
            # published, but the claim expired and someone else owns the row now
            log.warning("dispatcher: claim lost after publish id=%s: %s", row.id, e)
        else:
            log.debug("dispatcher: dispatched id=%s exchange=%s key=%s", row.id, row.exchange_name, row.routing_key)
        return True

    async def _record_failure(self, row: OutboxMessage, error: PublishError) -> None:
        at = self.clock()
        try:
            async with self._session() as db:
                if error.retryable:
                    attempts = await outbox_store.mark_failed(
                        db, row.id, at,
                        claimed_by=self.instance_id,
                        error=str(error),
                        policy=self.retry_policy,
                    )
                else:
                    await outbox_store.mark_dead_lettered(db, row.id, at, claimed_by=self.instance_id, error=str(error))
                    attempts = None
                await db.commit()
        except (ClaimConflict, InvalidTransition) as e:
            log.warning("dispatcher: claim lost before recording failure id=%s: %s", row.id, e)
            return

        if attempts is None:
            log.error(
                "dispatcher: permanent publish failure, dead-lettered id=%s exchange=%s key=%s: %s",
                row.id, row.exchange_name, row.routing_key, error,
            )
        else:
            log.warning(
                "dispatcher: publish failed id=%s exchange=%s key=%s attempt=%d/%d: %s",
                row.id, row.exchange_name, row.routing_key, attempts, self.retry_policy.max_attempts, error,
            )

    # -- retry sweep --

    async def sweep(self) -> SweepResult:
        now = self.clock()
        async with self._session() as db:
            reclaimed = await outbox_store.reclaim_expired(db, now=now)
            requeued, dead = await outbox_store.requeue_due(db, now=now, max_attempts=self.retry_policy.max_attempts)
            await db.commit()

        result = SweepResult(reclaimed=reclaimed, requeued=requeued, dead_lettered=dead)
        if reclaimed or requeued:
            self._wakeup.set()
        if reclaimed or requeued or dead:
            log.info("dispatcher: sweep reclaimed=%d requeued=%d dead_lettered=%d", reclaimed, requeued, dead)
        return result

    # -- loops --

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _idle(self) -> None:
        await self.listener.ensure_connected()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _run_loop(self) -> None:
        failures = 0
        while not self._stopping.is_set():
            # cleared before the cycle so notifications during it trigger another one
            self._wakeup.clear()
            try:
                claimed = await self.run_once()
                failures = 0
            except PersistenceError as e:
                failures += 1
                delay = min(self.store_backoff_max, self.poll_interval * 2 ** (failures - 1))
                log.error("dispatcher: outbox store unavailable (failure %d), retrying in %.1fs: %s", failures, delay, e)
                await self._pause(delay)
                continue
            except Exception:
                log.exception("dispatcher: cycle crashed")
                await self._pause(self.poll_interval)
                continue

            if claimed < self.batch_size:
                await self._idle()

    async def _sweep_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.sweep()
            except PersistenceError as e:
                log.error("dispatcher: retry sweep failed, outbox store unavailable: %s", e)
            except Exception:
                log.exception("dispatcher: retry sweep crashed")
            await self._pause(self.retry_sweep_interval)

    async def _release_own_claims(self) -> None:
        try:
            async with self._session() as db:
                released = await outbox_store.release_claims(db, self.instance_id)
                await db.commit()
        except PersistenceError as e:
            log.warning("dispatcher: could not release claims, they expire after %s: %s", self.visibility_timeout, e)
            return
        if released:
            log.info("dispatcher: released %d claims", released)
