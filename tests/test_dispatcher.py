import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine

from app.core.db import make_session_factory
from app.models.outbox import OutboxMessage, OutboxStatus
from app.services import outbox_store
from app.services.dispatcher import Dispatcher, SweepResult
from app.services.notifier import ChangeNotification
from app.services.retry import RetryPolicy


def make_dispatcher(session_factory, publisher, clock, **kwargs) -> Dispatcher:
    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, base_seconds=1, jitter=False))
    kwargs.setdefault("poll_interval", 0.05)
    kwargs.setdefault("retry_sweep_interval", 0.05)
    kwargs.setdefault("instance_id", "dispatcher-a")
    return Dispatcher(session_factory, publisher, clock=clock, **kwargs)


@pytest.mark.asyncio
async def test_notification_wakes_idle_dispatcher_and_row_is_dispatched(
    session_factory, publisher, listener, clock, load_message,
):
    # poll interval far beyond the test timeout: only the notification can wake it
    dispatcher = make_dispatcher(session_factory, publisher, clock, listener=listener, poll_interval=60)
    await dispatcher.start()
    try:
        await asyncio.sleep(0.1)  # first cycle finds nothing and goes idle

        async with session_factory() as db:
            message_id = await outbox_store.enqueue(
                db, exchange_name="messages.events", routing_key="messages.created", payload={"id": "m1"},
            )
            await db.commit()

        listener.fire(ChangeNotification(
            operation="INSERT",
            table="outbox_messages",
            data={"id": str(message_id), "status": "ready"},
        ))
        await asyncio.wait_for(publisher.published_event.wait(), timeout=3)
    finally:
        await dispatcher.stop()

    assert publisher.published == [("messages.events", "messages.created", {"id": "m1"}, str(message_id))]
    row = await load_message(message_id)
    assert row.status == OutboxStatus.DISPATCHED
    assert row.claimed_by is None


@pytest.mark.asyncio
async def test_poll_timer_picks_up_rows_without_notification(session_factory, publisher, clock, add_message, load_message):
    message_id = await add_message()
    dispatcher = make_dispatcher(session_factory, publisher, clock, poll_interval=0.05)

    await dispatcher.start()
    try:
        await asyncio.wait_for(publisher.published_event.wait(), timeout=3)
    finally:
        await dispatcher.stop()

    assert (await load_message(message_id)).status == OutboxStatus.DISPATCHED


@pytest.mark.asyncio
async def test_rows_of_a_partition_publish_in_created_at_order(session_factory, publisher, clock, add_message):
    expected = {"k1": [], "k2": []}
    for offset, key in enumerate(["k1", "k2", "k1", "k1", "k2", "k2", "k1"]):
        expected[key].append(str(await add_message(key, offset=offset)))

    dispatcher = make_dispatcher(session_factory, publisher, clock, batch_size=3)
    while await dispatcher.run_once():
        pass

    for key, ids in expected.items():
        assert [c[3] for c in publisher.published if c[1] == key] == ids


@pytest.mark.asyncio
async def test_failing_partition_does_not_block_others(session_factory, publisher, clock, add_message, load_message):
    k1_first = await add_message("k1", offset=0)
    k2_first = await add_message("k2", offset=1)
    k1_second = await add_message("k1", offset=2)
    k2_second = await add_message("k2", offset=3)
    publisher.fail_keys = {"k1"}

    dispatcher = make_dispatcher(session_factory, publisher, clock)
    assert await dispatcher.run_once() == 4

    assert publisher.published_ids() == [str(k2_first), str(k2_second)]
    # k1_second was never attempted: it waits behind the failed row
    assert [c[3] for c in publisher.attempts if c[1] == "k1"] == [str(k1_first)]

    first = await load_message(k1_first)
    assert first.status == OutboxStatus.FAILED
    assert first.failed_at is not None
    second = await load_message(k1_second)
    assert second.status == OutboxStatus.READY
    assert second.claimed_by is None
    assert (await load_message(k2_second)).status == OutboxStatus.DISPATCHED


@pytest.mark.asyncio
async def test_relaxed_ordering_keeps_publishing_after_a_failure(session_factory, publisher, clock, add_message, load_message):
    failing = await add_message("k1", offset=0)
    later = await add_message("k1", offset=1, payload={"ok": True})

    async def _fail_first(call):
        if call[3] == str(failing):
            raise RuntimeError("boom")

    publisher.before_publish = _fail_first
    dispatcher = make_dispatcher(session_factory, publisher, clock, strict_order=False)
    await dispatcher.run_once()

    assert publisher.published_ids() == [str(later)]
    assert (await load_message(failing)).status == OutboxStatus.FAILED


@pytest.mark.asyncio
async def test_always_failing_broker_retries_then_dead_letters(session_factory, publisher, clock, add_message, load_message):
    message_id = await add_message("messages.created", exchange_name="messages.events", payload={"id": "m1"})
    publisher.fail_keys = {"messages.created"}
    dispatcher = make_dispatcher(session_factory, publisher, clock)

    failed_at = []
    for attempt in range(1, 4):
        assert await dispatcher.run_once() == 1
        row = await load_message(message_id)
        assert row.status == OutboxStatus.FAILED
        assert row.retry_count == attempt
        failed_at.append(row.failed_at)

        clock.advance(60)
        result = await dispatcher.sweep()
        if attempt < 3:
            assert result == SweepResult(requeued=1)
            assert (await load_message(message_id)).status == OutboxStatus.READY

    assert failed_at == sorted(failed_at) and len(set(failed_at)) == 3
    assert len(publisher.attempts) == 3
    assert result == SweepResult(dead_lettered=1)

    row = await load_message(message_id)
    assert row.status == OutboxStatus.DEAD
    assert row.dead_lettered_at is not None

    async with session_factory() as db:
        assert await outbox_store.fetch_eligible(db, 10) == []
    assert await dispatcher.run_once() == 0
    assert len(publisher.attempts) == 3


@pytest.mark.asyncio
async def test_sweep_respects_backoff(session_factory, publisher, clock, add_message, load_message):
    message_id = await add_message()
    publisher.fail_keys = {"messages.created"}
    dispatcher = make_dispatcher(
        session_factory, publisher, clock,
        retry_policy=RetryPolicy(max_attempts=3, base_seconds=30, jitter=False),
    )
    await dispatcher.run_once()

    clock.advance(10)
    assert await dispatcher.sweep() == SweepResult()
    assert (await load_message(message_id)).status == OutboxStatus.FAILED

    clock.advance(25)
    assert await dispatcher.sweep() == SweepResult(requeued=1)


@pytest.mark.asyncio
async def test_permanent_publish_failure_dead_letters_immediately(session_factory, publisher, clock, add_message, load_message):
    message_id = await add_message("poison")
    publisher.permanent_keys = {"poison"}
    dispatcher = make_dispatcher(session_factory, publisher, clock)

    await dispatcher.run_once()

    row = await load_message(message_id)
    assert row.status == OutboxStatus.DEAD
    assert row.last_error == "payload rejected"


@pytest.mark.asyncio
async def test_unexpected_publisher_error_is_retryable(session_factory, publisher, clock, add_message, load_message):
    message_id = await add_message()
    publisher.raise_unexpected = True
    dispatcher = make_dispatcher(session_factory, publisher, clock)

    await dispatcher.run_once()

    row = await load_message(message_id)
    assert row.status == OutboxStatus.FAILED
    assert "RuntimeError" in row.last_error


@pytest.mark.asyncio
async def test_two_instances_never_publish_the_same_row(session_factory, publisher, clock, add_message, load_message):
    ids = [await add_message(f"k{i}", offset=i) for i in range(6)]
    a = make_dispatcher(session_factory, publisher, clock, instance_id="a", batch_size=4)
    b = make_dispatcher(session_factory, publisher, clock, instance_id="b", batch_size=4)

    # a holds its claims while b runs a full cycle
    async def _b_runs_while_a_publishes(call):
        publisher.before_publish = None
        assert await b.run_once() == 2

    publisher.before_publish = _b_runs_while_a_publishes
    assert await a.run_once() == 4
    assert await a.run_once() == 0
    assert await b.run_once() == 0

    published = publisher.published_ids()
    assert sorted(published) == sorted(str(i) for i in ids)
    assert len(published) == len(set(published))
    for message_id in ids:
        assert (await load_message(message_id)).status == OutboxStatus.DISPATCHED


@pytest.mark.asyncio
async def test_claims_of_a_crashed_instance_are_recovered(session_factory, publisher, clock, add_message, load_message):
    message_id = await add_message()

    # "crashed" claims the row and never comes back
    async with session_factory() as db:
        await outbox_store.claim_eligible(
            db, limit=10, claimed_by="crashed", visibility_timeout=timedelta(seconds=30), now=clock(),
        )
        await db.commit()

    survivor = make_dispatcher(session_factory, publisher, clock, instance_id="survivor")
    assert await survivor.run_once() == 0

    clock.advance(10)
    assert (await survivor.sweep()).reclaimed == 0

    clock.advance(30)
    assert (await survivor.sweep()).reclaimed == 1
    assert await survivor.run_once() == 1

    assert publisher.published_ids() == [str(message_id)]
    assert (await load_message(message_id)).status == OutboxStatus.DISPATCHED


@pytest.mark.asyncio
async def test_claim_taken_over_during_publish_is_not_overwritten(session_factory, publisher, clock, add_message, load_message):
    message_id = await add_message()

    async def _steal(call):
        async with session_factory() as db:
            await db.execute(
                update(OutboxMessage).where(OutboxMessage.id == message_id).values(claimed_by="thief")
            )
            await db.commit()

    publisher.before_publish = _steal
    dispatcher = make_dispatcher(session_factory, publisher, clock)
    assert await dispatcher.run_once() == 1

    row = await load_message(message_id)
    assert row.status == OutboxStatus.CLAIMED
    assert row.claimed_by == "thief"


@pytest.mark.asyncio
async def test_graceful_stop_finishes_in_flight_publish_and_releases_claims(
    session_factory, publisher, clock, add_message, load_message,
):
    ids = [await add_message(offset=i) for i in range(3)]
    in_flight = asyncio.Event()
    gate = asyncio.Event()

    async def _hold(call):
        in_flight.set()
        await gate.wait()

    publisher.before_publish = _hold
    dispatcher = make_dispatcher(session_factory, publisher, clock)
    await dispatcher.start()

    await asyncio.wait_for(in_flight.wait(), timeout=3)
    dispatcher.request_stop()
    gate.set()
    await dispatcher.stop()

    assert not dispatcher.running
    assert publisher.published_ids() == [str(ids[0])]
    assert (await load_message(ids[0])).status == OutboxStatus.DISPATCHED
    for message_id in ids[1:]:
        row = await load_message(message_id)
        assert row.status == OutboxStatus.READY
        assert row.claimed_by is None


@pytest.mark.asyncio
async def test_store_outage_pauses_the_loop_without_crashing(tmp_path, publisher, clock):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'outbox.db'}")
    dispatcher = make_dispatcher(
        make_session_factory(engine), publisher, clock, poll_interval=0.01, store_backoff_max=0.02,
    )
    try:
        await dispatcher.start()
        await asyncio.sleep(0.2)
        assert dispatcher.running
        assert all(not task.done() for task in dispatcher._tasks)
        await dispatcher.stop()
    finally:
        await engine.dispose()

    assert publisher.attempts == []


@pytest.mark.asyncio
async def test_row_whose_claim_lapsed_mid_batch_is_not_published_again(
    session_factory, publisher, clock, add_message, load_message,
):
    first = await add_message("k1", offset=0)
    second = await add_message("k2", offset=1)
    lease = timedelta(seconds=30)
    a = make_dispatcher(session_factory, publisher, clock, instance_id="a", visibility_timeout=lease)
    b = make_dispatcher(session_factory, publisher, clock, instance_id="b", visibility_timeout=lease)

    # a's first publish outlives the lease; b recovers both rows and dispatches them
    async def _slow_broker(call):
        publisher.before_publish = None
        clock.advance(60)
        assert (await b.sweep()).reclaimed == 2
        assert await b.run_once() == 2

    publisher.before_publish = _slow_broker
    assert await a.run_once() == 2

    attempted = [c[3] for c in publisher.attempts]
    assert attempted.count(str(second)) == 1
    assert publisher.published_ids().count(str(second)) == 1
    for message_id in (first, second):
        row = await load_message(message_id)
        assert row.status == OutboxStatus.DISPATCHED


@pytest.mark.asyncio
async def test_claim_is_renewed_before_each_publish(session_factory, publisher, clock, add_message):
    await add_message("k1", offset=0)
    await add_message("k2", offset=1)
    dispatcher = make_dispatcher(session_factory, publisher, clock, visibility_timeout=timedelta(seconds=30))

    seen = []

    async def _slow_broker(call):
        async with session_factory() as db:
            row = await outbox_store.get_message(db, uuid.UUID(call[3]))
            seen.append(row.claim_expires_at)
        clock.advance(20)

    publisher.before_publish = _slow_broker
    assert await dispatcher.run_once() == 2

    # the second row was renewed 20s later, so its lease ends 20s after the first one
    assert len(publisher.published) == 2
    assert seen[1] - seen[0] == timedelta(seconds=20)
