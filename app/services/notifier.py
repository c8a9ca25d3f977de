"""
Change notifier: the listening side of the `outbox_channel` trigger.

A notification only says "something became ready"; the dispatcher always
re-reads eligibility from the table, so dropped or coalesced notifications
cost latency, never correctness.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any, Protocol

import asyncpg
from pydantic import BaseModel, ValidationError


log = logging.getLogger(__name__)


class ChangeNotification(BaseModel):
    operation: str
    table: str
    data: dict[str, Any]
    truncated: bool = False

    @property
    def message_id(self) -> str | None:
        value = self.data.get("id")
        return str(value) if value is not None else None

    @property
    def status(self) -> str | None:
        return self.data.get("status")

    @property
    def is_ready(self) -> bool:
        return (self.status or "").lower() == "ready"


def parse_notification(raw: str) -> ChangeNotification | None:
    try:
        return ChangeNotification.model_validate(json.loads(raw))
    except (ValueError, ValidationError):
        log.warning("listener: malformed notification payload (%d bytes)", len(raw))
        return None


WakeCallback = Callable[[ChangeNotification | None], None]


class ChangeListener(Protocol):
    async def ensure_connected(self) -> bool:
        ...

    def subscribe(self, callback: WakeCallback) -> None:
        ...


class NullListener:
    """Polling-only operation."""

    async def ensure_connected(self) -> bool:
        return False

    def subscribe(self, callback: WakeCallback) -> None:
        pass

    async def __aenter__(self) -> "NullListener":
        return self

    async def __aexit__(self, *exc) -> None:
        return None


class OutboxListener:
    """
    Dedicated asyncpg connection LISTENing on the outbox channel.

    Use as an async context manager; the connection lives exactly as long as
    the `async with` block. If the connection drops, polling keeps the
    dispatcher going and `ensure_connected()` re-establishes the LISTEN.
    """

    def __init__(self, dsn: str, channel: str = "outbox_channel", connect_timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.channel = channel
        self.connect_timeout = connect_timeout
        self._conn: asyncpg.Connection | None = None
        self._callbacks: list[WakeCallback] = []

    def subscribe(self, callback: WakeCallback) -> None:
        self._callbacks.append(callback)

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.is_closed()

    def _on_notify(self, connection, pid: int, channel: str, payload: str) -> None:
        notification = parse_notification(payload)
        if notification is not None:
            log.debug("listener: %s on %s id=%s", notification.operation, notification.table, notification.message_id)
        for callback in self._callbacks:
            callback(notification)

    def _on_termination(self, connection) -> None:
        log.warning("listener: connection on channel=%s lost, falling back to polling", self.channel)
        self._conn = None

    async def ensure_connected(self) -> bool:
        if self.connected:
            return True
        conn = None
        try:
            conn = await asyncpg.connect(self.dsn, timeout=self.connect_timeout)
            await conn.add_listener(self.channel, self._on_notify)
        except (OSError, asyncpg.PostgresError) as e:
            log.warning("listener: LISTEN %s failed: %s: %s", self.channel, type(e).__name__, e)
            if conn is not None:
                conn.terminate()
            return False
        conn.add_termination_listener(self._on_termination)
        self._conn = conn
        log.info("listener: LISTEN started on channel=%s", self.channel)
        return True

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None or conn.is_closed():
            return
        try:
            await conn.remove_listener(self.channel, self._on_notify)
        finally:
            await conn.close()
        log.info("listener: LISTEN stopped on channel=%s", self.channel)

    async def __aenter__(self) -> "OutboxListener":
        await self.ensure_connected()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
