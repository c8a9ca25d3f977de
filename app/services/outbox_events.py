from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel


@dataclass(frozen=True)
class MessageRoutingInfo:
    """Where an event goes: a topic exchange plus the key the broker routes on."""

    exchange: str
    routing_key: str

    def __post_init__(self) -> None:
        if not self.exchange.strip():
            raise ValueError("exchange name must not be blank")
        if not self.routing_key.strip():
            raise ValueError("routing key must not be blank")


@dataclass(frozen=True)
class OutboxEventRecord:
    routing: MessageRoutingInfo
    payload: Any
    id: uuid.UUID = field(default_factory=uuid.uuid4)


def serialize_payload(payload: Any) -> dict[str, Any]:
    """
    Producers hand over pydantic models or plain dicts; the outbox stores
    a JSON-compatible dict either way.
    """
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    if isinstance(payload, dict):
        return payload
    raise TypeError(f"unsupported outbox payload type: {type(payload).__name__}")


def consumer_queue_name(service: str, domain_event: str, action: str) -> str:
    # <consumer-service>.<domain-event>.<action>, e.g. "notifier.messages.created"
    parts = [service, domain_event, action]
    if any(not p or "." in p for p in parts):
        raise ValueError(f"invalid queue name parts: {parts!r}")
    return ".".join(parts)
