from __future__ import annotations


class OutboxError(Exception):
    """Base class for outbox relay errors."""


class PersistenceError(OutboxError):
    """Outbox store unreachable, or the surrounding transaction aborted."""


class PublishError(OutboxError):
    """
    The broker rejected the message or could not be reached.
    `retryable=False` marks a permanent failure (e.g. unserializable payload)
    that goes straight to the dead-letter state.
    """

    def __init__(self, message: str, *, retryable: bool = True, error_code: str | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.error_code = error_code


class ClaimConflict(OutboxError):
    """The row is no longer claimed by the caller (claim expired and was taken over)."""

    def __init__(self, message_id, claimed_by: str | None) -> None:
        super().__init__(f"claim on {message_id} no longer held by {claimed_by}")
        self.message_id = message_id
        self.claimed_by = claimed_by


class InvalidTransition(OutboxError):
    """Requested status change is not allowed from the row's current status."""

    def __init__(self, message_id, target: str, current: str | None) -> None:
        super().__init__(f"cannot move {message_id} to {target} from {current or 'missing'}")
        self.message_id = message_id
        self.target = target
        self.current = current
