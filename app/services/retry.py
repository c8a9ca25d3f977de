import random
from dataclasses import dataclass
from datetime import datetime, timedelta


def compute_backoff_seconds(attempt: int, base: int = 10, cap: int = 900, jitter: bool = True) -> int:
    # exponential backoff with jitter
    exp = min(cap, base * (2 ** max(0, attempt - 1)))
    if not jitter:
        return exp
    return exp + random.randint(0, min(30, exp // 3))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_seconds: int = 10
    cap_seconds: int = 900
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 2:
            raise ValueError("max_attempts must allow at least one retry")

    def backoff(self, attempt: int) -> timedelta:
        return timedelta(seconds=compute_backoff_seconds(
            attempt, base=self.base_seconds, cap=self.cap_seconds, jitter=self.jitter,
        ))

    def next_attempt_at(self, failed_at: datetime, attempt: int) -> datetime:
        return failed_at + self.backoff(attempt)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    @classmethod
    def from_settings(cls, s) -> "RetryPolicy":
        return cls(max_attempts=s.retry_max_attempts, base_seconds=s.retry_base_seconds, cap_seconds=s.retry_cap_seconds)
