from __future__ import annotations

import time
from typing import Optional


class DeadlineExceeded(Exception):
    """Raised when an operation is abandoned because its caller's deadline passed."""

    def __init__(self, operation: str):
        super().__init__(f"deadline exceeded during {operation}")
        self.operation = operation


class Deadline:
    """Absolute point in monotonic time after which work must stop.

    Stores check the deadline before each write and before committing a batch,
    so an expired deadline never leaves partial writes behind.
    """

    __slots__ = ("expires_at",)

    def __init__(self, expires_at: float) -> None:
        self.expires_at = expires_at

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def check(self, operation: str) -> None:
        if self.expired:
            raise DeadlineExceeded(operation)

    def __repr__(self) -> str:
        return f"Deadline(remaining={self.remaining():.3f}s)"


def check_deadline(deadline: Optional[Deadline], operation: str) -> None:
    if deadline is not None:
        deadline.check(operation)


__all__ = ["Deadline", "DeadlineExceeded", "check_deadline"]
