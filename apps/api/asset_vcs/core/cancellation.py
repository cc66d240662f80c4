"""
Cooperative cancellation and deadlines for long running work.

Tokens are thread-safe because diff and merge computation runs on worker
threads while cancellation is requested from the event loop.
"""
from __future__ import annotations

import threading
import time
from typing import Optional

from .exceptions import OperationCancelledError, OperationTimeoutError


class CancellationToken:
    """Flag checked between phases of long computations."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: Optional[str] = None) -> None:
        if self._event.is_set():
            raise OperationCancelledError(
                f"Operation cancelled{f' during {stage}' if stage else ''}: {self.reason}",
                details={"stage": stage} if stage else None,
            )


class Deadline:
    """Absolute point in monotonic time after which store calls must not start."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        self._expires_at = time.monotonic() + timeout_seconds

    @classmethod
    def after(cls, timeout_seconds: Optional[float]) -> Optional["Deadline"]:
        return cls(timeout_seconds) if timeout_seconds else None

    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self._expires_at

    def check(self, operation: str) -> None:
        if self.expired:
            raise OperationTimeoutError(
                f"Deadline of {self.timeout_seconds}s exceeded before {operation}",
                details={"operation": operation},
            )


def check_deadline(deadline: Optional[Deadline], operation: str) -> None:
    if deadline is not None:
        deadline.check(operation)
