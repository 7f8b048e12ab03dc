"""
Transaction Context Module

Caller-supplied cancellation and deadline for an in-flight transaction.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from .errors import TransactionCancelled


@dataclass
class TxContext:
    """Deadline (monotonic clock) and cancel flag checked between steps"""
    deadline: Optional[float] = None
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    @classmethod
    def background(cls) -> "TxContext":
        """Context that never expires"""
        return cls()

    @classmethod
    def with_timeout(cls, seconds: float) -> "TxContext":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None if there is no deadline"""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self) -> None:
        """Raise TransactionCancelled if cancelled or past the deadline"""
        if self.cancelled:
            raise TransactionCancelled("transaction cancelled by caller")
        if self.expired():
            raise TransactionCancelled("transaction deadline exceeded")

    def bound_timeout(self, timeout: float) -> float:
        """Clamp a wait timeout to the time left before the deadline"""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)
