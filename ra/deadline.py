import threading
import time
from typing import Optional

from ra.errors import OperationCancelled


class Deadline:
    """Caller-supplied time bound and cancellation signal for one operation.

    Either part is optional. ``Deadline()`` never expires and is never cancelled.
    """

    def __init__(self, timeout: Optional[float] = None, cancel_event: Optional[threading.Event] = None):
        self.expires_at = time.monotonic() + timeout if timeout is not None else None
        self.cancel_event = cancel_event

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def cancelled(self) -> bool:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return True
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def check(self, what: str = "operation"):
        if self.cancelled():
            raise OperationCancelled("%s cancelled or deadline exceeded" % what)

    def bound(self, timeout: float) -> float:
        """Clamp ``timeout`` to what is left of the deadline."""
        left = self.remaining()
        return timeout if left is None else min(timeout, left)
