"""Run-level cancellation signal shared between the caller and worker threads."""

import threading
import time


class CancellationToken:
    """
    Cooperative cancellation flag with an optional parent deadline.

    ``cancel()`` may be called from any thread (signal handler, parent task).
    A deadline, when given, is a ``time.monotonic()`` timestamp after which the
    token reports itself cancelled without anyone calling ``cancel()``.
    """

    def __init__(self, deadline: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = deadline
        self._reason: str | None = None

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    @property
    def reason(self) -> str | None:
        return self._reason

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True as soon as cancelled."""
        if self._deadline is not None:
            timeout = max(0.0, min(timeout, self._deadline - time.monotonic()))
        self._event.wait(timeout)
        return self.cancelled
