"""Cancellation signal shared between a caller and an in-flight run."""

import threading

from persuader.exceptions import CancelledRunException


class CancellationToken:
    """Thread-safe, one-shot cancellation signal.

    A run checks the token before each attempt, waits on it during the
    inter-attempt delay, and races it against an in-flight provider call.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        """Raise the signal. Later calls keep the first reason."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason or "Run was cancelled"

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledRunException(self.reason)
