"""One-shot restartable timer that runs a callback on its own thread."""

from __future__ import annotations

import threading
from typing import Callable, Optional


class Timer:
    """A one-shot timer; setting it again restarts the countdown."""

    def __init__(self, callback: Callable[[], object]) -> None:
        self._callback = callback
        self._lock = threading.Lock()
        self._pending: Optional[threading.Timer] = None
        self._closed = False

    def set(self, seconds: float) -> None:
        """Arm the timer to fire after ``seconds``; zero disarms it."""
        if seconds < 0:
            raise ValueError("timeout must not be negative")
        with self._lock:
            if self._closed:
                return
            self._cancel()
            if seconds == 0:
                return
            pending = threading.Timer(seconds, self._fire)
            pending.args = (pending,)
            pending.daemon = True
            self._pending = pending
            pending.start()

    def disarm(self) -> None:
        with self._lock:
            self._cancel()

    def close(self) -> None:
        """Disarm the timer for good; later calls to :meth:`set` do nothing."""
        with self._lock:
            self._closed = True
            self._cancel()

    def armed(self) -> bool:
        with self._lock:
            return self._pending is not None

    def _cancel(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _fire(self, pending: threading.Timer) -> None:
        with self._lock:
            if self._pending is not pending:
                return
            self._pending = None
        self._callback()