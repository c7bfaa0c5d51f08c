"""
Cancellation scope for a single watch.
"""

import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class CancelScope:
    """
    Cancellation token shared by the watch loop and whoever stops it.

    ``cancel()`` may be called from any thread. Registered callbacks run once,
    on the cancelling thread; a callback registered after cancellation runs
    immediately.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                # the loop observes the flag regardless of how the callback went
                logger.warning(f"Cancel callback failed: {e}")

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout. Returns True if cancelled."""
        return self._event.wait(timeout)
