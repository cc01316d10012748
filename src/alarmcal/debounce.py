from __future__ import annotations

import threading
from typing import Callable, Optional


class Debouncer:
    """Runs ``fn`` once, ``delay_seconds`` after the last ``trigger()``.

    Each trigger cancels the pending timer and arms a fresh one, so a burst
    of change notifications collapses into a single call.
    """

    def __init__(self, delay_seconds: float, fn: Callable[[], None]) -> None:
        self.delay_seconds = delay_seconds
        self._fn = fn
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()

    def trigger(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay_seconds, self._fn)
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def pending(self) -> bool:
        with self._timer_lock:
            return self._timer is not None and self._timer.is_alive()
