from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional


class TimerHandle:
    def __init__(self, timer: threading.Timer, delay_ms: int):
        self._timer = timer
        self.delay_ms = delay_ms

    def cancel(self) -> None:
        self._timer.cancel()

    def is_alive(self) -> bool:
        return self._timer.is_alive()


class TimerScheduler:
    """
    Deferred callbacks on daemon `threading.Timer`s.

    One timer per scheduled call; no polling thread. Exceptions raised by a
    callback are logged and swallowed so the timer thread exits cleanly.
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None, name: str = "mdsm-expiry"):
        self.logger = logger or logging.getLogger("mdsm")
        self.name = name
        self._lock = threading.Lock()
        self._timers: Dict[int, threading.Timer] = {}
        self._seq = 0
        self._closed = False

    def schedule(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        delay = max(0, int(delay_ms))
        with self._lock:
            if self._closed:
                raise RuntimeError("Scheduler is shut down.")
            self._seq += 1
            seq = self._seq

            def run() -> None:
                try:
                    callback()
                except Exception:  # noqa: BLE001
                    self.logger.exception("Scheduled callback failed")
                finally:
                    with self._lock:
                        self._timers.pop(seq, None)

            t = threading.Timer(delay / 1000.0, run)
            t.daemon = True
            t.name = f"{self.name}-{seq}"
            self._timers[seq] = t
        t.start()
        return TimerHandle(t, delay)

    def pending(self) -> int:
        with self._lock:
            return len(self._timers)

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for t in timers:
            t.cancel()

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
        self.cancel_all()
