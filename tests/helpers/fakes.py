from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self._t = float(start)

    def time(self) -> float:
        return self._t

    def advance_ms(self, ms: float) -> None:
        self._t += float(ms) / 1000.0


@dataclass
class ManualTimer:
    due_ms: int
    callback: Callable[[], None]
    cancelled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """
    Stands in for TimerScheduler: timers only fire when the test calls
    run_due(), using the FakeClock for deadlines.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.timers: List[ManualTimer] = []

    def _now_ms(self) -> int:
        return int(round(self.clock.time() * 1000))

    def schedule(self, delay_ms: float, callback: Callable[[], None]) -> ManualTimer:
        t = ManualTimer(due_ms=self._now_ms() + max(0, int(delay_ms)), callback=callback)
        self.timers.append(t)
        return t

    def pending(self) -> int:
        return sum(1 for t in self.timers if not t.cancelled and not t.fired)

    def run_due(self) -> int:
        """Fire every timer whose deadline has passed, including ones scheduled while firing."""
        fired = 0
        while True:
            due = [t for t in self.timers if not t.cancelled and not t.fired and t.due_ms <= self._now_ms()]
            if not due:
                return fired
            for t in due:
                t.fired = True
                t.callback()
                fired += 1

    def cancel_all(self) -> None:
        for t in self.timers:
            t.cancelled = True

    def shutdown(self) -> None:
        self.cancel_all()


@dataclass
class RecordingEventLogger:
    events: List[Dict[str, Any]] = field(default_factory=list)

    def log(self, trace_id: str, event_type: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.events.append({"trace_id": trace_id, "event": event_type, "details": dict(details or {})})

    def names(self) -> List[str]:
        return [e["event"] for e in self.events]


@dataclass
class HandlerSpy:
    reply: Any = None
    calls: List[Dict[str, Any]] = field(default_factory=list)

    def __call__(self, session_data, client_data, request, response, payload):  # noqa: ANN001
        self.calls.append(
            {
                "session_data": session_data,
                "client_data": client_data,
                "request": request,
                "response": response,
                "payload": payload,
            }
        )
        return self.reply
