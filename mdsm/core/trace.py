from __future__ import annotations

import contextlib
import contextvars
import uuid
from typing import Iterator, Optional

_TRACE_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("mdsm.trace_id", default=None)


def new_trace_id() -> str:
    return uuid.uuid4().hex


def current_trace_id() -> Optional[str]:
    return _TRACE_ID.get() or None


def resolve_trace_id(trace_id: Optional[str] = None) -> str:
    """Explicit id, else the one of the request being routed, else a fresh one."""
    return str(trace_id) if trace_id else (current_trace_id() or new_trace_id())


@contextlib.contextmanager
def trace_context(trace_id: Optional[str] = None) -> Iterator[str]:
    """
    Bind a trace id for one routed request so session-manager events logged
    underneath share it. A fresh id is minted when none is given.
    """
    tid = str(trace_id) if trace_id else new_trace_id()
    token = _TRACE_ID.set(tid)
    try:
        yield tid
    finally:
        _TRACE_ID.reset(token)
