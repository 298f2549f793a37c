from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from mdsm.core.crypto import CookieCodec, cookie_fingerprint
from mdsm.core.endpoints import EndpointRegistry
from mdsm.core.errors import DecryptionError, DuplicateSessionError, SessionNotFoundError, ValidationError
from mdsm.core.events import NullEventLogger
from mdsm.core.scheduler import TimerScheduler
from mdsm.core.session import CookiePayload, Session, now_ms
from mdsm.core.trace import resolve_trace_id


SESSION_ID_BYTES = 32


def new_session_id() -> str:
    return secrets.token_hex(SESSION_ID_BYTES)


@dataclass(frozen=True)
class SessionMatch:
    session: Session
    payload: CookiePayload


class SessionManager:
    """
    Owns every live session of one MDSM instance.

    All collection mutations (create, destroy, expire, renew, client changes)
    run under a single re-entrant lock, so a session is visible to lookups
    exactly until its removal completes.

    Expiry uses one scheduled recheck per session. When the recheck fires it
    asks the session whether its deadline has passed; if the session was
    renewed in the meantime a new recheck is scheduled at the new deadline.
    """

    def __init__(
        self,
        registry: EndpointRegistry,
        *,
        codec: Optional[CookieCodec] = None,
        scheduler: Any = None,
        clock: Callable[[], float] = time.time,
        event_logger: Any = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.registry = registry
        self.codec = codec or CookieCodec()
        self.logger = logger or logging.getLogger("mdsm")
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or TimerScheduler(logger=self.logger)
        self.clock = clock
        self.event_logger = event_logger or NullEventLogger()
        self._lock = threading.RLock()
        self._sessions: Dict[str, Session] = {}
        self._timers: Dict[str, Any] = {}
        self._closed = False

    # ---- creation ----
    def create_session(self, session_id: Optional[str] = None, time_to_live_ms: int = 0, session_data: Any = None) -> Session:
        try:
            ttl = int(time_to_live_ms or 0)
        except (TypeError, ValueError):
            raise ValidationError("time_to_live_ms must be an integer.") from None
        if ttl < 0:
            raise ValidationError("time_to_live_ms must not be negative.", time_to_live_ms=ttl)

        replaced: List[Dict[str, Any]] = []
        with self._lock:
            if self._closed:
                raise RuntimeError("SessionManager is shut down.")
            if session_id:
                sid = str(session_id)
                existing = self._sessions.get(sid)
                if existing is not None:
                    if not existing.is_past_deadline():
                        raise DuplicateSessionError(session_id=sid[:8])
                    # dead but its recheck has not run yet
                    replaced.append(self._remove_locked(existing, reason="expired_on_access"))
            else:
                sid = new_session_id()
                while sid in self._sessions:
                    sid = new_session_id()

            session = Session(
                session_id=sid,
                expiry_date=now_ms(self.clock) + ttl,
                session_data=session_data,
                valid_endpoints=self.registry.snapshot(),
                clock=self.clock,
            )
            self._sessions[sid] = session
            self._schedule_expiry_locked(session)

        self._log_destroyed(replaced)
        self.event_logger.log(resolve_trace_id(), "session.created", {"session_id": sid[:8], "ttl_ms": ttl})
        self.logger.info("MDSM session created (%s..., ttl=%sms)", sid[:8], ttl)
        return session

    # ---- lookup ----
    def find_session(self, encrypted_cookie: Optional[str]) -> Optional[SessionMatch]:
        """
        Resolve an encrypted cookie to its live session. Never raises: an
        undecryptable, malformed or stale cookie simply yields None.
        """
        if not encrypted_cookie:
            return None
        trace_id = resolve_trace_id()
        try:
            plaintext = self.codec.decrypt(encrypted_cookie)
        except DecryptionError as e:
            fp = cookie_fingerprint(encrypted_cookie)
            self.logger.warning(
                "Unable to decrypt MDSM cookie [%s] (%s). It may have been generated by a previous instance of MDSM.",
                fp,
                e.context.get("reason"),
            )
            self.event_logger.log(trace_id, "cookie.rejected", {"fingerprint": fp, "reason": e.context.get("reason")})
            return None

        try:
            payload = CookiePayload.from_json(plaintext)
        except PydanticValidationError:
            fp = cookie_fingerprint(encrypted_cookie)
            self.logger.warning("MDSM cookie [%s] decrypted to an unexpected shape", fp)
            self.event_logger.log(trace_id, "cookie.rejected", {"fingerprint": fp, "reason": "payload"})
            return None

        session = self.get_session(payload.session_id)
        if session is None:
            return None
        return SessionMatch(session=session, payload=payload)

    def get_session(self, session_id: str) -> Optional[Session]:
        """
        Live session for `session_id`. A session already past its deadline is
        destroyed here instead of waiting for its recheck.
        """
        with self._lock:
            session = self._sessions.get(str(session_id))
            if session is None:
                return None
            if not session.is_past_deadline():
                return session
            destroyed = self._remove_locked(session, reason="expired_on_access")
        self._log_destroyed([destroyed])
        return None

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    # ---- renewal ----
    def renew_session(self, session_id: str, extra_ms: int) -> int:
        with self._lock:
            session = self._sessions.get(str(session_id))
            if session is None:
                raise SessionNotFoundError(session_id=str(session_id)[:8])
            if session.is_past_deadline():
                destroyed = self._remove_locked(session, reason="expired_on_access")
            else:
                destroyed = None
                new_expiry = session.renew(int(extra_ms))
        if destroyed is not None:
            self._log_destroyed([destroyed])
            raise SessionNotFoundError(session_id=str(session_id)[:8])
        self.event_logger.log(resolve_trace_id(), "session.renewed", {"session_id": str(session_id)[:8], "extra_ms": int(extra_ms)})
        return new_expiry

    # ---- clients ----
    def add_client(self, session: Session, client_class: str, client_data: Any = None) -> Optional[str]:
        """
        Create a client inside `session` and return its encrypted cookie, or
        None when the session is no longer live.
        """
        with self._lock:
            live = self._sessions.get(session.session_id)
            if live is not session:
                return None
            if session.is_past_deadline():
                destroyed = self._remove_locked(session, reason="expired_on_access")
                payload = None
            else:
                destroyed = None
                payload = session.add_client(client_class, client_data)
        if payload is None:
            self._log_destroyed([destroyed])
            return None
        self.event_logger.log(
            resolve_trace_id(),
            "client.added",
            {"session_id": payload.session_id[:8], "client_id": payload.client_id[:8], "client_class": str(client_class)},
        )
        return self.codec.encrypt(payload.to_json())

    def add_client_by_id(self, session_id: str, client_class: str, client_data: Any = None) -> Optional[str]:
        session = self.get_session(session_id)
        if session is None:
            return None
        return self.add_client(session, client_class, client_data)

    def remove_client(self, session_id: str, client_id: str) -> bool:
        session = self.get_session(session_id)
        if session is None:
            return False
        with self._lock:
            if self._sessions.get(session.session_id) is not session:
                return False
            removed = session.remove_client(client_id)
        if removed:
            self.event_logger.log(resolve_trace_id(), "client.removed", {"session_id": str(session_id)[:8], "client_id": str(client_id)[:8]})
        return removed

    # ---- destruction ----
    def destroy_session(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(str(session_id))
            if session is None:
                return False
            destroyed = self._remove_locked(session, reason="destroyed")
        self._log_destroyed([destroyed])
        return True

    def sweep_expired(self) -> int:
        """Remove every session whose deadline has passed. Returns the count."""
        now = now_ms(self.clock)
        with self._lock:
            expired = [s for s in self._sessions.values() if s.is_past_deadline(now)]
            destroyed = [self._remove_locked(s, reason="expired") for s in expired]
        self._log_destroyed(destroyed)
        return len(destroyed)

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            handles = list(self._timers.values())
            self._timers.clear()
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for h in handles:
            h.cancel()
        for s in sessions:
            s.mark_destroyed()
        if self._owns_scheduler:
            self.scheduler.shutdown()
        self.logger.info("MDSM session manager shut down (%s sessions dropped)", len(sessions))

    # ---- expiry internals ----
    def _schedule_expiry_locked(self, session: Session) -> None:
        sid = session.session_id
        delay = max(0, session.remaining_ms())
        self._timers[sid] = self.scheduler.schedule(delay, lambda: self._expire(sid, session))

    def _expire(self, session_id: str, session: Session) -> None:
        with self._lock:
            if self._closed or self._sessions.get(session_id) is not session:
                return
            self._timers.pop(session_id, None)
            if session.attempt_self_destruct():
                del self._sessions[session_id]
                destroyed = True
            else:
                self._schedule_expiry_locked(session)
                destroyed = False

        if destroyed:
            self.event_logger.log("expiry", "session.expired", {"session_id": session_id[:8]})
            self.logger.info("MDSM session expired (%s...)", session_id[:8])
        else:
            self.event_logger.log("expiry", "session.expiry_rescheduled", {"session_id": session_id[:8], "expiry_date": session.expiry_date})

    def _remove_locked(self, session: Session, *, reason: str) -> Dict[str, Any]:
        """Drop `session` from the collection. Returns event details for _log_destroyed()."""
        sid = session.session_id
        self._sessions.pop(sid, None)
        handle = self._timers.pop(sid, None)
        if handle is not None:
            handle.cancel()
        session.mark_destroyed()
        return {"session_id": sid[:8], "reason": reason}

    def _log_destroyed(self, destroyed: List[Dict[str, Any]]) -> None:
        # called with the manager lock released
        trace_id = resolve_trace_id()
        for details in destroyed:
            self.event_logger.log(trace_id, "session.destroyed", details)
