from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import unquote

from mdsm.core.endpoints import EndpointRegistry, normalize_url
from mdsm.core.errors import AuthorizationError, UnknownClientError, UnknownEndpointError
from mdsm.core.events import NullEventLogger
from mdsm.core.manager import SessionManager
from mdsm.core.trace import trace_context


COOKIE_NAME = "mdsm"


class RouteOutcome(str, Enum):
    NO_COOKIE = "NO_COOKIE"
    INVALID_COOKIE = "INVALID_COOKIE"
    MODE_UNAVAILABLE = "MODE_UNAVAILABLE"
    UNKNOWN_ENDPOINT = "UNKNOWN_ENDPOINT"
    UNAUTHORIZED = "UNAUTHORIZED"
    HANDLER_ERROR = "HANDLER_ERROR"
    DISPATCHED = "DISPATCHED"


ERROR_CODES: Dict[RouteOutcome, int] = {
    RouteOutcome.NO_COOKIE: 0,
    RouteOutcome.INVALID_COOKIE: 1,
    RouteOutcome.MODE_UNAVAILABLE: 2,
    RouteOutcome.UNKNOWN_ENDPOINT: 3,
    RouteOutcome.UNAUTHORIZED: 4,
    RouteOutcome.HANDLER_ERROR: 5,
}

ERROR_TEXTS: Dict[RouteOutcome, str] = {
    RouteOutcome.NO_COOKIE: "Not an MDSM request (no MDSM cookie)",
    RouteOutcome.INVALID_COOKIE: "MDSM Error: Invalid MDSM cookie. Could not find matching session.",
    RouteOutcome.MODE_UNAVAILABLE: "MDSM Error: processRequest() unavailable in Port mode. Use Middleware mode, or route requests directly to the port specified on initialization.",
    RouteOutcome.UNKNOWN_ENDPOINT: "Invalid endpoint",
    RouteOutcome.UNAUTHORIZED: "MDSM Error: Client is not allowed to use this endpoint.",
    RouteOutcome.HANDLER_ERROR: "MDSM Error: Endpoint handler failed.",
}


@dataclass(frozen=True)
class RouteResult:
    outcome: RouteOutcome
    trace_id: str = ""
    session_id: Optional[str] = None
    client_id: Optional[str] = None
    result: Any = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == RouteOutcome.DISPATCHED

    @property
    def error_code(self) -> Optional[int]:
        return ERROR_CODES.get(self.outcome)

    @property
    def error_text(self) -> Optional[str]:
        return ERROR_TEXTS.get(self.outcome)

    def to_error(self) -> Optional[Dict[str, Any]]:
        if self.ok:
            return None
        return {"errorCode": self.error_code, "errorText": self.error_text}

    @classmethod
    def failure(cls, outcome: RouteOutcome, *, trace_id: str = "", reason: Optional[str] = None) -> "RouteResult":
        return cls(outcome=outcome, trace_id=trace_id, reason=reason)


def parse_cookie_header(header: Optional[str]) -> Dict[str, str]:
    """
    Split a raw Cookie header into name -> value. The first '=' separates name
    and value; values are percent-decoded.
    """
    out: Dict[str, str] = {}
    if not header:
        return out
    for part in header.split(";"):
        if not part.strip():
            continue
        name, sep, value = part.partition("=")
        name = name.strip()
        if not name:
            continue
        out[name] = unquote(value.strip()) if sep else ""
    return out


class RequestRouter:
    """
    Entry point for one request: endpoint check, cookie extraction, session
    lookup, then dispatch through the session.
    """

    def __init__(self, registry: EndpointRegistry, manager: SessionManager, *, event_logger: Any = None, logger: Optional[logging.Logger] = None):
        self.registry = registry
        self.manager = manager
        self.event_logger = event_logger or NullEventLogger()
        self.logger = logger or logging.getLogger("mdsm")

    def route(self, url: str, cookies: Union[Mapping[str, str], str, None], request: Any = None, response: Any = None, *, trace_id: Optional[str] = None) -> RouteResult:
        """
        `cookies` is either a name -> value mapping (e.g. Starlette's
        request.cookies) or the raw Cookie header.
        """
        with trace_context(trace_id) as tid:
            jar = parse_cookie_header(cookies) if isinstance(cookies, str) else (cookies or {})
            return self._route(tid, url, jar, request, response)

    def _route(self, tid: str, url: str, cookies: Mapping[str, str], request: Any, response: Any) -> RouteResult:
        path = normalize_url(url)

        if not self.registry.is_valid(path):
            self.event_logger.log(tid, "route.unknown_endpoint", {"url": path})
            return RouteResult.failure(RouteOutcome.UNKNOWN_ENDPOINT, trace_id=tid)

        cookie = cookies.get(COOKIE_NAME)
        if not cookie:
            self.event_logger.log(tid, "route.no_cookie", {"url": path})
            return RouteResult.failure(RouteOutcome.NO_COOKIE, trace_id=tid)

        match = self.manager.find_session(cookie)
        if match is None:
            self.event_logger.log(tid, "route.invalid_cookie", {"url": path})
            return RouteResult.failure(RouteOutcome.INVALID_COOKIE, trace_id=tid)

        session, payload = match.session, match.payload
        ids = {"session_id": session.session_id, "client_id": payload.client_id}
        try:
            client, endpoint = session.authorize(path, payload)
        except UnknownClientError:
            # Client removed while its cookie is still out there.
            self.logger.info("MDSM client not found in session %s...", session.session_id[:8])
            self.event_logger.log(tid, "route.unauthorized", {"url": path, "reason": "unknown_client"})
            return RouteResult(outcome=RouteOutcome.UNAUTHORIZED, trace_id=tid, reason="unknown_client", **ids)
        except AuthorizationError as e:
            self.event_logger.log(tid, "route.unauthorized", {"url": path, "reason": "class_not_allowed", "client_class": e.context.get("client_class")})
            return RouteResult(outcome=RouteOutcome.UNAUTHORIZED, trace_id=tid, reason="class_not_allowed", **ids)
        except UnknownEndpointError:
            # Valid in the current registry but not in the session's snapshot.
            self.event_logger.log(tid, "route.unknown_endpoint", {"url": path, "reason": "not_in_session_snapshot"})
            return RouteResult(outcome=RouteOutcome.UNKNOWN_ENDPOINT, trace_id=tid, reason="not_in_session_snapshot", **ids)

        try:
            result = session.invoke(endpoint, client, payload, request, response)
        except Exception as e:  # noqa: BLE001
            self.logger.exception("MDSM endpoint handler for %s failed", path)
            self.event_logger.log(tid, "route.handler_error", {"url": path, "error": type(e).__name__})
            return RouteResult(outcome=RouteOutcome.HANDLER_ERROR, trace_id=tid, reason=type(e).__name__, **ids)

        self.event_logger.log(tid, "route.dispatched", {"url": path, "session_id": session.session_id[:8]})
        return RouteResult(outcome=RouteOutcome.DISPATCHED, trace_id=tid, result=result, **ids)
