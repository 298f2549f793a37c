from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from mdsm.core.clients import Client, ClientStore
from mdsm.core.endpoints import Endpoint, EndpointTable, normalize_url
from mdsm.core.errors import AuthorizationError, UnknownClientError, UnknownEndpointError


def now_ms(clock: Callable[[], float] = time.time) -> int:
    return int(round(clock() * 1000))


class SessionState(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    DESTROYED = "DESTROYED"


class CookiePayload(BaseModel):
    """Plaintext of the MDSM cookie: {"sessionID": ..., "clientID": ...}."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    session_id: str = Field(alias="sessionID", min_length=1, max_length=256)
    client_id: str = Field(alias="clientID", min_length=1, max_length=256)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> "CookiePayload":
        return cls.model_validate_json(raw)


class Session:
    """
    Server-side state for one authenticated browser/agent.

    Lifecycle:
      ACTIVE    -> now < expiry_date
      EXPIRED   -> now >= expiry_date (a predicate, not a stored transition)
      DESTROYED -> attempt_self_destruct() succeeded or the manager removed it

    The owning SessionManager removes destroyed sessions from its collection;
    a session never touches the manager.
    """

    def __init__(
        self,
        *,
        session_id: str,
        expiry_date: int,
        valid_endpoints: EndpointTable,
        session_data: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self._session_id = str(session_id)
        self.expiry_date = int(expiry_date)
        self.session_data = session_data
        self.valid_endpoints = valid_endpoints
        self.clients = ClientStore()
        self._clock = clock
        self._destroyed = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Session(session_id={self._session_id[:8]}..., expiry_date={self.expiry_date}, clients={len(self.clients)})"

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def is_expired(self, now: Optional[int] = None) -> bool:
        t = now_ms(self._clock) if now is None else int(now)
        with self._lock:
            return t >= self.expiry_date

    def is_past_deadline(self, now: Optional[int] = None) -> bool:
        """
        Strictly past expiry_date. Access-time checks use this; a session whose
        deadline is exactly now stays reachable until its recheck runs.
        """
        t = now_ms(self._clock) if now is None else int(now)
        with self._lock:
            return t > self.expiry_date

    def state(self, now: Optional[int] = None) -> SessionState:
        if self._destroyed:
            return SessionState.DESTROYED
        return SessionState.EXPIRED if self.is_expired(now) else SessionState.ACTIVE

    def remaining_ms(self, now: Optional[int] = None) -> int:
        t = now_ms(self._clock) if now is None else int(now)
        with self._lock:
            return self.expiry_date - t

    # ---- clients ----
    def add_client(self, client_class: str, client_data: Any = None) -> CookiePayload:
        client = self.clients.add(client_class, client_data)
        return CookiePayload(session_id=self._session_id, client_id=client.client_id)

    def remove_client(self, client_id: str) -> bool:
        return self.clients.remove(client_id)

    def find_client(self, client_id: str) -> Optional[Client]:
        return self.clients.find(client_id)

    # ---- requests ----
    def authorize(self, url: str, payload: CookiePayload) -> Tuple[Client, Endpoint]:
        """
        Resolve the client and endpoint for a request and check the client's
        class. Raises UnknownClientError, UnknownEndpointError or
        AuthorizationError; the handler is never touched here.
        """
        client = self.clients.find(payload.client_id)
        if client is None:
            raise UnknownClientError(session_id=self._session_id[:8])

        endpoint = self.valid_endpoints.match(url)
        if endpoint is None:
            raise UnknownEndpointError(url=normalize_url(url))

        if not endpoint.allows(client.client_class):
            raise AuthorizationError(url=endpoint.url, client_class=client.client_class)
        return client, endpoint

    def invoke(self, endpoint: Endpoint, client: Client, payload: CookiePayload, request: Any = None, response: Any = None) -> Any:
        return endpoint.handler(self.session_data, client.client_data, request, response, payload)

    def process_request(self, url: str, payload: CookiePayload, request: Any = None, response: Any = None) -> Any:
        """
        Run the endpoint handler for `url` on behalf of the client named in
        `payload`. Returns whatever the handler returns (a coroutine for async
        handlers, left for the caller to await).
        """
        client, endpoint = self.authorize(url, payload)
        return self.invoke(endpoint, client, payload, request, response)

    # ---- lifetime ----
    def renew(self, extra_ms: int) -> int:
        """
        Push expiry_date out by extra_ms. Negative values shorten the session;
        no upper bound is applied.
        """
        with self._lock:
            self.expiry_date += int(extra_ms)
            return self.expiry_date

    def attempt_self_destruct(self, now: Optional[int] = None) -> bool:
        """
        True iff the deadline has passed at the moment of the call. A renewal
        that landed after the recheck was scheduled keeps the session alive.
        """
        t = now_ms(self._clock) if now is None else int(now)
        with self._lock:
            if t < self.expiry_date:
                return False
            self._destroyed = True
        self.clients.clear()
        return True

    def mark_destroyed(self) -> None:
        with self._lock:
            self._destroyed = True
        self.clients.clear()
