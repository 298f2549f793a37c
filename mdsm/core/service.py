from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional, Union

from mdsm.core.config import MdsmConfig, validate_config
from mdsm.core.crypto import CookieCodec
from mdsm.core.endpoints import EndpointRegistry
from mdsm.core.events import EventLogger
from mdsm.core.manager import SessionManager, SessionMatch
from mdsm.core.router import RequestRouter, RouteOutcome, RouteResult
from mdsm.core.session import Session
from mdsm.core.trace import new_trace_id


class Mdsm:
    """
    One MDSM instance: endpoint registry, session manager and router wired
    from an `MdsmConfig`.

    Port mode serves requests on its own uvicorn listener (`start()`).
    Middleware mode exposes `process_request()` / `middleware()` to an
    embedding FastAPI/Starlette application.
    """

    def __init__(
        self,
        config: Union[MdsmConfig, Dict[str, Any]],
        *,
        codec: Optional[CookieCodec] = None,
        scheduler: Any = None,
        clock: Callable[[], float] = time.time,
        event_logger: Any = None,
        logger: Optional[logging.Logger] = None,
    ):
        cfg = validate_config(config)
        self.logger = logger or logging.getLogger("mdsm")
        self.event_logger = event_logger or EventLogger(cfg.events_path)
        self.registry = EndpointRegistry()
        self.manager = SessionManager(
            self.registry,
            codec=codec,
            scheduler=scheduler,
            clock=clock,
            event_logger=self.event_logger,
            logger=self.logger,
        )
        self.router = RequestRouter(self.registry, self.manager, event_logger=self.event_logger, logger=self.logger)
        self._server = None
        self.config = cfg
        self.init(cfg)

    def init(self, config: Union[MdsmConfig, Dict[str, Any]]) -> None:
        """
        (Re)initialize mode and endpoints. The registry is replaced wholesale;
        existing sessions keep the endpoint table they were created with.
        """
        cfg = validate_config(config)
        self.registry.register(cfg.endpoints)
        self.config = cfg
        self.logger.info("MDSM initialized in %s mode with %s endpoint(s)", cfg.mode, len(cfg.endpoints))

    @property
    def mode(self) -> str:
        return self.config.mode

    # ---- embedder API ----
    def create_session(self, session_id: Optional[str] = None, time_to_live_ms: Optional[int] = None, session_data: Any = None) -> Session:
        ttl = self.config.default_ttl_ms if time_to_live_ms is None else time_to_live_ms
        return self.manager.create_session(session_id=session_id, time_to_live_ms=ttl, session_data=session_data)

    def renew_session(self, session_id: str, extra_ms: int) -> int:
        return self.manager.renew_session(session_id, extra_ms)

    def add_client(self, session: Session, client_class: str, client_data: Any = None) -> Optional[str]:
        return self.manager.add_client(session, client_class, client_data)

    def add_client_by_id(self, session_id: str, client_class: str, client_data: Any = None) -> Optional[str]:
        return self.manager.add_client_by_id(session_id, client_class, client_data)

    def remove_client(self, session_id: str, client_id: str) -> bool:
        return self.manager.remove_client(session_id, client_id)

    def destroy_session(self, session_id: str) -> bool:
        return self.manager.destroy_session(session_id)

    def find_session(self, encrypted_cookie: Optional[str]) -> Optional[SessionMatch]:
        return self.manager.find_session(encrypted_cookie)

    # ---- request handling ----
    def route(self, url: str, cookies: Union[Mapping[str, str], str, None], request: Any = None, response: Any = None) -> RouteResult:
        return self.router.route(url, cookies, request, response)

    def process_request(self, url: str, cookies: Union[Mapping[str, str], str, None], request: Any = None, response: Any = None) -> RouteResult:
        """
        Middleware-mode entry point. In Port mode requests must go to the
        listener, so this reports MODE_UNAVAILABLE without routing.
        """
        if self.mode != "Middleware":
            return RouteResult.failure(RouteOutcome.MODE_UNAVAILABLE, trace_id=new_trace_id())
        return self.router.route(url, cookies, request, response)

    def middleware(self):
        from mdsm.web.middleware import MdsmMiddleware

        return MdsmMiddleware(self)

    def create_app(self):
        from mdsm.web.api import create_app

        return create_app(self)

    # ---- lifecycle ----
    def start(self):
        """Start the Port-mode listener on a background thread."""
        if self.mode != "Port":
            raise RuntimeError("start() is only available in Port mode.")
        from mdsm.web.server import WebServerHandle

        if self._server is None:
            self._server = WebServerHandle(
                app=self.create_app(),
                host=self.config.bind_host,
                port=int(self.config.port or 0),
                https=self.config.https,
                logger=self.logger,
            )
        self._server.start()
        return self._server

    def shutdown(self) -> None:
        if self._server is not None:
            self._server.stop()
            self._server = None
        self.manager.shutdown()
