from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

import uvicorn

from mdsm.core.config import HttpsConfig


def uvicorn_ssl_kwargs(https: Optional[HttpsConfig]) -> Dict[str, Any]:
    if https is None:
        return {}
    out: Dict[str, Any] = {"ssl_keyfile": https.key, "ssl_certfile": https.cert}
    if https.passphrase:
        out["ssl_keyfile_password"] = https.passphrase
    if https.ca:
        out["ssl_ca_certs"] = https.ca
    return out


class WebServerHandle:
    """
    Port-mode listener: uvicorn on a daemon thread.

    Startup failures (bad TLS material, port in use) are logged for the
    operator; they never propagate into session handling.
    """

    def __init__(self, *, app, host: str, port: int, https: Optional[HttpsConfig] = None, logger: Optional[logging.Logger] = None):  # noqa: ANN001
        self.app = app
        self.host = host
        self.port = port
        self.https = https
        self.logger = logger or logging.getLogger("mdsm")
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self.failed = threading.Event()

    @property
    def scheme(self) -> str:
        return "https" if self.https is not None else "http"

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        cfg = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="info", **uvicorn_ssl_kwargs(self.https))
        server = uvicorn.Server(cfg)
        self._server = server

        def run() -> None:
            try:
                server.run()
            except (Exception, SystemExit):  # noqa: BLE001
                # uvicorn exits via SystemExit when it cannot bind
                self.failed.set()
                self.logger.exception("MDSM error: Failed to initialize %s server. Double check the configurations.", self.scheme.upper())

        self._thread = threading.Thread(target=run, name="mdsm-web", daemon=True)
        self._thread.start()
        self.logger.info("MDSM listening for %s on %s:%s", self.scheme.upper(), self.host, self.port)

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=3.0)
