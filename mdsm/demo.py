"""
Middleware-mode demo: a FastAPI app that hands out an MDSM cookie to new
visitors and lets MDSM dispatch the two demo endpoints.

    python -m mdsm.demo            # listens on 0.0.0.0:9001
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from mdsm.core.router import RouteOutcome
from mdsm.core.service import Mdsm
from mdsm.web.responses import clear_cookie, set_cookie

logger = logging.getLogger("mdsm.demo")

DEMO_TTL_MS = 10_000


def do_something_1(session_data, client_data, request, response, payload):  # noqa: ANN001
    logger.info("Handling doSomething1 (session_data=%s, client_data=%s)", session_data, client_data)
    return {"handled": "doSomething1", "session": session_data, "client": client_data}


def do_something_2(session_data, client_data, request, response, payload):  # noqa: ANN001
    logger.info("Handling doSomething2")
    return {"handled": "doSomething2"}


DEMO_CONFIG = {
    "mode": "Middleware",
    "endpoints": [
        {"url": "/api/doSomething1/", "allowed_class_types": ["class_A"], "handler": do_something_1},
        {"url": "/api/doSomething2/", "allowed_class_types": ["class_B"], "handler": do_something_2},
    ],
}


def build_demo_app(mdsm: Optional[Mdsm] = None, **mdsm_kwargs: Any) -> FastAPI:
    mdsm = mdsm or Mdsm(DEMO_CONFIG, **mdsm_kwargs)
    app = FastAPI(title="MDSM demo")
    app.state.mdsm = mdsm
    app.middleware("http")(mdsm.middleware())

    @app.api_route("/{path:path}", methods=["GET", "POST"])
    async def fallback(path: str, request: Request):
        result = getattr(request.state, "mdsm", None)
        outcome = getattr(result, "outcome", None)

        if outcome == RouteOutcome.NO_COOKIE:
            session = mdsm.create_session(time_to_live_ms=DEMO_TTL_MS, session_data={"bar": "baz"})
            cookie = mdsm.add_client(session, "class_A", {"foo": "bar"})
            resp = PlainTextResponse("New client detected. You have been granted a cookie.")
            if cookie:
                set_cookie(resp, cookie)
            return resp

        if outcome == RouteOutcome.INVALID_COOKIE:
            resp = PlainTextResponse("MDSM cookie was valid, but session does not exist. Your bad cookie has been expired.")
            return clear_cookie(resp)

        if outcome == RouteOutcome.UNAUTHORIZED:
            return PlainTextResponse("Not allowed.", status_code=403)

        if outcome == RouteOutcome.HANDLER_ERROR:
            return PlainTextResponse("Something went wrong.", status_code=500)

        return PlainTextResponse("Invalid URL", status_code=404)

    return app


def main() -> None:
    import uvicorn

    from mdsm.core.logger import setup_logging

    setup_logging("logs")
    uvicorn.run(build_demo_app(), host="0.0.0.0", port=9001, log_level="info")


if __name__ == "__main__":
    main()
