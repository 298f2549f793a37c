from __future__ import annotations

from fastapi import Request
from fastapi.responses import Response

from mdsm.web.responses import render_dispatched


class MdsmMiddleware:
    """
    Middleware-mode stage for FastAPI/Starlette:

        app.middleware("http")(mdsm.middleware())

    Dispatched requests are answered by the endpoint handler. Every other
    outcome is stored on `request.state.mdsm` (a RouteResult) and the request
    continues to the embedding application, which decides what to do (issue
    a cookie, clear a stale one, 404, ...).
    """

    def __init__(self, service):  # noqa: ANN001
        self.service = service

    async def __call__(self, request: Request, call_next):  # noqa: ANN001
        scratch = Response()
        result = self.service.process_request(request.url.path, request.cookies, request=request, response=scratch)
        request.state.mdsm = result
        if result.ok:
            return await render_dispatched(result, scratch)
        return await call_next(request)
