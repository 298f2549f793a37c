from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from mdsm.core.errors import MdsmError
from mdsm.web.responses import render_dispatched, render_failure


ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def create_app(service) -> FastAPI:  # noqa: ANN001
    """
    Port-mode application: every path goes through the MDSM router.
    """
    app = FastAPI(title="MDSM", version="0.1.0", docs_url=None, redoc_url=None, openapi_url=None)

    @app.exception_handler(MdsmError)
    async def mdsm_error_handler(request: Request, exc: MdsmError):
        service.logger.warning("MDSM error in handler for %s: %s", request.url.path, exc.code)
        code = 500
        if exc.code in {"not_authorized", "unknown_client"}:
            code = 403
        elif exc.code in {"unknown_endpoint", "session_not_found"}:
            code = 404
        elif exc.code in {"validation_error", "decryption_error"}:
            code = 400
        return JSONResponse(status_code=code, content={"detail": exc.user_message, "code": exc.code})

    @app.api_route("/{path:path}", methods=ALL_METHODS, include_in_schema=False)
    async def mdsm_entry(path: str, request: Request):
        scratch = Response()
        result = service.route(request.url.path, request.cookies, request=request, response=scratch)
        if not result.ok:
            return render_failure(result)
        return await render_dispatched(result, scratch)

    return app
