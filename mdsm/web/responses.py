from __future__ import annotations

import inspect
import logging
from typing import Any, Optional

from fastapi.responses import JSONResponse, PlainTextResponse, Response

from mdsm.core.router import COOKIE_NAME, RouteOutcome, RouteResult


logger = logging.getLogger("mdsm")

_SKIP_HEADERS = {b"content-length", b"content-type"}

FAILURE_STATUS = {
    RouteOutcome.NO_COOKIE: 400,
    RouteOutcome.INVALID_COOKIE: 401,
    RouteOutcome.MODE_UNAVAILABLE: 409,
    RouteOutcome.UNKNOWN_ENDPOINT: 404,
    RouteOutcome.UNAUTHORIZED: 403,
    RouteOutcome.HANDLER_ERROR: 500,
}


def set_cookie(response: Response, value: str, *, secure: bool = False, max_age: Optional[int] = None) -> Response:
    response.set_cookie(COOKIE_NAME, value, max_age=max_age, path="/", secure=secure, httponly=True, samesite="lax")
    return response


def clear_cookie(response: Response) -> Response:
    response.delete_cookie(COOKIE_NAME, path="/", httponly=True, samesite="lax")
    return response


def _carry_headers(src: Response, dst: Response) -> Response:
    # Headers (e.g. Set-Cookie) a handler put on the scratch response.
    for k, v in src.raw_headers:
        if k.lower() in _SKIP_HEADERS:
            continue
        dst.raw_headers.append((k, v))
    return dst


async def render_dispatched(result: RouteResult, scratch: Response) -> Response:
    """
    Turn a handler's return value into a response:
    Response as-is, dict/list as JSON, str/bytes as text, None as the scratch
    response the handler was given.
    """
    value: Any = result.result
    if inspect.isawaitable(value):
        try:
            value = await value
        except Exception as e:  # noqa: BLE001
            logger.exception("MDSM endpoint handler failed (trace %s)", result.trace_id)
            failed = RouteResult(outcome=RouteOutcome.HANDLER_ERROR, trace_id=result.trace_id, reason=type(e).__name__)
            return JSONResponse(status_code=FAILURE_STATUS[failed.outcome], content=failed.to_error())
    if isinstance(value, Response):
        return value
    if value is None:
        return scratch
    if isinstance(value, (dict, list)):
        return _carry_headers(scratch, JSONResponse(content=value, status_code=scratch.status_code))
    if isinstance(value, bytes):
        return _carry_headers(scratch, Response(content=value, status_code=scratch.status_code))
    return _carry_headers(scratch, PlainTextResponse(str(value), status_code=scratch.status_code))


def render_failure(result: RouteResult) -> Response:
    status = FAILURE_STATUS.get(result.outcome, 500)
    if result.outcome == RouteOutcome.NO_COOKIE:
        return PlainTextResponse("Not an MDSM request", status_code=status)
    resp = JSONResponse(status_code=status, content=result.to_error())
    if result.outcome == RouteOutcome.INVALID_COOKIE:
        clear_cookie(resp)
    return resp
