"""Exceptions that short-circuit a request and how they are rendered."""

from __future__ import annotations

import httpx
from fastapi import FastAPI, Request, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from .responses import build_response, relay_response

LOGGER = structlog.get_logger("edgegate.errors")


class UpstreamResponseError(Exception):
    """An upstream service answered with a failure that is relayed verbatim."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"upstream responded with {response.status_code}")
        self.response = response


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    return build_response(status_code=exc.status_code, status_text=exc.detail, headers=exc.headers)


async def upstream_exception_handler(request: Request, exc: UpstreamResponseError) -> Response:
    LOGGER.info(
        "upstream_failure_relayed",
        method=request.method,
        path=request.scope["path"],
        upstream_status=exc.response.status_code,
    )
    return relay_response(exc.response)


async def unhandled_exception_handler(request: Request, exc: Exception) -> Response:
    LOGGER.exception("unhandled_error", method=request.method, path=request.scope["path"])
    return build_response(status_code=500)


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(UpstreamResponseError, upstream_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
