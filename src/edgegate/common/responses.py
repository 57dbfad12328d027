"""Outbound response construction shared by every gateway component."""

from __future__ import annotations

import json
from http import HTTPStatus
from typing import Mapping, Optional, Union

import httpx
from fastapi import Response

CORS_HEADERS: dict[str, str] = {
    "access-control-allow-methods": "GET,HEAD,PUT,POST,DELETE,OPTIONS",
    "access-control-allow-origin": "*",
    "access-control-allow-headers": "content-type, client-id, authorization",
    "access-control-allow-private-network": "true",
    "cache-control": "no-cache,private",
}

# Headers of an upstream response that describe its payload rather than the
# transport; everything else is regenerated locally.
RELAYED_HEADERS = ("content-type", "www-authenticate")


def _reason(status_code: int) -> Optional[str]:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return None


def merge_headers(extra: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    merged = dict(CORS_HEADERS)
    for key, value in (extra or {}).items():
        merged[key.lower()] = value
    return merged


def build_response(
    body: Union[bytes, str, None] = None,
    status_code: int = 200,
    status_text: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
    media_type: Optional[str] = None,
) -> Response:
    """Build a response carrying the fixed CORS/cache headers.

    ``headers`` win over the fixed set on conflicting keys. Error statuses
    without a body get a ``{"status", "message"}`` JSON document.
    """
    merged = merge_headers(headers)
    if not body and status_code >= 400:
        message = status_text if status_text is not None else _reason(status_code)
        body = json.dumps({"status": status_code, "message": message}) + "\n"
        merged["content-type"] = "application/json"
    return Response(content=body, status_code=status_code, headers=merged, media_type=media_type)


def relay_response(upstream: httpx.Response, content: Optional[bytes] = None) -> Response:
    """Pass an upstream response through with the fixed header set merged in."""
    headers = {name: upstream.headers[name] for name in RELAYED_HEADERS if name in upstream.headers}
    return build_response(
        upstream.content if content is None else content,
        status_code=upstream.status_code,
        headers=headers,
    )


def preflight_response() -> Response:
    return build_response()
