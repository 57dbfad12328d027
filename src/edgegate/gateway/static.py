"""Static asset short-circuit in front of the API."""

from __future__ import annotations

from pathlib import Path
from typing import Optional
from urllib.parse import quote

from fastapi import Request, Response, status
from fastapi.responses import FileResponse
from starlette.datastructures import URL

from ..common.responses import build_response, merge_headers


def request_path(request: Request) -> str:
    """Percent-decoded request path, never re-parsed as a URL.

    ``request.url`` is rebuilt from the decoded path, so a decoded ``?`` or
    ``#`` would move part of the path into the query or fragment.
    """
    return request.scope["path"]


def effective_url(request: Request) -> URL:
    """Request URL as the client saw it, honouring ``host`` and ``x-forwarded-proto``."""
    proto = request.headers.get("x-forwarded-proto")
    scheme = proto.split(",")[0].strip() if proto else request.url.scheme
    netloc = request.headers.get("host") or request.url.netloc
    raw_path = request.scope.get("raw_path")
    path = raw_path.split(b"?", 1)[0].decode("latin-1") if raw_path else quote(request_path(request))
    query = request.scope.get("query_string", b"").decode("latin-1")
    return URL(f"{scheme}://{netloc}{path}" + (f"?{query}" if query else ""))


class StaticAssets:
    def __init__(self, root: Optional[Path] = None):
        self._root = root.resolve() if root is not None else None

    def resolve(self, path: str) -> Optional[Path]:
        if self._root is None:
            return None
        candidate = self._root.joinpath(*[part for part in path.split("/") if part]).resolve(strict=False)
        if not candidate.is_relative_to(self._root) or not candidate.is_file():
            return None
        return candidate

    def serve(self, request: Request, url: URL) -> Optional[Response]:
        # ES modules are published under .js names.
        if url.path.endswith(".mjs"):
            location = url.replace(path=url.path[: -len(".mjs")] + ".js")
            return build_response(
                status_code=status.HTTP_308_PERMANENT_REDIRECT,
                headers={"location": str(location)},
            )
        if request.method not in ("GET", "HEAD"):
            return None
        asset = self.resolve(request_path(request))
        if asset is None:
            return None
        return FileResponse(asset, headers=merge_headers())
