"""Tenant-scoped translation of HTTP requests onto object storage.

Every identity owns the key prefix ``<user_id>/<client_id>/``. Request paths
are sanitised before the prefix is prepended, so a path can only ever name
keys inside that prefix: isolation comes from the key layout, not from
separate storage instances.
"""

from __future__ import annotations

import json
from typing import Iterable, Optional

import structlog
from fastapi import HTTPException, Request, Response, status
from opentelemetry import trace
from structlog.contextvars import bound_contextvars

from ..common.responses import build_response
from ..common.schemas import Identity, KeyPage, ListingPage
from .backends import CONDITIONAL_HEADERS, HTTP_METADATA_HEADERS, ObjectStore

LOGGER = structlog.get_logger("edgegate.storage.gateway")
TRACER = trace.get_tracer("edgegate.storage")

SEPARATOR = "/"
_UNSAFE_SEGMENTS = {"", ".", ".."}


def sanitize_path(path: str) -> str:
    """Drop empty, ``.`` and ``..`` segments, keeping a trailing separator."""
    sanitized = SEPARATOR.join(segment for segment in path.split(SEPARATOR) if segment not in _UNSAFE_SEGMENTS)
    if sanitized and path.endswith(SEPARATOR):
        sanitized += SEPARATOR
    return sanitized


def tenant_namespace(identity: Identity) -> str:
    if not identity.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="storage api requires user access token")
    for part in (identity.user_id, identity.client_id):
        if part in _UNSAFE_SEGMENTS or SEPARATOR in part:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid identity for storage")
    return f"{identity.user_id}{SEPARATOR}{identity.client_id}{SEPARATOR}"


def object_key(identity: Identity, path: str) -> str:
    # Sanitise first: prefixing first would let ".." climb out of the namespace.
    return tenant_namespace(identity) + sanitize_path(path)


def child_names(prefix: str, keys: Iterable[str]) -> list[str]:
    """Immediate children of ``prefix``, de-duplicated in first-seen order."""
    names: dict[str, None] = {}
    for key in keys:
        if not key.startswith(prefix):
            continue
        name = key[len(prefix):].split(SEPARATOR, 1)[0]
        if name:
            names.setdefault(name, None)
    return list(names)


def listing_page(prefix: str, page: KeyPage) -> ListingPage:
    return ListingPage(
        prefix=prefix,
        cursor=page.cursor if page.truncated else None,
        truncated=page.truncated,
        entries=child_names(prefix, page.keys),
    )


class TenantStorageGateway:
    def __init__(self, store: ObjectStore, page_size: int = 1000):
        self._store = store
        self._page_size = page_size

    async def handle(self, request: Request, identity: Identity, path: Optional[str] = None) -> Response:
        key = object_key(identity, request.scope["path"] if path is None else path)
        method = request.method.upper()
        with TRACER.start_as_current_span(
            "storage.request",
            attributes={"edgegate.method": method, "edgegate.client_id": identity.client_id},
        ), bound_contextvars(key=key):
            if method == "GET":
                if key.endswith(SEPARATOR):
                    return await self.list_directory(request, key)
                return await self.get_object(request, key)
            if method == "HEAD":
                return await self.head_object(key)
            if method in ("PUT", "POST"):
                return await self.put_object(request, key)
            if method == "DELETE":
                return await self.delete_object(key)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported method")

    async def list_directory(self, request: Request, prefix: str) -> Response:
        cursor = request.query_params.get("cursor") or None
        page = listing_page(prefix, await self._store.list(prefix, cursor=cursor, limit=self._page_size))
        headers = {"content-type": "application/json"}
        if page.truncated and page.cursor:
            headers["cursor"] = page.cursor
        LOGGER.debug("storage_list", prefix=prefix, entries=len(page.entries), truncated=page.truncated)
        return build_response(json.dumps(page.entries), headers=headers)

    async def get_object(self, request: Request, key: str) -> Response:
        range_header = request.headers.get("range")
        conditions = {name: request.headers[name] for name in CONDITIONAL_HEADERS if name in request.headers}
        obj = await self._store.get(key, range_header=range_header, conditions=conditions)
        if obj is None:
            LOGGER.debug("storage_miss", key=key)
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)

        headers = dict(obj.http_metadata)
        headers["etag"] = obj.etag
        if obj.content_range:
            headers["content-range"] = obj.content_range
        if obj.body is None:
            return build_response(status_code=status.HTTP_304_NOT_MODIFIED, headers=headers)
        status_code = status.HTTP_206_PARTIAL_CONTENT if range_header is not None else status.HTTP_200_OK
        LOGGER.debug("storage_read", key=key, bytes=len(obj.body), status=status_code)
        return build_response(obj.body, status_code=status_code, headers=headers)

    async def head_object(self, key: str) -> Response:
        obj = await self._store.head(key)
        if obj is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
        headers = dict(obj.http_metadata)
        headers["etag"] = obj.etag
        headers["content-length"] = str(obj.size)
        return build_response(headers=headers)

    async def put_object(self, request: Request, key: str) -> Response:
        body = await request.body()
        metadata = {name: request.headers[name] for name in HTTP_METADATA_HEADERS if name in request.headers}
        obj = await self._store.put(key, body, metadata)
        LOGGER.info("storage_write", key=key, bytes=len(body))
        return build_response(headers={"etag": obj.etag})

    async def delete_object(self, key: str) -> Response:
        await self._store.delete(key)
        LOGGER.info("storage_delete", key=key)
        return build_response()
