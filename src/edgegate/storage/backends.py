"""Object storage backends: local disk for development, S3 for deployments."""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import json
import os
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Callable, Mapping, Optional

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import HTTPException, status

from ..common.schemas import KeyPage, StoredObject
from ..common.settings import GatewaySettings

LOGGER = structlog.get_logger("edgegate.storage")

CONDITIONAL_HEADERS = ("if-match", "if-none-match", "if-modified-since", "if-unmodified-since")
HTTP_METADATA_HEADERS = ("content-type", "content-language", "content-disposition", "content-encoding")

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_WITHHELD_CODES = {"304", "NotModified", "412", "PreconditionFailed"}
_RANGE_CODES = {"416", "InvalidRange"}


def storage_unavailable() -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage backend unavailable")


def range_not_satisfiable() -> HTTPException:
    return HTTPException(status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE, detail="Range not satisfiable")


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_range(header: Optional[str], size: int) -> Optional[tuple[int, int]]:
    """Parse a single ``bytes=`` range into inclusive offsets.

    Malformed headers are ignored (``None``); well-formed but unsatisfiable
    ranges raise 416.
    """
    if not header or not header.startswith("bytes="):
        return None
    range_spec = header[len("bytes="):].strip()
    if "," in range_spec or "-" not in range_spec:
        return None
    first, _, last = range_spec.partition("-")
    try:
        suffix = None if first else int(last)
        start = int(first) if first else 0
        end = int(last) if first and last else size - 1
    except ValueError:
        return None
    # An empty object has no satisfiable byte range.
    if size == 0 or (suffix is not None and suffix <= 0):
        raise range_not_satisfiable()
    if suffix is not None:
        return max(0, size - suffix), size - 1
    if start > end or start >= size:
        raise range_not_satisfiable()
    return start, min(end, size - 1)


def _etag_values(header: str) -> set[str]:
    return {value.strip().removeprefix("W/").strip('"') for value in header.split(",") if value.strip()}


def conditions_met(etag: str, uploaded: Optional[datetime], conditions: Mapping[str, str]) -> bool:
    """Evaluate conditional request headers against an object's validators."""
    bare_etag = etag.strip('"')
    if_match = conditions.get("if-match")
    if if_match:
        if "*" not in if_match and bare_etag not in _etag_values(if_match):
            return False
    elif uploaded is not None:
        unmodified_since = parse_http_date(conditions.get("if-unmodified-since"))
        if unmodified_since is not None and uploaded.replace(microsecond=0) > unmodified_since:
            return False

    if_none_match = conditions.get("if-none-match")
    if if_none_match:
        if "*" in if_none_match or bare_etag in _etag_values(if_none_match):
            return False
    elif uploaded is not None:
        modified_since = parse_http_date(conditions.get("if-modified-since"))
        if modified_since is not None and uploaded.replace(microsecond=0) <= modified_since:
            return False
    return True


def encode_cursor(key: str) -> str:
    return base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> str:
    padding = "=" * (-len(cursor) % 4)
    try:
        return base64.urlsafe_b64decode(cursor + padding).decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid cursor") from exc


class ObjectStore:
    """Primitives the tenant gateway translates HTTP requests onto."""

    async def list(self, prefix: str, cursor: Optional[str] = None, limit: int = 1000) -> KeyPage:  # pragma: no cover - interface
        raise NotImplementedError

    async def get(
        self,
        key: str,
        *,
        range_header: Optional[str] = None,
        conditions: Optional[Mapping[str, str]] = None,
    ) -> Optional[StoredObject]:
        raise NotImplementedError

    async def head(self, key: str) -> Optional[StoredObject]:
        raise NotImplementedError

    async def put(self, key: str, body: bytes, http_metadata: Mapping[str, str]) -> StoredObject:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    def status(self) -> dict[str, object]:
        raise NotImplementedError


class LocalObjectStore(ObjectStore):
    """Flat key space on local disk, meant for development and tests.

    Each object is a ``<sha256(key)>.blob`` file next to a ``.json`` document
    holding its key and metadata, so keys never become filesystem paths.
    There is no prefix index: every listing page reads and sorts the metadata
    of the whole store. Use ``S3ObjectStore`` for real deployments.
    """

    def __init__(self, settings: GatewaySettings):
        if settings.storage_path is None:
            raise RuntimeError("Local object store requires EDGEGATE_STORAGE_PATH")
        self._root = settings.storage_path
        self._root.mkdir(parents=True, exist_ok=True)

    def _paths(self, key: str) -> tuple[Path, Path]:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._root / f"{digest}.blob", self._root / f"{digest}.json"

    def _read_meta(self, meta_path: Path) -> Optional[dict]:
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    def _to_object(self, meta: dict, body: Optional[bytes] = None, content_range: Optional[str] = None) -> StoredObject:
        return StoredObject(
            key=meta["key"],
            size=int(meta["size"]),
            etag=meta["etag"],
            body=body,
            http_metadata=meta.get("http_metadata", {}),
            uploaded=datetime.fromisoformat(meta["uploaded"]) if meta.get("uploaded") else None,
            content_range=content_range,
        )

    def _list_sync(self, prefix: str, cursor: Optional[str], limit: int) -> KeyPage:
        start_after = decode_cursor(cursor) if cursor else None
        keys = []
        for meta_path in self._root.glob("*.json"):
            meta = self._read_meta(meta_path)
            if meta is None:
                continue
            key = meta["key"]
            if key.startswith(prefix) and (start_after is None or key > start_after):
                keys.append(key)
        keys.sort()
        page = keys[:limit]
        truncated = len(keys) > limit
        return KeyPage(keys=page, truncated=truncated, cursor=encode_cursor(page[-1]) if truncated else None)

    def _get_sync(self, key: str, range_header: Optional[str], conditions: Mapping[str, str]) -> Optional[StoredObject]:
        blob_path, meta_path = self._paths(key)
        meta = self._read_meta(meta_path)
        if meta is None:
            return None
        obj = self._to_object(meta)
        if not conditions_met(obj.etag, obj.uploaded, conditions):
            return obj
        try:
            data = blob_path.read_bytes()
        except FileNotFoundError:
            return None
        byte_range = parse_range(range_header, len(data))
        if byte_range is None:
            return self._to_object(meta, body=data)
        start, end = byte_range
        return self._to_object(meta, body=data[start:end + 1], content_range=f"bytes {start}-{end}/{len(data)}")

    def _put_sync(self, key: str, body: bytes, http_metadata: Mapping[str, str]) -> StoredObject:
        blob_path, meta_path = self._paths(key)
        meta = {
            "key": key,
            "size": len(body),
            "etag": f'"{hashlib.md5(body).hexdigest()}"',
            "http_metadata": dict(http_metadata),
            "uploaded": datetime.now(timezone.utc).isoformat(),
        }
        for path, payload in ((blob_path, body), (meta_path, json.dumps(meta).encode("utf-8"))):
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_bytes(payload)
            os.replace(tmp_path, path)
        return self._to_object(meta)

    def _delete_sync(self, key: str) -> None:
        blob_path, meta_path = self._paths(key)
        meta_path.unlink(missing_ok=True)
        blob_path.unlink(missing_ok=True)

    async def list(self, prefix: str, cursor: Optional[str] = None, limit: int = 1000) -> KeyPage:
        return await asyncio.to_thread(self._list_sync, prefix, cursor, limit)

    async def get(
        self,
        key: str,
        *,
        range_header: Optional[str] = None,
        conditions: Optional[Mapping[str, str]] = None,
    ) -> Optional[StoredObject]:
        return await asyncio.to_thread(self._get_sync, key, range_header, conditions or {})

    async def head(self, key: str) -> Optional[StoredObject]:
        meta = await asyncio.to_thread(self._read_meta, self._paths(key)[1])
        return self._to_object(meta) if meta is not None else None

    async def put(self, key: str, body: bytes, http_metadata: Mapping[str, str]) -> StoredObject:
        return await asyncio.to_thread(self._put_sync, key, body, http_metadata)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_sync, key)

    def status(self) -> dict[str, object]:
        return {
            "backend": "local",
            "storage_path": str(self._root),
            "writable": self._root.exists() and os.access(self._root, os.W_OK),
        }


_S3_METADATA_FIELDS = {
    "content-type": "ContentType",
    "content-language": "ContentLanguage",
    "content-disposition": "ContentDisposition",
    "content-encoding": "ContentEncoding",
}

_S3_CONDITION_FIELDS = {
    "if-match": "IfMatch",
    "if-none-match": "IfNoneMatch",
    "if-modified-since": "IfModifiedSince",
    "if-unmodified-since": "IfUnmodifiedSince",
}


class S3ObjectStore(ObjectStore):
    def __init__(self, settings: GatewaySettings):
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._bucket = settings.s3_bucket
        self._endpoint = settings.s3_endpoint_url

    async def _call(self, func: Callable[..., dict], **kwargs) -> dict:
        try:
            return await asyncio.to_thread(func, Bucket=self._bucket, **kwargs)
        except BotoCoreError as exc:
            LOGGER.error("s3_call_failed", operation=func.__name__, error=str(exc))
            raise storage_unavailable() from exc

    @staticmethod
    def _error_code(exc: ClientError) -> str:
        return str(exc.response.get("Error", {}).get("Code", ""))

    @staticmethod
    def _http_metadata(response: Mapping[str, object]) -> dict[str, str]:
        return {
            header: str(response[field])
            for header, field in _S3_METADATA_FIELDS.items()
            if response.get(field)
        }

    def _to_object(self, key: str, response: Mapping[str, object], body: Optional[bytes] = None) -> StoredObject:
        return StoredObject(
            key=key,
            size=int(response.get("ContentLength") or 0),
            etag=str(response.get("ETag", "")),
            body=body,
            http_metadata=self._http_metadata(response),
            uploaded=response.get("LastModified"),
            content_range=response.get("ContentRange"),
        )

    async def list(self, prefix: str, cursor: Optional[str] = None, limit: int = 1000) -> KeyPage:
        kwargs: dict[str, object] = {"Prefix": prefix, "MaxKeys": limit}
        if cursor:
            kwargs["ContinuationToken"] = cursor
        try:
            response = await self._call(self._client.list_objects_v2, **kwargs)
        except ClientError as exc:
            if self._error_code(exc) == "InvalidArgument":
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid cursor") from exc
            raise storage_unavailable() from exc
        truncated = bool(response.get("IsTruncated"))
        return KeyPage(
            keys=[item["Key"] for item in response.get("Contents", [])],
            truncated=truncated,
            cursor=response.get("NextContinuationToken") if truncated else None,
        )

    async def get(
        self,
        key: str,
        *,
        range_header: Optional[str] = None,
        conditions: Optional[Mapping[str, str]] = None,
    ) -> Optional[StoredObject]:
        kwargs: dict[str, object] = {"Key": key}
        if range_header:
            kwargs["Range"] = range_header
        for header, field in _S3_CONDITION_FIELDS.items():
            value = (conditions or {}).get(header)
            if not value:
                continue
            if header.endswith("since"):
                parsed = parse_http_date(value)
                if parsed is None:
                    continue
                kwargs[field] = parsed
            else:
                kwargs[field] = value
        try:
            response = await self._call(self._client.get_object, **kwargs)
        except ClientError as exc:
            code = self._error_code(exc)
            if code in _MISSING_CODES:
                return None
            if code in _WITHHELD_CODES:
                return await self.head(key)
            if code in _RANGE_CODES:
                raise range_not_satisfiable() from exc
            LOGGER.error("s3_get_failed", key=key, code=code)
            raise storage_unavailable() from exc
        body = await asyncio.to_thread(response["Body"].read)
        return self._to_object(key, response, body=body)

    async def head(self, key: str) -> Optional[StoredObject]:
        try:
            response = await self._call(self._client.head_object, Key=key)
        except ClientError as exc:
            if self._error_code(exc) in _MISSING_CODES:
                return None
            raise storage_unavailable() from exc
        return self._to_object(key, response)

    async def put(self, key: str, body: bytes, http_metadata: Mapping[str, str]) -> StoredObject:
        kwargs: dict[str, object] = {"Key": key, "Body": body}
        for header, field in _S3_METADATA_FIELDS.items():
            if http_metadata.get(header):
                kwargs[field] = http_metadata[header]
        try:
            response = await self._call(self._client.put_object, **kwargs)
        except ClientError as exc:
            LOGGER.error("s3_put_failed", key=key, code=self._error_code(exc))
            raise storage_unavailable() from exc
        return StoredObject(
            key=key,
            size=len(body),
            etag=str(response.get("ETag", "")),
            http_metadata=dict(http_metadata),
        )

    async def delete(self, key: str) -> None:
        try:
            await self._call(self._client.delete_object, Key=key)
        except ClientError as exc:
            if self._error_code(exc) in _MISSING_CODES:
                return
            raise storage_unavailable() from exc

    def status(self) -> dict[str, object]:
        return {"backend": "s3", "bucket": self._bucket, "endpoint": self._endpoint}


def build_store(settings: GatewaySettings) -> Optional[ObjectStore]:
    if settings.s3_bucket:
        return S3ObjectStore(settings)
    if settings.storage_path is not None:
        return LocalObjectStore(settings)
    return None
