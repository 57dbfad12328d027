from __future__ import annotations

from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from fastapi import HTTPException

from edgegate.common.settings import GatewaySettings
from edgegate.storage.backends import S3ObjectStore, build_store


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeClient:
    def __init__(self) -> None:
        self.objects: dict[str, dict] = {}
        self.calls: list[tuple[str, dict]] = []
        self.get_error: str | None = None
        self.unreachable = False

    def _record(self, name: str, kwargs: dict) -> None:
        self.calls.append((name, kwargs))
        if self.unreachable:
            raise EndpointConnectionError(endpoint_url="http://s3.example.test")

    def list_objects_v2(self, **kwargs):
        self._record("list_objects_v2", kwargs)
        if kwargs.get("ContinuationToken") == "bogus":
            raise _client_error("InvalidArgument", "ListObjectsV2")
        keys = sorted(key for key in self.objects if key.startswith(kwargs["Prefix"]))
        if kwargs.get("ContinuationToken"):
            keys = [key for key in keys if key > kwargs["ContinuationToken"]]
        page = keys[: kwargs["MaxKeys"]]
        truncated = len(keys) > kwargs["MaxKeys"]
        response = {"Contents": [{"Key": key} for key in page], "IsTruncated": truncated}
        if truncated:
            response["NextContinuationToken"] = page[-1]
        return response

    def get_object(self, **kwargs):
        self._record("get_object", kwargs)
        if self.get_error:
            raise _client_error(self.get_error, "GetObject")
        entry = self.objects.get(kwargs["Key"])
        if entry is None:
            raise _client_error("NoSuchKey", "GetObject")

        class Body:
            def __init__(self, payload: bytes) -> None:
                self._payload = payload

            def read(self) -> bytes:
                return self._payload

        return {**entry["meta"], "Body": Body(entry["body"])}

    def head_object(self, **kwargs):
        self._record("head_object", kwargs)
        entry = self.objects.get(kwargs["Key"])
        if entry is None:
            raise _client_error("404", "HeadObject")
        return dict(entry["meta"])

    def put_object(self, **kwargs):
        self._record("put_object", kwargs)
        meta = {
            "ETag": f'"etag-{len(self.objects)}"',
            "ContentLength": len(kwargs["Body"]),
            "LastModified": datetime(2026, 1, 1, tzinfo=timezone.utc),
        }
        if "ContentType" in kwargs:
            meta["ContentType"] = kwargs["ContentType"]
        self.objects[kwargs["Key"]] = {"body": kwargs["Body"], "meta": meta}
        return {"ETag": meta["ETag"]}

    def delete_object(self, **kwargs):
        self._record("delete_object", kwargs)
        if kwargs["Key"] not in self.objects:
            raise _client_error("NoSuchKey", "DeleteObject")
        del self.objects[kwargs["Key"]]
        return {}


@pytest.fixture
def fake_client(monkeypatch):
    client = FakeClient()

    class DummySession:
        def client(self, *_args, **_kwargs):
            return client

    monkeypatch.setattr("edgegate.storage.backends.boto3.session.Session", lambda: DummySession())
    return client


@pytest.fixture
def store(fake_client) -> S3ObjectStore:
    settings = GatewaySettings(s3_bucket="bucket", s3_endpoint_url="http://s3.example.test")
    return S3ObjectStore(settings)


@pytest.mark.asyncio
async def test_put_then_get(store, fake_client) -> None:
    stored = await store.put("u/c/a.txt", b"hello", {"content-type": "text/plain", "cache-control": "x"})
    assert stored.etag == '"etag-0"'

    name, kwargs = fake_client.calls[-1]
    assert name == "put_object"
    assert kwargs["Bucket"] == "bucket"
    assert kwargs["ContentType"] == "text/plain"
    assert "CacheControl" not in kwargs

    fetched = await store.get("u/c/a.txt")
    assert fetched is not None
    assert fetched.body == b"hello"
    assert fetched.http_metadata == {"content-type": "text/plain"}


@pytest.mark.asyncio
async def test_get_forwards_range_and_conditions(store, fake_client) -> None:
    await store.put("k", b"data", {})
    await store.get(
        "k",
        range_header="bytes=0-1",
        conditions={"if-none-match": '"etag-0"', "if-modified-since": "Wed, 21 Oct 2015 07:28:00 GMT"},
    )
    _, kwargs = fake_client.calls[-1]
    assert kwargs["Range"] == "bytes=0-1"
    assert kwargs["IfNoneMatch"] == '"etag-0"'
    assert kwargs["IfModifiedSince"] == datetime(2015, 10, 21, 7, 28, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_missing_object_is_none(store) -> None:
    assert await store.get("absent") is None
    assert await store.head("absent") is None


@pytest.mark.asyncio
async def test_not_modified_returns_metadata_without_body(store, fake_client) -> None:
    await store.put("k", b"data", {})
    fake_client.get_error = "NotModified"
    withheld = await store.get("k", conditions={"if-none-match": '"etag-0"'})
    assert withheld is not None
    assert withheld.body is None
    assert withheld.etag == '"etag-0"'


@pytest.mark.asyncio
async def test_invalid_range_maps_to_416(store, fake_client) -> None:
    fake_client.get_error = "InvalidRange"
    with pytest.raises(HTTPException) as exc_info:
        await store.get("k", range_header="bytes=100-200")
    assert exc_info.value.status_code == 416


@pytest.mark.asyncio
async def test_delete_missing_is_success(store) -> None:
    await store.delete("never-there")


@pytest.mark.asyncio
async def test_list_pages_with_continuation_token(store) -> None:
    for key in ("p/a", "p/b", "p/c"):
        await store.put(key, b"", {})

    first = await store.list("p/", limit=2)
    assert first.keys == ["p/a", "p/b"]
    assert first.truncated and first.cursor == "p/b"

    second = await store.list("p/", cursor=first.cursor, limit=2)
    assert second.keys == ["p/c"]
    assert second.cursor is None


@pytest.mark.asyncio
async def test_bad_cursor_is_bad_request(store) -> None:
    with pytest.raises(HTTPException) as exc_info:
        await store.list("p/", cursor="bogus")
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_unreachable_backend_is_unavailable(store, fake_client) -> None:
    fake_client.unreachable = True
    with pytest.raises(HTTPException) as exc_info:
        await store.head("k")
    assert exc_info.value.status_code == 503


def test_bucket_selects_s3_store(fake_client, tmp_path) -> None:
    settings = GatewaySettings(s3_bucket="bucket", storage_path=tmp_path)
    store = build_store(settings)
    assert isinstance(store, S3ObjectStore)
    assert store.status() == {"backend": "s3", "bucket": "bucket", "endpoint": None}
