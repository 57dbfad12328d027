from __future__ import annotations

import base64
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from edgegate.common.settings import GatewaySettings
from edgegate.gateway.app import create_app

CLIENT_ID = "abc"
CLIENT_SECRET = "c2VjcmV0"  # base64 of b"secret"
USER_ID = "1234"


class FakeIdentityProvider:
    """Stands in for the OAuth provider's validate and token endpoints."""

    def __init__(self) -> None:
        self.tokens: dict[str, dict[str, object]] = {}
        self.validate_calls: list[str] = []
        self.token_calls: list[dict[str, list[str]]] = []
        self.token_response: Optional[Callable[[dict[str, list[str]]], httpx.Response]] = None

    def register_token(self, authorization: str, **payload: object) -> None:
        self.tokens[authorization] = payload

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/validate"):
            authorization = request.headers.get("authorization", "")
            self.validate_calls.append(authorization)
            payload = self.tokens.get(authorization)
            if payload is None:
                return httpx.Response(401, json={"status": 401, "message": "invalid access token"})
            return httpx.Response(200, json=payload)
        if request.url.path.endswith("/token"):
            form = parse_qs(request.content.decode("utf-8"))
            self.token_calls.append(form)
            if self.token_response is not None:
                return self.token_response(form)
            return httpx.Response(
                200,
                json={"access_token": "new-access", "refresh_token": "new-refresh", "token_type": "bearer"},
            )
        return httpx.Response(404)


def make_assertion(claims: dict[str, object], secret: str = CLIENT_SECRET) -> str:
    return jwt.encode(claims, base64.b64decode(secret), algorithm="HS256")


def make_helix_token(client_id: str = CLIENT_ID) -> str:
    return jwt.encode({"client_id": client_id}, "unverified-signing-key", algorithm="HS256")


@pytest.fixture
def fake_idp() -> FakeIdentityProvider:
    provider = FakeIdentityProvider()
    provider.register_token(
        "OAuth user-token",
        client_id=CLIENT_ID,
        login="viewer",
        user_id=USER_ID,
        scopes=["user:read:email"],
        expires_in=3600,
    )
    provider.register_token("OAuth app-token", client_id=CLIENT_ID, scopes=[], expires_in=3600)
    provider.register_token("OAuth stranger-token", client_id="unregistered", user_id="9", scopes=[])
    return provider


@pytest.fixture
def settings(tmp_path: Path) -> GatewaySettings:
    return GatewaySettings(
        client_secrets={CLIENT_ID: CLIENT_SECRET, "other": "b3RoZXI="},
        storage_path=tmp_path / "objects",
        idp_validate_url="https://id.example.test/oauth2/validate",
        idp_token_url="https://id.example.test/oauth2/token",
    )


@pytest.fixture
def make_client(monkeypatch: pytest.MonkeyPatch, fake_idp: FakeIdentityProvider):
    def _build_http_client(_settings: GatewaySettings) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(fake_idp.handle))

    monkeypatch.setattr("edgegate.gateway.app.build_http_client", _build_http_client)

    def _make(gateway_settings: GatewaySettings) -> TestClient:
        return TestClient(create_app(gateway_settings))

    return _make


@pytest.fixture
def client(make_client, settings: GatewaySettings):
    with make_client(settings) as test_client:
        yield test_client


@pytest.fixture
def user_headers() -> dict[str, str]:
    return {"Authorization": "OAuth user-token"}
