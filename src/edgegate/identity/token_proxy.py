"""OAuth token endpoint proxy for confidential clients.

Browser code posts an authorization-code, refresh or client-credentials grant
without the client secret; the proxy adds the registered secret and forwards
the form to the identity provider.
"""

from __future__ import annotations

import json
from typing import Optional

import httpx
import structlog
from fastapi import HTTPException, Request, Response, status
from opentelemetry import trace

from ..common.responses import relay_response
from .provider import IdentityProviderClient
from .registry import ClientSecretRegistry

LOGGER = structlog.get_logger("edgegate.identity.token_proxy")
TRACER = trace.get_tracer("edgegate.identity")

OAUTH_PREFIX = "/oauth2"
TOKEN_PATH = "/oauth2/token"


def strip_client_secret(upstream: httpx.Response) -> Optional[bytes]:
    """Return a rewritten body if the upstream JSON echoes ``client_secret``."""
    if "json" not in upstream.headers.get("content-type", ""):
        return None
    try:
        payload = upstream.json()
    except ValueError:
        return None
    if not isinstance(payload, dict) or "client_secret" not in payload:
        return None
    payload.pop("client_secret")
    return json.dumps(payload).encode("utf-8")


class TokenProxy:
    def __init__(self, provider: IdentityProviderClient, registry: ClientSecretRegistry):
        self._provider = provider
        self._registry = registry

    async def exchange(self, request: Request, path: str) -> Response:
        if path != TOKEN_PATH:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)

        content_type = request.headers.get("content-type", "")
        if "form" not in content_type.lower():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="content type must be form data")

        form = await request.form()
        fields: dict[str, list[str]] = {}
        for key, value in form.multi_items():
            if isinstance(value, str):
                fields.setdefault(key, []).append(value)

        client_ids = fields.get("client_id")
        if not client_ids:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing client_id")
        client_id = client_ids[0]

        secret = self._registry.lookup(client_id)
        if secret is None:
            LOGGER.warning("token_exchange_unregistered_client", client_id=client_id)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="unauthorized client")
        fields["client_secret"] = [secret]

        with TRACER.start_as_current_span("identity.token_exchange", attributes={"edgegate.client_id": client_id}):
            upstream = await self._provider.exchange(fields)

        LOGGER.info(
            "token_exchange",
            client_id=client_id,
            grant_type=(fields.get("grant_type") or [None])[0],
            upstream_status=upstream.status_code,
        )
        scrubbed = strip_client_secret(upstream)
        if scrubbed is not None:
            LOGGER.warning("token_exchange_secret_echo_removed", client_id=client_id)
        return relay_response(upstream, content=scrubbed)
