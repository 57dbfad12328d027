"""Client for the upstream OAuth identity provider."""

from __future__ import annotations

from typing import Mapping

import httpx
import structlog
from fastapi import HTTPException, status

from ..common.observability import instrument_http_client
from ..common.settings import GatewaySettings

LOGGER = structlog.get_logger("edgegate.identity.provider")


def build_http_client(settings: GatewaySettings) -> httpx.AsyncClient:
    timeout = httpx.Timeout(settings.idp_timeout_seconds)
    limits = httpx.Limits(max_connections=20, max_keepalive_connections=10)
    return instrument_http_client(httpx.AsyncClient(timeout=timeout, limits=limits))


class IdentityProviderClient:
    """Talks to the provider's ``validate`` and ``token`` endpoints.

    Responses are returned as-is, callers decide what a failure means.
    Transport errors become a 502 since there is no upstream answer to relay.
    """

    def __init__(self, http_client: httpx.AsyncClient, settings: GatewaySettings):
        self._http = http_client
        self._validate_url = settings.idp_validate_url
        self._token_url = settings.idp_token_url

    async def validate(self, authorization: str) -> httpx.Response:
        try:
            return await self._http.get(self._validate_url, headers={"authorization": authorization})
        except httpx.HTTPError as exc:
            LOGGER.error("idp_validate_unreachable", error=str(exc))
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="identity provider unavailable",
            ) from exc

    async def exchange(self, form: Mapping[str, str | list[str]]) -> httpx.Response:
        try:
            return await self._http.post(self._token_url, data=dict(form))
        except httpx.HTTPError as exc:
            LOGGER.error("idp_token_unreachable", error=str(exc))
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="identity provider unavailable",
            ) from exc
