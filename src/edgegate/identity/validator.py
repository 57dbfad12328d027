"""Resolve an inbound credential to an :class:`Identity`.

Two credential kinds are accepted:

* an opaque bearer token, which only the identity provider can vouch for and
  is therefore forwarded to its ``validate`` endpoint, and
* an extension assertion (``Extension <helix-jwt> <assertion-jwt>``), a signed
  JWT verified locally against the registered secret of the client named in
  the helix token.

Either way the client must be present in the secret registry.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Union

import jwt
import structlog
from fastapi import HTTPException, Request, status
from opentelemetry import trace
from pydantic import ValidationError

from ..common.errors import UpstreamResponseError
from ..common.schemas import Identity
from .provider import IdentityProviderClient
from .registry import ClientSecretRegistry

LOGGER = structlog.get_logger("edgegate.identity.validator")
TRACER = trace.get_tracer("edgegate.identity")

EXTENSION_MARKER = "extension"


@dataclass(frozen=True)
class BearerCredential:
    token: str


@dataclass(frozen=True)
class AssertionCredential:
    helix_token: str
    assertion: str


Credential = Union[BearerCredential, AssertionCredential]


def extract_credential(request: Request) -> str:
    return request.headers.get("authorization") or request.query_params.get("authorization") or ""


def parse_credential(raw: str) -> Credential:
    parts = raw.split()
    if parts and parts[0].lower() == EXTENSION_MARKER:
        helix_token = parts[1] if len(parts) > 1 else ""
        assertion = parts[2] if len(parts) > 2 else ""
        return AssertionCredential(helix_token=helix_token, assertion=assertion)
    return BearerCredential(token=raw)


def decode_secret(secret: str) -> bytes:
    try:
        return base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid client secret") from exc


class CredentialValidator:
    def __init__(self, provider: IdentityProviderClient, registry: ClientSecretRegistry):
        self._provider = provider
        self._registry = registry

    async def validate(self, request: Request) -> Identity:
        return await self.validate_credential(parse_credential(extract_credential(request)))

    async def validate_credential(self, credential: Credential) -> Identity:
        match credential:
            case BearerCredential(token=token):
                with TRACER.start_as_current_span("identity.validate_bearer"):
                    return await self._validate_bearer(token)
            case AssertionCredential(helix_token=helix_token, assertion=assertion):
                with TRACER.start_as_current_span("identity.validate_assertion"):
                    return self._validate_assertion(helix_token, assertion)
        raise TypeError(f"unsupported credential {credential!r}")

    async def _validate_bearer(self, token: str) -> Identity:
        response = await self._provider.validate(token)
        if not response.is_success:
            LOGGER.info("bearer_rejected", upstream_status=response.status_code)
            raise UpstreamResponseError(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="invalid identity provider response",
            ) from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="invalid identity provider response")

        client_id = payload.get("client_id")
        secret = self._registry.lookup(client_id)
        if secret is None:
            LOGGER.warning("unregistered_client", client_id=client_id)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="unauthorized client")
        identity = self._build_identity({**payload, "secret": secret})
        LOGGER.debug("bearer_validated", client_id=identity.client_id, user_id=identity.user_id)
        return identity

    def _validate_assertion(self, helix_token: str, assertion: str) -> Identity:
        try:
            unverified = jwt.decode(helix_token, options={"verify_signature": False})
        except jwt.PyJWTError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

        client_id = unverified.get("client_id")
        secret = self._registry.lookup(client_id)
        if secret is None:
            LOGGER.warning("unregistered_extension_client", client_id=client_id)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="unrecognized client id")

        try:
            claims = jwt.decode(
                assertion,
                decode_secret(secret),
                algorithms=["HS256"],
                options={"verify_aud": False},
            )
        except jwt.PyJWTError as exc:
            LOGGER.info("assertion_rejected", client_id=client_id, reason=str(exc))
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

        identity = self._build_identity({**claims, "client_id": client_id, "secret": secret})
        LOGGER.debug("assertion_validated", client_id=client_id, user_id=identity.user_id)
        return identity

    @staticmethod
    def _build_identity(data: dict[str, object]) -> Identity:
        try:
            return Identity.model_validate(data)
        except ValidationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="malformed identity claims") from exc
