"""Edge gateway: OAuth token proxy and tenant-scoped object storage API."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from fastapi import FastAPI, HTTPException, Request, Response, status
from starlette.datastructures import URL
from structlog.contextvars import bound_contextvars

from ..common.errors import install_exception_handlers
from ..common.observability import configure_logging, configure_tracing, identity_context, instrument_fastapi_app
from ..common.responses import preflight_response
from ..common.schemas import Identity
from ..common.settings import GatewaySettings
from ..identity.provider import IdentityProviderClient, build_http_client
from ..identity.registry import ClientSecretRegistry
from ..identity.token_proxy import OAUTH_PREFIX, TokenProxy
from ..identity.validator import CredentialValidator
from ..storage.backends import ObjectStore, build_store
from ..storage.gateway import TenantStorageGateway
from .static import StaticAssets, effective_url, request_path

LOGGER = structlog.get_logger("edgegate.gateway")

EBS_PREFIX = "/ebs"


@dataclass
class RequestContext:
    """Values derived for a single request; never shared between requests."""

    url: URL
    path: str
    identity: Optional[Identity] = None


class GatewayState:
    def __init__(self, settings: GatewaySettings, http_client: httpx.AsyncClient, store: Optional[ObjectStore]):
        self.settings = settings
        self.http = http_client
        self.store = store
        self.registry = ClientSecretRegistry.from_settings(settings)
        provider = IdentityProviderClient(http_client, settings)
        self.validator = CredentialValidator(provider, self.registry)
        self.token_proxy = TokenProxy(provider, self.registry)
        self.storage = TenantStorageGateway(store, page_size=settings.list_page_size) if store is not None else None
        self.static = StaticAssets(settings.static_path)
        backend = store.status().get("backend") if store is not None else None
        self.logger = LOGGER.bind(backend=backend)

    async def dispatch(self, request: Request) -> Response:
        if request.method == "OPTIONS":
            return preflight_response()

        context = RequestContext(url=effective_url(request), path=request_path(request))
        static_response = self.static.serve(request, context.url)
        if static_response is not None:
            return static_response

        if context.path.startswith(EBS_PREFIX):
            # Reserved for the extension backend service; no handling of its own yet.
            self.logger.debug("ebs_request", path=context.path)

        if context.path.startswith(OAUTH_PREFIX):
            return await self.token_proxy.exchange(request, context.path)

        context.identity = await self.validator.validate(request)
        if self.storage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
        with identity_context(context.identity.client_id, context.identity.user_id):
            return await self.storage.handle(request, context.identity, context.path)


def get_state(request: Request) -> GatewayState:
    state = getattr(request.app.state, "gateway", None)
    if state is None:
        raise RuntimeError("Gateway state not initialised")
    return state


def create_app(settings: Optional[GatewaySettings] = None) -> FastAPI:
    settings = settings or GatewaySettings()
    configure_logging("edgegate.gateway", settings.log_level)
    configure_tracing(
        service_name="edgegate.gateway",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http_client = build_http_client(settings)
        store = build_store(settings)
        app.state.gateway = GatewayState(settings, http_client, store)
        LOGGER.info(
            "gateway_started",
            clients=len(app.state.gateway.registry),
            storage=store.status() if store is not None else None,
        )
        try:
            yield
        finally:
            await http_client.aclose()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    install_exception_handlers(app)
    instrument_fastapi_app(app)

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        with bound_contextvars(method=request.method, path=request_path(request)):
            try:
                response = await call_next(request)
            except Exception:
                LOGGER.exception(
                    "http_request_error",
                    duration_ms=round((time.perf_counter() - start) * 1000, 2),
                )
                raise

        duration = time.perf_counter() - start
        log_kwargs = {
            "method": request.method,
            "path": request_path(request),
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    async def dispatch(request: Request) -> Response:
        return await get_state(request).dispatch(request)

    # Registered without a method list so every method reaches the dispatcher.
    app.add_route("/{path:path}", dispatch, include_in_schema=False)

    return app
