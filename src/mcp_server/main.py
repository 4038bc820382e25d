"""MCP OAuth Gateway - FastAPI Application.

Serves the per-resource authorization server (discovery, authorize, token,
introspection, revocation, registration) and the JSON-RPC gateway that
turns tool calls into downstream HTTP calls.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials

from shared.config import Settings, get_settings, load_yaml_config
from shared.errors import GatewayError, ServerError
from shared.logging import bind_context, clear_context, get_logger, setup_logging
from oauth_server import (
    AccessControl,
    ClientRegistry,
    MetadataPublisher,
    SessionAuthenticator,
    TokenService,
)
from oauth_server.routes import router as oauth_router
from mcp_server.api_client import DownstreamClient
from mcp_server.auth import GatewayAuthenticator, get_client_ip, security
from mcp_server.dispatcher import ProtocolDispatcher
from mcp_server.registry import ResourceRegistry, load_catalog
from mcp_server.router import ToolInvoker
from mcp_server.usage import JSONLinesSink, UsageRecorder, UsageSink

logger = get_logger(__name__)

VERSION = "1.0.0"
GENERIC_SERVER_ERROR = {"error": "server_error", "error_description": "An internal error occurred"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting MCP gateway", resources=len(app.state.registry.list_resources()))
    app.state.usage.start()

    yield

    logger.info("Shutting down MCP gateway")
    await app.state.usage.stop()
    await app.state.downstream.close()


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[ResourceRegistry] = None,
    access_control: Optional[AccessControl] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    usage_sink: Optional[UsageSink] = None,
) -> FastAPI:
    """
    Build the application and wire its services onto ``app.state``.

    Without an explicit registry the catalog file named in the settings is
    loaded.
    """
    settings = settings or get_settings()
    setup_logging(settings.log_level, json_output=settings.environment == "production")

    access_control = access_control or AccessControl()
    if registry is None:
        registry = ResourceRegistry()
        load_catalog(load_yaml_config(settings.gateway.catalog_path), registry, access_control)

    metadata = MetadataPublisher(settings.base_url, settings.oauth.scopes_supported)
    token_service = TokenService(settings.oauth, access_control)
    downstream = DownstreamClient(http_client, timeout=settings.gateway.downstream_timeout_seconds)
    usage = UsageRecorder(
        usage_sink or JSONLinesSink(settings.usage.log_path),
        queue_size=settings.usage.queue_size,
        enabled=settings.usage.enabled,
        shutdown_timeout=settings.usage.shutdown_timeout_seconds,
    )

    app = FastAPI(
        title="MCP OAuth Gateway",
        description="Per-resource OAuth 2.1 authorization server and MCP JSON-RPC gateway",
        version=VERSION,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.registry = registry
    app.state.access_control = access_control
    app.state.metadata = metadata
    app.state.token_service = token_service
    app.state.clients = ClientRegistry(settings.base_url)
    app.state.sessions = SessionAuthenticator(settings.oauth)
    app.state.downstream = downstream
    app.state.usage = usage
    app.state.dispatcher = ProtocolDispatcher(
        registry,
        GatewayAuthenticator(token_service, metadata),
        ToolInvoker(registry, downstream, usage),
        settings.gateway,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.gateway.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["WWW-Authenticate"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        clear_context()
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        bind_context(request_id=request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        if isinstance(exc, ServerError):
            logger.error("Server error", path=request.url.path, error=exc.message, **exc.context)
            return JSONResponse(GENERIC_SERVER_ERROR, status_code=exc.status_code)

        logger.info("Request rejected", path=request.url.path, error=exc.error_code, reason=exc.message)
        return JSONResponse(exc.to_oauth(), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error", path=request.url.path, exc_info=exc)
        return JSONResponse(GENERIC_SERVER_ERROR, status_code=500)

    app.include_router(oauth_router)

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": VERSION,
            "resource_count": len(app.state.registry.list_resources()),
        }

    @app.post("/api/mcp/{slug}", tags=["MCP"])
    async def mcp_gateway(
        slug: str,
        request: Request,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    ):
        """JSON-RPC endpoint of one MCP."""
        body = await request.body()
        result = await app.state.dispatcher.handle(slug, body, credentials, get_client_ip(request))

        if result.body is None:
            return Response(status_code=result.status_code, headers=result.headers)
        return JSONResponse(result.body, status_code=result.status_code, headers=result.headers)

    return app


def main():
    """Run the MCP gateway."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "mcp_server.main:create_app",
        factory=True,
        host=settings.gateway.host,
        port=settings.gateway.port,
        reload=settings.environment == "development",
    )


if __name__ == "__main__":
    main()
