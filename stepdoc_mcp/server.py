from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from mcp.server.fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route

from .auth import SessionRefreshManager
from .config import Settings, settings
from .errors import ProviderUnavailable
from .http_client import HttpClient
from .middleware import McpAuthMiddleware
from .session import TokenStore, build_token_store
from .tools import register_tools

logger = structlog.get_logger(__name__)


def build_app(
    cfg: Settings = settings,
    *,
    store: Optional[TokenStore] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> Starlette:
    """Create the Starlette app with MCP routes, middleware and the session manager."""
    mcp = FastMCP("StepDoc Session MCP")
    client = HttpClient(cfg.stepdoc_api_base_url, timeout=cfg.http_timeout_seconds, client=http)
    manager = SessionRefreshManager(client, store or build_token_store(cfg.token_store_path), cfg)
    register_tools(mcp, client, manager)

    async def health(_request):
        return JSONResponse({"status": "ok", "session": manager.state.value})

    @asynccontextmanager
    async def lifespan(_app: Starlette):
        try:
            await manager.start()
        except ProviderUnavailable as exc:
            # Stored tokens are still usable once the API comes back.
            logger.error("stepdoc_api_unavailable", error=str(exc))
            manager.initialize_token_management()
        try:
            async with mcp.session_manager.run():
                yield
        finally:
            await manager.close()
            await client.aclose()

    routes = [
        Route("/health", health),
        # FastMCP already exposes /mcp; mount at root to avoid /mcp/mcp and 307->404.
        Mount("/", app=mcp.streamable_http_app()),
    ]

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.session_manager = manager
    app.add_middleware(McpAuthMiddleware, api_keys=cfg.mcp_api_keys, allowed_origins=cfg.allowed_origins)

    if cfg.allowed_origins:
        allow_origins = ["*"] if "*" in cfg.allowed_origins else cfg.allowed_origins
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    return app
