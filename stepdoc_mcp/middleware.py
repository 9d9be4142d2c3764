from typing import List, Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.types import ASGIApp

logger = structlog.get_logger(__name__)


def origin_allowed(origin: Optional[str], allowed_origins: List[str]) -> bool:
    """Return True when origin matches the allowlist or wildcard."""
    if not origin:
        return True  # tools/curl send no Origin
    if not allowed_origins:
        return False
    if "*" in allowed_origins:
        return True
    return origin in allowed_origins


def bearer_token(authorization: str) -> Optional[str]:
    if authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return None


class McpAuthMiddleware(BaseHTTPMiddleware):
    """Guard /mcp with the origin allowlist and, when configured, an API key."""

    def __init__(self, app: ASGIApp, api_keys: List[str], allowed_origins: List[str]):
        super().__init__(app)
        self.api_keys = api_keys
        self.allowed_origins = allowed_origins

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith("/mcp"):
            origin = request.headers.get("origin")
            if not origin_allowed(origin, self.allowed_origins):
                logger.info("mcp_origin_rejected", origin=origin)
                return PlainTextResponse("Origin not allowed.", status_code=403)

            if self.api_keys:
                token = bearer_token(request.headers.get("authorization", ""))
                if not token or token not in self.api_keys:
                    logger.info("mcp_api_key_rejected", path=request.url.path)
                    return JSONResponse({"error": "Unauthorized"}, status_code=401)

        return await call_next(request)
