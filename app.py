"""Entry point for the StepDoc session MCP server."""

import uvicorn

from stepdoc_mcp.config import settings
from stepdoc_mcp.log import configure_logging
from stepdoc_mcp.server import build_app

configure_logging(settings.log_level, settings.log_json)
app = build_app(settings)


if __name__ == "__main__":
    uvicorn.run("app:app", host=settings.host, port=settings.port, reload=False, log_config=None)
