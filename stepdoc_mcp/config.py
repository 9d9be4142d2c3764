import os
from dataclasses import dataclass, field
from typing import List, Optional


def _csv_env(name: str, default: str = "") -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _bool_env(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Centralised configuration for the MCP server and the StepDoc API it talks to."""

    stepdoc_api_base_url: str = field(
        default_factory=lambda: os.getenv("STEPDOC_API_BASE_URL", "http://localhost:3000").rstrip("/")
    )
    login_url: str = field(
        default_factory=lambda: os.getenv("STEPDOC_LOGIN_URL", "http://localhost:3000/login.html")
    )
    token_store_path: Optional[str] = field(default_factory=lambda: os.getenv("STEPDOC_TOKEN_STORE_PATH") or None)

    # Access tokens live 15 minutes; refresh one minute early.
    refresh_interval_seconds: float = field(
        default_factory=lambda: float(os.getenv("STEPDOC_REFRESH_INTERVAL_SECONDS", "840"))
    )
    ready_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("STEPDOC_READY_TIMEOUT_SECONDS", "5"))
    )
    ready_poll_seconds: float = field(default_factory=lambda: float(os.getenv("STEPDOC_READY_POLL_SECONDS", "0.1")))
    http_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("STEPDOC_HTTP_TIMEOUT_SECONDS", "30"))
    )

    mcp_api_keys: List[str] = field(default_factory=lambda: _csv_env("MCP_API_KEYS"))
    allowed_origins: List[str] = field(default_factory=lambda: _csv_env("MCP_ALLOWED_ORIGINS", "*"))
    host: str = field(default_factory=lambda: os.getenv("MCP_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("MCP_PORT", "8000")))

    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())
    log_json: bool = field(default_factory=lambda: _bool_env("LOG_JSON"))


settings = Settings()
