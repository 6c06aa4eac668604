"""Runtime configuration loaded from environment variables.

Values are read once at startup (after `load_dotenv()`) and passed down
explicitly; nothing below reads the environment on its own.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_BACKEND_URL = "http://localhost:8000"
DEFAULT_API_PREFIX = "/api/v1"
DEFAULT_GEO_URL = "https://ipapi.co/json/"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def to_ws_url(http_url: str) -> str:
    """Return the websocket base matching an HTTP base URL."""
    url = http_url.rstrip("/")
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


@dataclass
class RuntimeConfig:
    """Settings shared by the widget session, live feed and HTTP host."""

    backend_url: str = DEFAULT_BACKEND_URL
    api_prefix: str = DEFAULT_API_PREFIX
    frontend_url: Optional[str] = None
    livekit_url: str = ""
    database_dir: Optional[Path] = None
    session_ttl_days: int = 30
    geo_url: str = DEFAULT_GEO_URL
    share_location: bool = False
    log_level: str = "INFO"

    @property
    def http_base(self) -> str:
        return f"{self.backend_url.rstrip('/')}{self.api_prefix}"

    @property
    def ws_base(self) -> str:
        return f"{to_ws_url(self.backend_url)}{self.api_prefix}"

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        """Build the configuration from the process environment.

        Raises:
            RuntimeError: If a numeric setting cannot be parsed.
        """
        load_dotenv()

        ttl_raw = os.getenv("AGENTCONNECT_SESSION_TTL_DAYS", "30")
        try:
            ttl_days = int(ttl_raw)
        except ValueError as exc:
            raise RuntimeError(
                f"AGENTCONNECT_SESSION_TTL_DAYS={ttl_raw!r} is not an integer number of days."
            ) from exc
        if ttl_days <= 0:
            raise RuntimeError("AGENTCONNECT_SESSION_TTL_DAYS must be positive.")

        database_dir = os.getenv("DATABASE_DIR")
        return cls(
            backend_url=os.getenv("AGENTCONNECT_BACKEND_URL", DEFAULT_BACKEND_URL),
            api_prefix=os.getenv("AGENTCONNECT_API_PREFIX", DEFAULT_API_PREFIX),
            frontend_url=os.getenv("AGENTCONNECT_FRONTEND_URL") or None,
            livekit_url=os.getenv("AGENTCONNECT_LIVEKIT_URL", ""),
            database_dir=Path(database_dir).expanduser() if database_dir else None,
            session_ttl_days=ttl_days,
            geo_url=os.getenv("AGENTCONNECT_GEO_URL", DEFAULT_GEO_URL),
            share_location=_env_bool("AGENTCONNECT_SHARE_LOCATION", False),
            log_level=os.getenv("AGENTCONNECT_LOG_LEVEL", "INFO").upper(),
        )
