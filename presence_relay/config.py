from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(ValueError):
    """Startup configuration is missing or invalid."""


def _as_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class Settings:
    server_secret: str
    host: str = "127.0.0.1"
    port: int = 5000
    cors_origin: Optional[str] = None
    log_level: str = "INFO"

    presence_ttl_seconds: int = 3 * 60
    request_ttl_seconds: int = 24 * 60 * 60
    token_ttl_seconds: int = 7 * 24 * 60 * 60
    cleanup_interval_seconds: int = 30
    max_body_bytes: int = 2 * 1024 * 1024

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))
        return cls(
            server_secret=os.getenv("SERVER_SECRET", "").strip(),
            host=os.getenv("HOST", "127.0.0.1").strip() or "127.0.0.1",
            port=_as_int("PORT", 5000),
            cors_origin=os.getenv("CORS_ORIGIN", "").strip() or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
            presence_ttl_seconds=_as_int("PRESENCE_TTL_SECONDS", 3 * 60),
            request_ttl_seconds=_as_int("REQUEST_TTL_SECONDS", 24 * 60 * 60),
            token_ttl_seconds=_as_int("TOKEN_TTL_SECONDS", 7 * 24 * 60 * 60),
            cleanup_interval_seconds=_as_int("CLEANUP_INTERVAL_SECONDS", 30),
            max_body_bytes=_as_int("MAX_BODY_BYTES", 2 * 1024 * 1024),
        )

    def validate(self) -> None:
        if not self.server_secret:
            raise ConfigError("SERVER_SECRET is required. Refusing to start.")
        if not (0 < self.port < 65536):
            raise ConfigError("PORT must be between 1 and 65535")
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
        if self.cors_origin == "*":
            raise ConfigError("CORS_ORIGIN must name a single origin, not '*'")
        for name in ("presence_ttl_seconds", "request_ttl_seconds", "token_ttl_seconds",
                     "cleanup_interval_seconds", "max_body_bytes"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name.upper()} must be > 0")
