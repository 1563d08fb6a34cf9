"""Configuration management for the chat gateway."""

import os
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv


@dataclass
class Config:
    """Application configuration loaded from environment variables."""

    secrets: List[str] = field(default_factory=list)
    api_key: str = ""
    server_mode: bool = True
    port: int = 8000
    host: str = "0.0.0.0"
    upstream_base_url: str = "https://chat.qwen.ai"
    vision_fallback_model: str = "qwen3-vl-plus"
    default_model: str = "qwen-max"
    max_retries: int = 2
    request_timeout_seconds: float = 60.0
    keepalive_interval_seconds: float = 15.0
    auto_refresh_token: bool = True
    token_refresh_interval_hours: float = 24.0
    log_level: str = "INFO"

    def __post_init__(self):
        if self.server_mode and not self.secrets:
            raise ValueError(
                "COOKIES environment variable or COOKIE_FILE must provide at "
                "least one upstream secret in server mode"
            )
        if self.max_retries < 0:
            raise ValueError("MAX_RETRIES must not be negative")
        if self.request_timeout_seconds <= 0:
            raise ValueError("REQUEST_TIMEOUT_SECONDS must be positive")
        if self.keepalive_interval_seconds <= 0:
            raise ValueError("KEEPALIVE_INTERVAL_SECONDS must be positive")
        if self.token_refresh_interval_hours <= 0:
            raise ValueError("TOKEN_REFRESH_INTERVAL_HOURS must be positive")


def _parse_bool(raw: str, default: bool) -> bool:
    if not raw.strip():
        return default
    return raw.strip().lower() not in ("false", "0", "no", "off")


def split_secrets(raw: str) -> List[str]:
    """Split a secret list separated by ``|||`` or newlines."""
    separator = "|||" if "|||" in raw else "\n"
    return [item.strip() for item in raw.split(separator) if item.strip()]


def read_secrets_file(path: str) -> List[str]:
    """Read one secret per line, skipping blank lines and ``#`` comments."""
    if not path or not os.path.exists(path):
        return []
    with open(path, encoding="utf-8") as handle:
        return [
            line.strip()
            for line in handle
            if line.strip() and not line.strip().startswith("#")
        ]


def load_config(use_dotenv: bool = True) -> Config:
    """Load configuration from environment variables.

    Returns:
        Config: Configured application settings

    Raises:
        ValueError: If required environment variables are missing or invalid
    """
    if use_dotenv:
        load_dotenv()

    secrets_raw = os.getenv("COOKIES", "") or os.getenv("COOKIE", "")
    if secrets_raw.strip():
        secrets = split_secrets(secrets_raw)
    else:
        secrets = read_secrets_file(os.getenv("COOKIE_FILE", ""))

    return Config(
        secrets=secrets,
        api_key=os.getenv("API_KEY", "").strip(),
        server_mode=_parse_bool(os.getenv("SERVER_MODE", ""), True),
        port=int(os.getenv("PORT", "8000")),
        host=os.getenv("HOST", "0.0.0.0"),
        upstream_base_url=os.getenv("UPSTREAM_BASE_URL", "https://chat.qwen.ai"),
        vision_fallback_model=os.getenv("VISION_FALLBACK_MODEL", "qwen3-vl-plus"),
        default_model=os.getenv("DEFAULT_MODEL", "qwen-max"),
        max_retries=int(os.getenv("MAX_RETRIES", "2")),
        request_timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "60")),
        keepalive_interval_seconds=float(
            os.getenv("KEEPALIVE_INTERVAL_SECONDS", "15")
        ),
        auto_refresh_token=_parse_bool(os.getenv("AUTO_REFRESH_TOKEN", ""), True),
        token_refresh_interval_hours=float(
            os.getenv("TOKEN_REFRESH_INTERVAL_HOURS", "24")
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
