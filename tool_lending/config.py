from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()

DEFAULT_CORS_ORIGINS = "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173"
NOTIFICATION_BACKENDS = {"smtp", "log"}


def _require_env(name: str) -> str:
    value = (os.environ.get(name) or "").strip()
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def _parse_int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    database_url: str
    create_schema: bool
    token_secret: str
    token_ttl_seconds: int
    reset_code_ttl_minutes: int
    notification_backend: str
    email_host: str
    email_port: int
    email_user: str
    email_password: str
    email_from: str
    cors_allow_origins: list[str]
    cors_allow_credentials: bool
    log_level: str


def load_settings() -> Settings:
    token_secret = _require_env("TOKEN_SIGNING_SECRET")
    if len(token_secret) < 32:
        raise RuntimeError("TOKEN_SIGNING_SECRET must be at least 32 characters long.")

    backend = (os.environ.get("NOTIFICATION_BACKEND") or "log").strip().lower()
    if backend not in NOTIFICATION_BACKENDS:
        raise RuntimeError(f"NOTIFICATION_BACKEND must be one of {sorted(NOTIFICATION_BACKENDS)}")

    origins = _parse_csv_env("CORS_ALLOW_ORIGINS", DEFAULT_CORS_ORIGINS)
    allow_credentials = _parse_bool_env("CORS_ALLOW_CREDENTIALS", "true")
    if "*" in origins:
        # Browsers reject wildcard origins with credentials.
        allow_credentials = False

    return Settings(
        database_url=_require_env("TOOL_LENDING_DB_URL"),
        create_schema=_parse_bool_env("TOOL_LENDING_CREATE_SCHEMA", "true"),
        token_secret=token_secret,
        token_ttl_seconds=_parse_int_env("TOKEN_TTL_SECONDS", 60 * 60 * 12),
        reset_code_ttl_minutes=_parse_int_env("RESET_CODE_TTL_MINUTES", 15),
        notification_backend=backend,
        email_host=(os.environ.get("EMAIL_HOST") or "").strip(),
        email_port=_parse_int_env("EMAIL_PORT", 587),
        email_user=(os.environ.get("EMAIL_USER") or "").strip(),
        email_password=os.environ.get("EMAIL_PASSWORD") or "",
        email_from=(os.environ.get("EMAIL_FROM") or "").strip(),
        cors_allow_origins=origins,
        cors_allow_credentials=allow_credentials,
        log_level=(os.environ.get("LOG_LEVEL") or "INFO").strip().upper(),
    )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
