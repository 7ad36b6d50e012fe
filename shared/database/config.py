from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Ensure environment variables from .env are available when running locally.
try:
    load_dotenv()
except PermissionError:
    logger.warning(
        "Could not read .env file due to insufficient permissions. "
        "Continuing with existing environment variables.",
    )

MODEL_MODULES = ["shared.database.flow_models"]


def _get_bool(name: str, default: str = "false") -> bool:
    """Read boolean-ish environment variables safely."""
    value = os.getenv(name, default)
    return value.lower() in {"1", "true", "yes", "on"}


def _parse_postgres_credentials(url: str) -> Dict[str, Any]:
    """Convert a postgres-style DSN into asyncpg credential kwargs."""
    parsed = urlparse(url)
    database = (parsed.path or "").lstrip("/") or "postgres"
    schema = os.getenv("DB_SCHEMA", "public")

    credentials: Dict[str, Any] = {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username,
        "password": parsed.password,
        "database": database,
        "minsize": DB_MIN_CONNECTIONS,
        "maxsize": DB_MAX_CONNECTIONS,
    }

    # asyncpg doesn't support a "schema" parameter directly
    if schema != "public":
        credentials["server_settings"] = {"search_path": schema}

    return credentials


def build_connection(url: Optional[str]) -> Dict[str, Any] | str:
    """Return a Tortoise connection entry for ``url``."""
    if not url:
        raise ValueError("DATABASE_URL is not set")
    scheme = urlparse(url).scheme
    if scheme in {"postgres", "postgresql"}:
        return {
            "engine": "tortoise.backends.asyncpg",
            "credentials": _parse_postgres_credentials(url),
        }
    if scheme == "sqlite":
        return url
    raise ValueError("DATABASE_URL must use postgres://, postgresql:// or sqlite:// scheme")


def build_tortoise_config(url: Optional[str]) -> Dict[str, Any]:
    return {
        "connections": {"default": build_connection(url)},
        "apps": {
            "models": {
                "models": MODEL_MODULES,
                "default_connection": "default",
            },
        },
        "use_tz": True,
        "timezone": "UTC",
    }


DATABASE_URL = os.getenv("DATABASE_URL")
DB_MAX_CONNECTIONS = int(os.getenv("DB_MAX_CONNECTIONS", "10"))
DB_MIN_CONNECTIONS = int(os.getenv("DB_MIN_CONNECTIONS", "1"))
DB_GENERATE_SCHEMAS = _get_bool("DB_GENERATE_SCHEMAS", "false")


__all__ = [
    "DATABASE_URL",
    "DB_GENERATE_SCHEMAS",
    "DB_MAX_CONNECTIONS",
    "DB_MIN_CONNECTIONS",
    "MODEL_MODULES",
    "build_tortoise_config",
]
