from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from tortoise import Tortoise

from shared.logger import get_logger
from shared.database.config import DATABASE_URL, DB_GENERATE_SCHEMAS, build_tortoise_config

logger = get_logger("shared.database")


async def init_db(url: Optional[str] = None) -> None:
    """Initialize Tortoise ORM with the configured settings."""

    try:
        tortoise_config = build_tortoise_config(url or DATABASE_URL)
    except ValueError as exc:
        raise RuntimeError(f"Invalid DATABASE_URL: {exc}") from exc

    await Tortoise.init(config=tortoise_config)

    if DB_GENERATE_SCHEMAS:
        logger.warning(
            "DB_GENERATE_SCHEMAS is enabled – generating schemas at startup. "
            "Disable in production and manage the schema out of band.",
        )
        await Tortoise.generate_schemas()


async def close_db() -> None:
    """Close all ORM connections."""
    await Tortoise.close_connections()


@asynccontextmanager
async def db_lifespan(_: FastAPI) -> AsyncIterator[None]:
    """FastAPI lifespan handler for database management."""
    logger.info("Initializing database connections")
    await init_db()
    try:
        yield
    finally:
        logger.info("Closing database connections")
        await close_db()


__all__ = ["db_lifespan", "init_db", "close_db"]
