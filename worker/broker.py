from __future__ import annotations

import os
from typing import Optional

from taskiq.events import TaskiqEvents
from taskiq.state import TaskiqState
from taskiq_redis import RedisAsyncResultBackend, RedisStreamBroker

from shared.config import config
from shared.database import close_db, init_db
from shared.logger import get_logger

logger = get_logger(__name__)


def _resolve_redis_url() -> str:
    """Prefer config.redis_url but fall back to REDIS_URL or localhost."""
    configured: Optional[str] = getattr(config, "redis_url", None)
    if configured:
        return configured
    env_value = os.getenv("REDIS_URL")
    if env_value:
        return env_value
    return "redis://localhost:6379/0"


redis_url = _resolve_redis_url()
result_backend = RedisAsyncResultBackend(redis_url=redis_url)
broker = RedisStreamBroker(url=redis_url).with_result_backend(result_backend)

_delay_scheduler = None


@broker.on_event(TaskiqEvents.WORKER_STARTUP)
async def _on_worker_startup(_: TaskiqState) -> None:
    """Initialize the database and start the delay poller before processing tasks."""
    from api.delays.scheduler import DelayPollScheduler  # lazy import

    global _delay_scheduler

    logger.info("Initializing Taskiq worker")
    await init_db()

    if config.delay_poller_enabled:
        logger.info("Starting delay poll scheduler in worker")
        _delay_scheduler = DelayPollScheduler(
            interval_seconds=config.delay_poller_interval_seconds,
            max_batch_size=config.delay_poller_max_batch_size,
        )
        await _delay_scheduler.start()
    else:
        logger.info("Delay poller disabled via configuration")


@broker.on_event(TaskiqEvents.WORKER_SHUTDOWN)
async def _on_worker_shutdown(_: TaskiqState) -> None:
    """Clean up background services when worker exits."""
    global _delay_scheduler

    if _delay_scheduler:
        logger.info("Stopping delay poll scheduler")
        await _delay_scheduler.stop()
        _delay_scheduler = None

    await close_db()
    logger.info("Taskiq worker shutdown complete")


__all__ = ["broker"]
