from __future__ import annotations

from worker.broker import broker
from shared.config import config
from shared.logger import get_logger

logger = get_logger(__name__)


@broker.task
async def process_delay_tasks_once() -> dict:
    """Run a single DelayTaskEngine tick. Useful for ad-hoc runs and cron-style triggering."""
    from api.delays.engine import DelayTaskEngine  # local import

    engine = DelayTaskEngine(max_batch_size=config.delay_poller_max_batch_size)
    logger.info("Running ad-hoc delay task tick", extra={"worker_id": engine.worker_id})
    result = await engine.tick()
    return {"claimed": result.claimed, "advanced": result.advanced, "failed": result.failed}


__all__ = ["process_delay_tasks_once"]
