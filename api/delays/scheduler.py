from __future__ import annotations

import asyncio
from typing import Optional

from api.delays.engine import DelayTaskEngine
from api.notifications.sender import NotificationSender
from shared.logger import get_logger

logger = get_logger(__name__)


class DelayPollScheduler:
    """Background loop that periodically ticks the delay task engine."""

    def __init__(
        self,
        *,
        interval_seconds: int = 60,
        max_batch_size: int = 50,
        notification_sender: Optional[NotificationSender] = None,
    ) -> None:
        self.interval_seconds = interval_seconds
        self.engine = DelayTaskEngine(
            max_batch_size=max_batch_size,
            notification_sender=notification_sender,
        )
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Delay poll scheduler started", extra={"worker_id": self.engine.worker_id})

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Delay poll scheduler stopped", extra={"worker_id": self.engine.worker_id})

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                result = await self.engine.tick()
                if result.claimed:
                    logger.info(
                        "Delay poll tick processed tasks",
                        extra={"claimed": result.claimed, "advanced": result.advanced, "failed": result.failed},
                    )
            except Exception:
                logger.exception("Delay poll engine tick failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue


__all__ = ["DelayPollScheduler"]
