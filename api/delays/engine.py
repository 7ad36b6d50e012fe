from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from tortoise.backends.base.client import BaseDBAsyncClient
from tortoise.transactions import in_transaction

from api.executions import services as execution_services
from api.notifications.sender import NotificationSender, dispatch_notifications
from shared.database.flow_models import DelayTask
from shared.logger import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DelayAdvanceError(Exception):
    """A claimed delay task whose execution could not be advanced."""


@dataclass
class TickResult:
    claimed: int = 0
    advanced: int = 0
    failed: int = 0
    task_ids: List[int] = field(default_factory=list)


class DelayTaskEngine:
    """Claims due delay tasks and resumes the executions parked on them."""

    def __init__(
        self,
        *,
        max_batch_size: int = 50,
        notification_sender: Optional[NotificationSender] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        self.max_batch_size = max_batch_size
        self.notification_sender = notification_sender
        self.worker_id = worker_id or f"delay-poller-{uuid4().hex[:8]}"

    async def tick(self, *, now: Optional[datetime] = None) -> TickResult:
        now = now or _utcnow()
        result = TickResult()
        for task_id in await self._due_task_ids(now=now):
            try:
                claimed = await self._claim_and_advance(task_id, now=now)
            except DelayAdvanceError as exc:
                cause = exc.__cause__
                logger.exception(
                    "Failed to advance execution after delay",
                    extra={"delay_task_id": task_id, "worker_id": self.worker_id},
                )
                await self._mark_failed(task_id, now=now, reason=f"{type(cause).__name__}: {cause}")
                result.claimed += 1
                result.failed += 1
                result.task_ids.append(task_id)
                continue
            except Exception:
                # Nothing was claimed; the task stays due for the next tick.
                logger.exception(
                    "Failed to claim delay task",
                    extra={"delay_task_id": task_id, "worker_id": self.worker_id},
                )
                continue

            if claimed is None:
                continue
            result.claimed += 1
            result.task_ids.append(task_id)
            if claimed:
                result.advanced += 1
        return result

    async def _due_task_ids(self, *, now: datetime) -> List[int]:
        return await (
            DelayTask.filter(processed=False, trigger_at__lte=now)
            .order_by("trigger_at", "id")
            .limit(self.max_batch_size)
            .values_list("id", flat=True)
        )

    async def _claim_and_advance(self, task_id: int, *, now: datetime) -> Optional[bool]:
        """
        Returns None when another worker won the claim, otherwise whether the
        execution actually moved.
        """

        async with in_transaction() as conn:
            if not await self._claim(task_id, now=now, using_db=conn):
                logger.debug(
                    "Delay task already claimed",
                    extra={"delay_task_id": task_id, "worker_id": self.worker_id},
                )
                return None

            try:
                task = await DelayTask.filter(id=task_id).using_db(conn).first()
                transition = await execution_services.advance_after_delay(
                    task.execution_id,
                    using_db=conn,
                    now=now,
                )
            except Exception as exc:
                raise DelayAdvanceError(f"Delay task {task_id} could not be advanced") from exc

        if not transition.changed:
            logger.info(
                "Delay task claimed but execution was not waiting",
                extra={"delay_task_id": task_id, "execution_id": task.execution_id},
            )
            return False

        logger.info(
            "Execution resumed after delay",
            extra={
                "delay_task_id": task_id,
                "execution_id": task.execution_id,
                "current_node": transition.execution.current_node,
            },
        )
        await dispatch_notifications(transition.notifications, self.notification_sender)
        return True

    async def _claim(self, task_id: int, *, now: datetime, using_db: BaseDBAsyncClient) -> bool:
        won = await DelayTask.filter(id=task_id, processed=False).using_db(using_db).update(
            processed=True,
            processed_at=now,
            processing_instance_id=self.worker_id,
        )
        return bool(won)

    async def _mark_failed(self, task_id: int, *, now: datetime, reason: str) -> None:
        # The claim rolled back with the failed advance; consume the task so it is not retried.
        await DelayTask.filter(id=task_id, processed=False).update(
            processed=True,
            processed_at=now,
            processing_instance_id=self.worker_id,
            error=reason[:2000],
        )


__all__ = ["DelayAdvanceError", "DelayTaskEngine", "TickResult"]
