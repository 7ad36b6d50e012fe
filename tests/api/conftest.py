from typing import Any, Dict, List, Tuple

import pytest
import pytest_asyncio
from tortoise import Tortoise

from api.notifications.sender import set_notification_sender
from shared.database.config import MODEL_MODULES
from shared.database.flow_models import FlowRecord


class RecordingNotificationSender:
    """Keeps every message instead of calling the webhook."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self.fail = False

    async def send(self, template: str, payload: Dict[str, Any]) -> None:
        self.sent.append((template, payload))
        if self.fail:
            raise RuntimeError("webhook unavailable")


@pytest_asyncio.fixture(autouse=True)
async def tortoise_db():
    await Tortoise.init(db_url="sqlite://:memory:", modules={"models": MODEL_MODULES}, use_tz=True)
    await Tortoise.generate_schemas()
    try:
        yield
    finally:
        await Tortoise.close_connections()


@pytest.fixture(autouse=True)
def notifications():
    sender = RecordingNotificationSender()
    set_notification_sender(sender)
    try:
        yield sender
    finally:
        set_notification_sender(None)


@pytest.fixture
def create_flow():
    async def _create(payload: Dict[str, Any]) -> FlowRecord:
        return await FlowRecord.create(
            id=payload["id"],
            name=payload["name"],
            definition=payload["definition"],
            is_active=payload.get("is_active", True),
        )

    return _create
