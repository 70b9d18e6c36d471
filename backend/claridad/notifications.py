import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

@dataclass
class PushNotification:
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    priority: str = "normal"

class NotificationDispatcher(Protocol):
    """Delivers pushes to devices. Token handling lives behind this boundary."""

    def send(self, user_ids: list[int], notification: PushNotification) -> None: ...

class LoggingDispatcher:
    def send(self, user_ids: list[int], notification: PushNotification) -> None:
        logger.info("push %r to %d users: %s", notification.title, len(user_ids), notification.data)
