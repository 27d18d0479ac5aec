"""In-memory notification delivery."""

import asyncio
from collections import defaultdict
from typing import Any, Dict, List

from loguru import logger

from clinical_platform.core.datamodels import Notification
from clinical_platform.services.base import NotificationListener, NotificationService


class InMemoryNotificationService(NotificationService):
    """Keeps an inbox per recipient and pushes new notifications to listeners.

    Listeners may be plain callables or coroutine functions. A failing
    listener is logged and does not affect delivery to the inbox or to other
    listeners.
    """

    def __init__(self):
        self._inbox: Dict[str, List[Notification]] = defaultdict(list)
        self._listeners: Dict[str, List[NotificationListener]] = defaultdict(list)

    async def send(self, notification: Notification) -> None:
        self._inbox[notification.recipient].append(notification)
        logger.info(f"Notification '{notification.subject}' sent to {notification.recipient}")

        for listener in list(self._listeners.get(notification.recipient, [])):
            try:
                outcome = listener(notification)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Notification listener for {notification.recipient} failed: {e}")

    async def subscribe(self, recipient: str, listener: NotificationListener) -> None:
        self._listeners[recipient].append(listener)

    async def get_notifications(self, recipient: str, unread_only: bool = False) -> List[Notification]:
        notifications = self._inbox.get(recipient, [])
        if unread_only:
            return [n for n in notifications if not n.read]
        return list(notifications)

    async def mark_as_read(self, recipient: str, notification_id: str) -> bool:
        for notification in self._inbox.get(recipient, []):
            if notification.id == notification_id:
                notification.read = True
                return True
        return False

    async def shutdown(self) -> None:
        self._listeners.clear()

    async def health_check(self) -> Dict[str, Any]:
        pending = sum(1 for inbox in self._inbox.values() for n in inbox if not n.read)
        return {"healthy": True, "unread": pending}
