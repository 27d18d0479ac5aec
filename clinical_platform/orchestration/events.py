"""In-process event bus.

Handlers subscribe to an event name (or ``*`` for every event) and are
invoked in subscription order. Handlers may be plain callables or coroutine
functions; a failing handler is logged and never stops the others.
"""

import asyncio
from collections import defaultdict
from typing import Any, Callable, Dict, List

from loguru import logger

from clinical_platform.core.datamodels import PlatformEvent


EventHandler = Callable[[PlatformEvent], Any]

WILDCARD = "*"


class EventBus:
    """Publish/subscribe hub for platform events."""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._handlers[event_name]
        if handler not in handlers:
            handlers.append(handler)
            logger.debug(f"Subscribed {getattr(handler, '__name__', handler)} to '{event_name}'")

    def unsubscribe(self, event_name: str, handler: EventHandler) -> bool:
        """Remove a handler.

        Returns:
            True if the handler was subscribed
        """
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def get_handlers(self, event_name: str) -> List[EventHandler]:
        return list(self._handlers.get(event_name, [])) + list(self._handlers.get(WILDCARD, []))

    async def publish(self, event: PlatformEvent) -> int:
        """Invoke every handler subscribed to the event's type.

        Returns:
            Number of handlers that completed without raising
        """
        delivered = 0
        for handler in self.get_handlers(event.type):
            try:
                outcome = handler(event)
                if asyncio.iscoroutine(outcome):
                    await outcome
                delivered += 1
            except Exception as e:
                logger.error(f"Event handler for '{event.type}' failed: {type(e).__name__}: {e}")
        return delivered

    def clear(self) -> None:
        self._handlers.clear()
