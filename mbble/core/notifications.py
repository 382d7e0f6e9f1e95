"""Characteristic subscriptions shared by inspection and watchers."""

from __future__ import annotations

import logging
from collections.abc import Callable

from mbble.core.events import EventEmitter
from mbble.transports.base import GattSession

LOGGER = logging.getLogger(__name__)


class NotificationHub:
    """Owns every start_notify/stop_notify issued on one session.

    Each subscribed characteristic emits its key as an event and, when given,
    forwards the value to a single callback. A characteristic never has more
    than one callback attached.
    """

    def __init__(self, session: GattSession, events: EventEmitter) -> None:
        self._session = session
        self._events = events
        self._subscribed: dict[str, str] = {}

    def is_subscribed(self, char_uuid: str) -> bool:
        return char_uuid in self._subscribed

    @property
    def subscribed(self) -> dict[str, str]:
        return dict(self._subscribed)

    async def subscribe(
        self,
        char_uuid: str,
        event: str,
        callback: Callable[[bytes], None] | None = None,
    ) -> None:
        def _handler(data: bytes) -> None:
            self._events.emit(event, data)
            if callback is None:
                return
            try:
                callback(data)
            except Exception:
                LOGGER.exception("Notification callback for %s failed", event)

        await self._session.start_notify(char_uuid, _handler)
        self._subscribed[char_uuid] = event
        LOGGER.debug("Subscribed to %s (%s)", event, char_uuid)

    async def unsubscribe(self, char_uuid: str) -> None:
        event = self._subscribed.pop(char_uuid, None)
        if event is None:
            return
        await self._session.stop_notify(char_uuid)
        LOGGER.debug("Unsubscribed from %s (%s)", event, char_uuid)

    def clear(self) -> None:
        """Forget all subscriptions without touching the link."""
        self._subscribed.clear()
