"""
Publish/subscribe channel for session lifecycle and output events.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Optional

from pydantic import BaseModel, Field

from .base import utc_now

logger = logging.getLogger(__name__)

SESSION_OUTPUT = "session_output"
COMMAND_START = "command_start"
COMMAND_COMPLETE = "command_complete"
COMMAND_ERROR = "command_error"
SESSION_CREATED = "session_created"
SESSION_DESTROYED = "session_destroyed"
SESSION_TIMEOUT = "session_timeout"
SESSION_UPDATED = "session_updated"

EventCallback = Callable[["SessionEvent"], Any]


class SessionEvent(BaseModel):
    """One event on the channel; ``session_id`` lets subscribers filter."""

    session_id: str
    type: str
    output_type: str | None = None
    data: str | None = None
    command: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    reason: str | None = None
    timestamp: str = Field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class EventBroadcaster:
    """
    Relays events to every live subscriber, at most once each.

    There is no replay buffer: a subscriber only sees events published after
    it subscribed.
    """

    def __init__(self, listener_queue_size: int = 1000):
        """
        Args:
            listener_queue_size: Capacity of each ``listen()`` queue
        """
        self._subscribers: list[EventCallback] = []
        self._listener_queue_size = listener_queue_size

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """
        Register a callback for every published event.

        Returns:
            A handle that removes the subscription; calling it twice is harmless
        """
        self._subscribers.append(callback)

        def unsubscribe():
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, event: SessionEvent):
        # Copy so callbacks may unsubscribe while we iterate
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(
                    f"Event subscriber failed on {event.type} for {event.session_id}: {e}",
                    exc_info=True,
                )

    def emit(self, session_id: str, event_type: str, **fields) -> SessionEvent:
        """Build and publish an event."""
        event = SessionEvent(session_id=session_id, type=event_type, **fields)
        self.publish(event)
        return event

    async def listen(
        self, session_id: Optional[str] = None
    ) -> AsyncIterator[SessionEvent]:
        """
        Iterate over events as they are published.

        Args:
            session_id: Only yield events for this session (default: all)
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._listener_queue_size)

        def enqueue(event: SessionEvent):
            if session_id is not None and event.session_id != session_id:
                return
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Listener queue full, dropping {event.type} for {event.session_id}"
                )

        unsubscribe = self.subscribe(enqueue)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
