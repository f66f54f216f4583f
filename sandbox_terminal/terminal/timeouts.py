"""
Per-session idle timers.

Each session owns one handle on the event loop's scheduler. Rearming cancels
the previous handle, so at most one timer is pending per session.
"""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class SessionTimeoutManager:
    """Arms, rearms and cancels idle timers for sessions."""

    def __init__(
        self,
        idle_timeout_ms: int,
        on_expire: Callable[[str], None],
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        """
        Args:
            idle_timeout_ms: Idle window before a session expires
            on_expire: Called with the session id when its timer fires
            loop: Event loop to schedule on (default: the running loop)
        """
        self.idle_timeout_ms = idle_timeout_ms
        self._on_expire = on_expire
        self._loop = loop
        self._handles: dict[str, asyncio.TimerHandle] = {}

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def arm(self, session_id: str):
        """Start, or restart, the idle timer for a session."""
        self.cancel(session_id)
        self._handles[session_id] = self._get_loop().call_later(
            self.idle_timeout_ms / 1000, self._fire, session_id
        )

    # Rearming and arming are the same operation
    reset = arm

    def cancel(self, session_id: str) -> bool:
        handle = self._handles.pop(session_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self):
        for session_id in list(self._handles):
            self.cancel(session_id)

    def is_armed(self, session_id: str) -> bool:
        return session_id in self._handles

    @property
    def pending_count(self) -> int:
        return len(self._handles)

    def _fire(self, session_id: str):
        self._handles.pop(session_id, None)
        logger.info(f"Session idle timeout: {session_id}")
        try:
            self._on_expire(session_id)
        except Exception as e:
            logger.error(f"Idle timeout handler failed for {session_id}: {e}", exc_info=True)
