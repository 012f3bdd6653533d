"""Cancellable one-shot timer that re-arms the poll loop of one PDU."""

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class RefreshTimer:
    """Holds at most one pending timer.

    arm() always cancels the pending timer before scheduling a new one, so
    a device never has two live timers. Cancelling only drops the pending
    callback; it never touches a cycle that is already running.
    """

    def __init__(self, callback: Callable[[], None], name: str = ""):
        self._callback = callback
        self._name = name
        self._handle: asyncio.TimerHandle | None = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, delay: float):
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire)
        logger.debug("[%s] Timer armed for %.1fs", self._name, delay)

    def cancel(self) -> bool:
        """Cancel the pending timer. Returns True if one was pending."""
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        return True

    def _fire(self):
        self._handle = None
        self._callback()
