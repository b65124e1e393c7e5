"""
Cancellable delayed callbacks.

Pending decisions own a ScheduledTask instead of a bare timer id, so
cancelling on resolution and clearing everything on shutdown go through one
handle type. The default scheduler runs callbacks on daemon threads.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable

from .errors import TimerError

logger = logging.getLogger(__name__)


class ScheduledTask(ABC):
    """Handle to a callback scheduled for later."""

    @abstractmethod
    def cancel(self) -> bool:
        """Cancel the callback. Returns True if it had not run yet."""
        pass

    @property
    @abstractmethod
    def cancelled(self) -> bool:
        pass


class Scheduler(ABC):
    """Creates ScheduledTasks."""

    @abstractmethod
    def call_later(self, delay_seconds: float, callback: Callable[..., Any], *args: Any) -> ScheduledTask:
        """
        Run callback(*args) after delay_seconds.

        Raises:
            TimerError: if the callback cannot be armed
        """
        pass


class _ThreadTimerTask(ScheduledTask):
    def __init__(self, timer: threading.Timer):
        self._timer = timer
        self._cancelled = False

    def cancel(self) -> bool:
        if self._cancelled or self._timer.finished.is_set():
            return False
        self._timer.cancel()
        self._cancelled = True
        return True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ThreadingScheduler(Scheduler):
    """Scheduler backed by daemon threading.Timer instances."""

    def call_later(self, delay_seconds: float, callback: Callable[..., Any], *args: Any) -> ScheduledTask:
        def _run() -> None:
            try:
                callback(*args)
            except Exception as e:
                # A timer thread has no caller to report to
                logger.error(f"Scheduled callback failed: {e}", exc_info=True)

        try:
            timer = threading.Timer(max(0.0, delay_seconds), _run)
            timer.daemon = True
            timer.start()
        except RuntimeError as e:
            raise TimerError(f"could not start timer: {e}") from e

        return _ThreadTimerTask(timer)
