"""Cancellable one-shot timers for handshake supervision."""

import logging
import threading
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    """Handle returned by every call_later(); cancel() is idempotent."""

    def cancel(self) -> None:
        ...

    @property
    def cancelled(self) -> bool:
        ...


class Scheduler(Protocol):
    """Something that runs a callable once after a delay."""

    def call_later(
        self, delay_s: float, fn: Callable[[], None], name: Optional[str] = None
    ) -> TimerHandle:
        ...


class ThreadTimerHandle:
    """TimerHandle backed by a daemon threading.Timer."""

    def __init__(self, timer: threading.Timer) -> None:
        self._timer = timer
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        self._timer.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class TimerScheduler:
    """Runs each callback on its own daemon timer thread.

    Callbacks fire off the receive and polling threads, so they must check
    session state before acting. Exceptions in callbacks are logged.
    """

    def call_later(
        self, delay_s: float, fn: Callable[[], None], name: Optional[str] = None
    ) -> ThreadTimerHandle:
        """Schedule fn to run once after delay_s seconds.

        Args:
            delay_s: Delay in seconds
            fn: Zero-argument callable
            name: Thread name, for logs

        Returns:
            Handle whose cancel() prevents fn from running if it has not started
        """
        label = name or getattr(fn, "__name__", "timer")

        def _run() -> None:
            try:
                fn()
            except Exception as e:
                logger.error(f"Timer callback {label} failed: {e}", exc_info=True)

        timer = threading.Timer(delay_s, _run)
        timer.name = label
        timer.daemon = True
        timer.start()
        logger.debug(f"Armed timer {label} for {delay_s:.2f}s")
        return ThreadTimerHandle(timer)
