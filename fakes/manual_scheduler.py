"""Scheduler test double whose timers fire only when the test says so."""

import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class ManualTimer:
    """One scheduled callback. Fires at most once, never after cancel()."""

    def __init__(self, delay_s: float, fn: Callable[[], None], name: Optional[str]) -> None:
        self.delay_s = delay_s
        self.fn = fn
        self.name = name
        self.fired = False
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def pending(self) -> bool:
        return not self.fired and not self._cancelled


class ManualScheduler:
    """Records call_later() requests; tests fire them explicitly.

    Lets handshake timeouts and settling delays be exercised without
    sleeping. Callbacks run on the thread that calls fire().
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.timers: List[ManualTimer] = []

    def call_later(
        self, delay_s: float, fn: Callable[[], None], name: Optional[str] = None
    ) -> ManualTimer:
        timer = ManualTimer(delay_s, fn, name)
        with self._lock:
            self.timers.append(timer)
        logger.debug(f"ManualScheduler: scheduled {name} ({delay_s}s)")
        return timer

    def pending(self, name: Optional[str] = None) -> List[ManualTimer]:
        """Timers not yet fired or cancelled, optionally filtered by name."""
        with self._lock:
            return [t for t in self.timers if t.pending and (name is None or t.name == name)]

    def fire(self, name: Optional[str] = None) -> bool:
        """Run the oldest pending timer (with the given name).

        Returns:
            True if a timer fired, False if none was pending
        """
        pending = self.pending(name)
        if not pending:
            return False

        timer = pending[0]
        timer.fired = True
        timer.fn()
        return True

    def fire_all(self) -> int:
        """Fire pending timers until none are left. Returns the count fired."""
        count = 0
        while self.fire():
            count += 1
        return count
