"""Handshake timeout supervision layered on session events.

After the socket opens the device must send "connected" within the
handshake timeout (T1). Once it does, polling may begin only after a
further settling delay (T2). A missing handshake ends the session.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Optional

from tcp_sensor_lib import protocol
from tcp_sensor_lib.models import ConnectionState, StateCell
from tcp_sensor_lib.timers import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


class HandshakePhase(Enum):
    """Supervisor progress for one session."""

    IDLE = "idle"
    WAITING = "waiting"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class HandshakeSupervisor:
    """Arms T1 on connect, T2 on handshake, and cancels both on teardown.

    Exactly one of confirm() and the T1 expiry wins; the phase transition
    that decides it happens under a lock.
    """

    def __init__(
        self,
        state: StateCell,
        scheduler: Scheduler,
        on_timeout: Callable[[], None],
        on_ready: Callable[[], None],
        handshake_timeout_s: float = protocol.HANDSHAKE_TIMEOUT,
        poll_delay_s: float = protocol.DELAY_BEFORE_POLLING,
    ) -> None:
        """Initialize supervisor.

        Args:
            state: The session's state cell
            scheduler: Timer facility (TimerScheduler, or a manual one in tests)
            on_timeout: Called once if T1 expires before the handshake
            on_ready: Called once when T2 expires with the session still open
            handshake_timeout_s: T1 in seconds
            poll_delay_s: T2 in seconds
        """
        self._state = state
        self._scheduler = scheduler
        self._on_timeout = on_timeout
        self._on_ready = on_ready
        self._handshake_timeout_s = handshake_timeout_s
        self._poll_delay_s = poll_delay_s

        self._lock = threading.Lock()
        self._phase = HandshakePhase.IDLE
        self._settled = False
        self._handshake_timer: Optional[TimerHandle] = None
        self._poll_delay_timer: Optional[TimerHandle] = None

    @property
    def phase(self) -> HandshakePhase:
        with self._lock:
            return self._phase

    @property
    def settled(self) -> bool:
        """True once the settling delay has run out on a confirmed handshake."""
        with self._lock:
            return self._settled

    def arm(self) -> None:
        """Start waiting for the handshake token (CONNECTED -> HANDSHAKING)."""
        with self._lock:
            if self._phase != HandshakePhase.IDLE:
                return
            self._phase = HandshakePhase.WAITING
            self._state.compare_and_set(ConnectionState.CONNECTED, ConnectionState.HANDSHAKING)
            self._handshake_timer = self._scheduler.call_later(
                self._handshake_timeout_s, self._handshake_expired, name="HandshakeTimeout"
            )
        logger.debug(f"Waiting up to {self._handshake_timeout_s}s for handshake")

    def confirm(self) -> bool:
        """Record the handshake token.

        Returns:
            True if this call confirmed the handshake, False if it was already
            confirmed, timed out, or cancelled
        """
        with self._lock:
            if self._phase != HandshakePhase.WAITING:
                return False
            self._phase = HandshakePhase.CONFIRMED
            if self._handshake_timer is not None:
                self._handshake_timer.cancel()
            self._state.compare_and_set(ConnectionState.HANDSHAKING, ConnectionState.HANDSHAKED)
            self._poll_delay_timer = self._scheduler.call_later(
                self._poll_delay_s, self._poll_delay_elapsed, name="PollDelay"
            )

        logger.info(f"Handshake confirmed, polling starts in {self._poll_delay_s}s")
        return True

    def cancel(self) -> None:
        """Cancel every pending timer. Safe to call repeatedly."""
        with self._lock:
            if self._phase in (HandshakePhase.IDLE, HandshakePhase.WAITING, HandshakePhase.CONFIRMED):
                self._phase = HandshakePhase.CANCELLED
            timers = (self._handshake_timer, self._poll_delay_timer)

        for timer in timers:
            if timer is not None:
                timer.cancel()

    def _handshake_expired(self) -> None:
        with self._lock:
            if self._phase != HandshakePhase.WAITING:
                return
            self._phase = HandshakePhase.TIMED_OUT

        logger.warning(
            f"Connection timeout: no handshake token within {self._handshake_timeout_s}s"
        )
        self._on_timeout()

    def _poll_delay_elapsed(self) -> None:
        with self._lock:
            if self._phase != HandshakePhase.CONFIRMED:
                return
            self._settled = True

        if not self._state.is_open():
            logger.debug("Poll delay elapsed after session closed, ignoring")
            return

        self._on_ready()
