"""Periodic request driver for an open session."""

import logging
import threading
from typing import TYPE_CHECKING, Optional

from tcp_sensor_lib import protocol
from tcp_sensor_lib.errors import NotConnectedError, SensorIOError
from tcp_sensor_lib.events import EventSink
from tcp_sensor_lib.models import AtomicFlag, ConnectionState, StateCell

if TYPE_CHECKING:
    from tcp_sensor_lib.session import TransportSession

logger = logging.getLogger(__name__)


class PollingController:
    """Sends the request frame every interval while active.

    The active flag is the only state shared with callers of stop() and
    is_active; it changes only through compare-and-set so exactly one
    polling-status event is emitted per real transition. start() and stop()
    are serialized so a teardown racing a start sees either a completed
    start (True then False) or none at all.

    The POLLING state is not entered here; whoever owns the settling delay
    advances HANDSHAKED -> POLLING once it has elapsed.
    """

    def __init__(
        self,
        session: "TransportSession",
        state: StateCell,
        sink: EventSink,
        interval_s: float = protocol.POLLING_INTERVAL,
        request: bytes = protocol.REQUEST_ALL_FRAME,
    ) -> None:
        """Initialize poller.

        Args:
            session: Session whose send() is used for every request
            state: The session's state cell
            sink: Receives polling-status and precondition errors
            interval_s: Seconds between request frames (> 0)
            request: Frame sent on every cycle
        """
        if interval_s <= 0:
            raise ValueError(f"interval_s must be > 0, got {interval_s}")

        self._session = session
        self._state = state
        self._sink = sink
        self._interval_s = interval_s
        self._request = request

        self._active = AtomicFlag(False)
        self._transition_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_active(self) -> bool:
        return self._active.get()

    def start(self, report_errors: bool = True) -> bool:
        """Begin polling.

        Args:
            report_errors: Emit an error event when the session is not open.
                          Automatic starts pass False and just give up.

        Returns:
            True if polling started, False if already active or not connected
        """
        with self._transition_lock:
            if not self._session.is_open:
                if report_errors:
                    logger.warning("Cannot start polling: not connected")
                    self._sink.on_error("Not connected to device, cannot start polling")
                else:
                    logger.debug("Session closed, not starting polling")
                return False

            if not self._active.compare_and_set(False, True):
                logger.debug("Polling already active")
                return False

            self._stop_event = threading.Event()
            self._sink.on_polling_status_changed(True)

            self._thread = threading.Thread(
                target=self._poll_loop,
                args=(self._stop_event,),
                name="SensorPoller",
                daemon=True,
            )
            self._thread.start()

        logger.info(f"Polling started every {self._interval_s}s")
        return True

    def stop(self) -> bool:
        """Stop polling. Only the call that actually stops it emits an event.

        Returns:
            True if this call stopped polling
        """
        with self._transition_lock:
            if not self._active.compare_and_set(True, False):
                return False

            self._stop_event.set()
            self._state.compare_and_set(ConnectionState.POLLING, ConnectionState.HANDSHAKED)
            self._sink.on_polling_status_changed(False)

        logger.info("Polling stopped")
        return True

    def join(self, timeout: float = protocol.THREAD_JOIN_TIMEOUT) -> None:
        """Wait for the polling thread to exit (no-op from the thread itself)."""
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return

        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("Polling thread did not stop cleanly")

    def _poll_loop(self, stop_event: threading.Event) -> None:
        """Background loop: send, then wait out the interval unless stopped."""
        logger.debug(f"Poll loop started (thread {threading.get_ident()})")

        while self._active.get() and self._session.is_open:
            try:
                logger.debug("Sending poll request")
                self._session.send(self._request)
            except NotConnectedError:
                # Closed between the loop check and the send
                break
            except SensorIOError as e:
                # Session already reported the error and is tearing down
                logger.error(f"Polling send failed: {e}")
                self.stop()
                break

            if stop_event.wait(timeout=self._interval_s):
                break

        if not self._session.is_open:
            # Session went away under us; make sure the flag and event follow
            self.stop()

        logger.debug("Poll loop exited")
