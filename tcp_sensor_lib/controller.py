"""High-level controller for the TCP sensor with session management."""

import logging
import threading
from dataclasses import dataclass
from functools import partial
from typing import Optional

from tcp_sensor_lib import protocol
from tcp_sensor_lib.events import EventSink, GatedSink, SafeSink
from tcp_sensor_lib.handshake import HandshakeSupervisor
from tcp_sensor_lib.models import ConnectionState, SensorReading, SessionConfig
from tcp_sensor_lib.poller import PollingController
from tcp_sensor_lib.session import TransportFactory, TransportSession
from tcp_sensor_lib.timers import Scheduler, TimerScheduler
from tcp_sensor_lib.transport import StreamLike

logger = logging.getLogger(__name__)


@dataclass
class _SessionParts:
    """Everything built for one connect() call."""

    session: TransportSession
    supervisor: HandshakeSupervisor
    poller: PollingController
    sink: EventSink
    connect_thread: Optional[threading.Thread] = None


class SensorController:
    """High-level controller orchestrating one sensor session at a time.

    Commands (connect, disconnect, start/stop polling) return immediately;
    outcomes arrive on the EventSink from engine threads. After the device
    sends its handshake token, polling starts on its own once the settling
    delay has passed.
    """

    def __init__(
        self,
        sink: Optional[EventSink] = None,
        config: Optional[SessionConfig] = None,
        scheduler: Optional[Scheduler] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        """Initialize controller.

        Args:
            sink: Receives every event. Exceptions it raises are logged.
            config: Endpoint and timing. Defaults to SessionConfig().
            scheduler: Timer facility for the handshake supervisor.
                      Defaults to TimerScheduler.
            transport_factory: Opens transports; defaults to Transport.open.
        """
        self._sink = SafeSink(sink or EventSink())
        self._config = config or SessionConfig()
        self._scheduler = scheduler or TimerScheduler()
        self._transport_factory = transport_factory

        self._lock = threading.Lock()
        self._parts: Optional[_SessionParts] = None

    # ========================================================================
    # Connection Management
    # ========================================================================

    def connect(self, stream: Optional[StreamLike] = None) -> None:
        """Start connecting to the sensor. Returns immediately.

        Success is reported as connection_status_changed(True), failure as
        on_error followed by connection_status_changed(False).

        Args:
            stream: Pre-connected stream (for testing). If None, a TCP
                   connection to config.host:config.port is opened.
        """
        with self._lock:
            if self.has_live_session():
                logger.warning("connect() called while a session is live")
                self._sink.on_error("Already connected, disconnect first")
                return

            parts = self._build_session()
            self._parts = parts

            parts.connect_thread = threading.Thread(
                target=parts.session.open,
                args=(stream,),
                name="SensorConnect",
                daemon=True,
            )
            parts.connect_thread.start()

        logger.info(f"Connecting to sensor at {self._config.host}:{self._config.port}...")

    def disconnect(self) -> None:
        """Stop polling and tear the session down. Safe from any state."""
        with self._lock:
            parts = self._parts

        if parts is None:
            return

        parts.poller.stop()
        if parts.session.close():
            logger.info("Disconnected")
        parts.poller.join()

    def wait_closed(self, timeout: float = protocol.THREAD_JOIN_TIMEOUT) -> None:
        """Join the connect, receive, and polling threads of the current session."""
        with self._lock:
            parts = self._parts

        if parts is None:
            return

        if parts.connect_thread is not None and parts.connect_thread is not threading.current_thread():
            parts.connect_thread.join(timeout=timeout)
        parts.session.join(timeout=timeout)
        parts.poller.join(timeout=timeout)

    # ========================================================================
    # Polling
    # ========================================================================

    def start_polling(self) -> bool:
        """Start sending request frames now, without waiting for the settling delay.

        Returns:
            True if polling started. Reports an error event when not connected.
        """
        with self._lock:
            parts = self._parts

        if parts is None:
            logger.warning("Cannot start polling: never connected")
            self._sink.on_error("Not connected to device, cannot start polling")
            return False

        if not parts.poller.start():
            return False

        # Before the settling delay has run out the timer moves the state instead
        if parts.supervisor.settled:
            self._enter_polling(parts)
        return True

    def stop_polling(self) -> bool:
        """Stop polling. Silent no-op when not polling."""
        with self._lock:
            parts = self._parts

        if parts is None:
            return False
        return parts.poller.stop()

    # ========================================================================
    # State
    # ========================================================================

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        parts = self._parts
        if parts is None:
            return ConnectionState.DISCONNECTED
        return parts.session.state.get()

    def is_connected(self) -> bool:
        """Check if the stream is open (handshake not required)."""
        parts = self._parts
        return parts is not None and parts.session.is_open

    def is_polling(self) -> bool:
        parts = self._parts
        return parts is not None and parts.poller.is_active

    def has_live_session(self) -> bool:
        """True from connect() until that session's teardown has finished."""
        parts = self._parts
        return parts is not None and not parts.session.finished

    # ========================================================================
    # Internal: session wiring
    # ========================================================================

    def _build_session(self) -> _SessionParts:
        """Fresh session, decoder, supervisor, and poller for one connect()."""
        # Callbacks close over `parts`, which is bound before any of them can run.
        # Everything a session emits goes through its gate, so a session that
        # has been replaced by a newer connect() can no longer reach the sink.
        sink = GatedSink(self._sink, lambda: parts is self._parts)
        session = TransportSession(
            self._config,
            on_open=lambda: self._session_opened(parts),
            on_handshake=lambda: self._handshake_received(parts),
            on_reading=lambda reading: self._reading_received(parts, reading),
            on_error=sink.on_error,
            on_closing=lambda: self._session_closing(parts),
            on_closed=partial(sink.on_connection_status_changed, False),
            transport_factory=self._transport_factory,
        )
        supervisor = HandshakeSupervisor(
            session.state,
            self._scheduler,
            on_timeout=lambda: self._handshake_timed_out(parts),
            on_ready=lambda: self._handshake_settled(parts),
            handshake_timeout_s=self._config.handshake_timeout_s,
            poll_delay_s=self._config.poll_delay_s,
        )
        poller = PollingController(
            session,
            session.state,
            sink,
            interval_s=self._config.poll_interval_s,
            request=self._config.request_frame,
        )

        parts = _SessionParts(session=session, supervisor=supervisor, poller=poller, sink=sink)
        return parts

    def _session_opened(self, parts: _SessionParts) -> None:
        parts.sink.on_connection_status_changed(True)
        parts.supervisor.arm()

    def _handshake_received(self, parts: _SessionParts) -> None:
        if not parts.supervisor.confirm():
            logger.debug("Handshake token ignored (already confirmed or timed out)")

    def _reading_received(self, parts: _SessionParts, reading: SensorReading) -> None:
        logger.debug(f"Reading: {reading.as_list()}")
        parts.sink.on_reading(reading)

    def _session_closing(self, parts: _SessionParts) -> None:
        parts.poller.stop()
        parts.supervisor.cancel()

    def _handshake_timed_out(self, parts: _SessionParts) -> None:
        parts.sink.on_connection_timeout()
        parts.session.close()

    def _handshake_settled(self, parts: _SessionParts) -> None:
        if not parts.poller.is_active:
            logger.info("Settling delay elapsed, starting polling")
            # Teardown may be racing this timer; a closed session is not an error
            parts.poller.start(report_errors=False)

        self._enter_polling(parts)

    @staticmethod
    def _enter_polling(parts: _SessionParts) -> None:
        """HANDSHAKED -> POLLING, only while the poller runs."""
        if parts.poller.is_active:
            parts.session.state.compare_and_set(ConnectionState.HANDSHAKED, ConnectionState.POLLING)
