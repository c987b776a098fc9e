"""One TCP session: open stream, receive loop, writes, and teardown."""

import logging
import threading
from typing import Callable, List, Optional

from tcp_sensor_lib import protocol
from tcp_sensor_lib.errors import NotConnectedError, ReceiveError, SendError, SensorIOError
from tcp_sensor_lib.models import AtomicFlag, ConnectionState, SensorReading, SessionConfig, StateCell
from tcp_sensor_lib.parsing import DecodedEvent, FrameDecoder, HandshakeToken, ReadingFrame
from tcp_sensor_lib.transport import StreamLike, Transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str, int, float], Transport]


def _noop() -> None:
    pass


class TransportSession:
    """Owns the stream for exactly one connect/disconnect cycle.

    A session is never reused: every connect builds a new one, with its own
    state cell, decoder, and receive thread. close() is single-entry no
    matter how many threads race to call it.
    """

    def __init__(
        self,
        config: SessionConfig,
        on_open: Callable[[], None] = _noop,
        on_handshake: Callable[[], None] = _noop,
        on_reading: Callable[[SensorReading], None] = lambda reading: None,
        on_error: Callable[[str], None] = lambda message: None,
        on_closing: Callable[[], None] = _noop,
        on_closed: Callable[[], None] = _noop,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        """Initialize session.

        Args:
            config: Endpoint, timing, and buffer parameters
            on_open: Stream is open (state CONNECTED)
            on_handshake: Handshake token decoded (first time only)
            on_reading: Frame decoded, in stream order
            on_error: Session-invalidating failure, human-readable
            on_closing: Teardown started, before the stream is closed
            on_closed: Teardown finished (state DISCONNECTED), called once
            transport_factory: Opens a Transport from (host, port, timeout).
                              Defaults to Transport.open.
        """
        self._config = config
        self._on_open = on_open
        self._on_handshake = on_handshake
        self._on_reading = on_reading
        self._on_error = on_error
        self._on_closing = on_closing
        self._on_closed = on_closed
        self._transport_factory = transport_factory or Transport.open

        self._state = StateCell(ConnectionState.DISCONNECTED)
        self._decoder = FrameDecoder(max_pending_bytes=config.max_pending_bytes)
        self._transport: Optional[Transport] = None
        self._receiver: Optional[threading.Thread] = None

        # Held while opening and while grabbing the transport in close()
        self._lifecycle_lock = threading.RLock()
        self._write_lock = threading.Lock()

        self._closing = AtomicFlag(False)
        self._finished = threading.Event()

    # ========================================================================
    # State
    # ========================================================================

    @property
    def state(self) -> StateCell:
        return self._state

    @property
    def decoder(self) -> FrameDecoder:
        return self._decoder

    @property
    def is_open(self) -> bool:
        """True while the stream is usable and teardown has not started."""
        return not self._closing.get() and self._state.is_open()

    @property
    def finished(self) -> bool:
        """True once teardown has completed."""
        return self._finished.is_set()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def open(self, stream: Optional[StreamLike] = None) -> bool:
        """Open the stream and start the receive loop.

        Blocks for the duration of the TCP connect; the controller runs it on
        its own thread. Failures are reported through on_error followed by a
        normal teardown.

        Args:
            stream: Pre-connected stream (for testing). If None, the transport
                   factory connects to config.host:config.port.

        Returns:
            True if the session is open when this returns
        """
        host, port = self._config.host, self._config.port
        if not self._state.compare_and_set(ConnectionState.DISCONNECTED, ConnectionState.CONNECTING):
            raise RuntimeError("TransportSession objects are single-use")

        logger.info(f"Connecting to {host}:{port}...")
        try:
            if stream is not None:
                transport = Transport(stream, peer=f"{host}:{port}")
            else:
                transport = self._transport_factory(host, port, self._config.connect_timeout_s)
        except SensorIOError as e:
            logger.error(f"Connection error: {e}")
            if not self._closing.get():
                self._on_error(f"Connection failed: {e}")
            self.close()
            return False

        with self._lifecycle_lock:
            if self._closing.get():
                # disconnect() won the race while we were connecting
                logger.info("Session closed while connecting, dropping new connection")
                transport.close()
                self._state.set(ConnectionState.DISCONNECTED)
                return False

            self._transport = transport
            self._state.set(ConnectionState.CONNECTED)
            logger.info(f"Connected to {transport.peer}")
            self._on_open()

            if self._closing.get():
                return False

            self._receiver = threading.Thread(
                target=self._receive_loop,
                args=(transport,),
                name="SensorReceiver",
                daemon=True,
            )
            self._receiver.start()

        return True

    def send(self, data: bytes) -> None:
        """Write bytes to the device.

        A failed write is fatal for the session: the error is reported and
        the session torn down before SendError reaches the caller.

        Raises:
            NotConnectedError: If the session is not open
            SendError: If the write fails
        """
        with self._write_lock:
            transport = self._transport
            if transport is None or not self.is_open:
                raise NotConnectedError("Session is not open")
            try:
                transport.write_bytes(data)
                return
            except SendError as e:
                error = e

        if not self._closing.get():
            logger.error(f"Send error: {error}")
            self._on_error(f"Send failed: {error}")
        self.close()
        raise error

    def close(self) -> bool:
        """Tear the session down. Only the first call does anything.

        Order: on_closing (stop polling, cancel timers), close stream,
        state DISCONNECTED, on_closed. finished is set only after on_closed
        has returned. Close errors are logged, not raised.

        Returns:
            True if this call performed the teardown
        """
        if not self._closing.compare_and_set(False, True):
            return False

        logger.info("Closing session...")
        try:
            self._on_closing()
        finally:
            with self._lifecycle_lock:
                transport = self._transport

            if transport is not None:
                transport.close()

            self._state.set(ConnectionState.DISCONNECTED)
            logger.info("Session closed")
            try:
                self._on_closed()
            finally:
                self._finished.set()

        self.join()
        return True

    def join(self, timeout: float = protocol.THREAD_JOIN_TIMEOUT) -> None:
        """Wait for the receive thread (no-op from the thread itself)."""
        receiver = self._receiver
        if receiver is None or receiver is threading.current_thread():
            return

        receiver.join(timeout=timeout)
        if receiver.is_alive():
            logger.warning("Receive thread did not stop cleanly")

    # ========================================================================
    # Receive loop
    # ========================================================================

    def _receive_loop(self, transport: Transport) -> None:
        """Background loop: read, decode, dispatch; tear down on exit."""
        logger.info(f"Receive loop started (thread {threading.get_ident()})")
        try:
            while True:
                chunk = transport.read_chunk(self._config.read_size)
                if not chunk:
                    if not self._closing.get():
                        logger.warning("Device closed the connection")
                        self._on_error("Connection closed by device")
                    break
                self._dispatch(self._decoder.feed(chunk))

        except ReceiveError as e:
            if not self._closing.get():
                logger.error(f"Receive error: {e}")
                self._on_error(f"Receive error: {e}")

        except Exception as e:
            logger.error(f"Error in receive loop: {e}", exc_info=True)
            if not self._closing.get():
                self._on_error(f"Receive error: {e}")

        finally:
            self.close()
            logger.info("Receive loop stopped")

    def _dispatch(self, events: List[DecodedEvent]) -> None:
        for event in events:
            if isinstance(event, HandshakeToken):
                logger.info("Received handshake token from device")
                self._on_handshake()
            elif isinstance(event, ReadingFrame):
                self._on_reading(event.reading)
            else:
                logger.warning(f"Dropped malformed frame: {event.reason}")
