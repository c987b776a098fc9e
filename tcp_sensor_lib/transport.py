"""TCP transport layer for sensor communication."""

import logging
import socket
from typing import Protocol

from tcp_sensor_lib import protocol
from tcp_sensor_lib.errors import ConnectError, ReceiveError, SendError

logger = logging.getLogger(__name__)


class StreamLike(Protocol):
    """Protocol for a connected socket (allows test doubles)."""

    def recv(self, bufsize: int) -> bytes:
        """Read up to bufsize bytes; b"" at end of stream."""
        ...

    def sendall(self, data: bytes) -> None:
        """Write all bytes."""
        ...

    def shutdown(self, how: int) -> None:
        """Shut down one or both halves (unblocks a pending recv)."""
        ...

    def close(self) -> None:
        """Release the socket."""
        ...


class Transport:
    """Wrapper around a connected socket with error translation.

    Reads block until data, end of stream, or close() from another thread.
    """

    def __init__(self, stream: StreamLike, peer: str = "<injected>") -> None:
        """Initialize transport with a connected stream.

        Args:
            stream: Object implementing StreamLike
                   (e.g., socket.socket or FakeSensorSocket for testing)
            peer: Human-readable peer address for logs
        """
        self._stream = stream
        self._peer = peer
        self._closed = False

    @classmethod
    def open(
        cls,
        host: str = protocol.DEFAULT_HOST,
        port: int = protocol.DEFAULT_PORT,
        timeout_s: float = protocol.CONNECT_TIMEOUT,
    ) -> "Transport":
        """Open a TCP connection to the device.

        Args:
            host: Device address
            port: Device port
            timeout_s: Connect timeout in seconds. Reads are blocking afterwards.

        Returns:
            Transport instance wrapping the connected socket

        Raises:
            ConnectError: If the connection cannot be established
        """
        try:
            sock = socket.create_connection((host, port), timeout=timeout_s)
        except OSError as e:
            raise ConnectError(f"Failed to connect to {host}:{port}: {e}") from e

        # Block on reads; teardown unblocks them with shutdown()
        sock.settimeout(None)
        logger.info(f"Opened TCP connection to {host}:{port}")
        return cls(sock, peer=f"{host}:{port}")

    @property
    def peer(self) -> str:
        return self._peer

    @property
    def is_open(self) -> bool:
        return not self._closed

    def read_chunk(self, size: int = protocol.READ_SIZE) -> bytes:
        """Block until bytes arrive.

        Args:
            size: Max bytes to read

        Returns:
            Received bytes, or b"" at end of stream (including after close())

        Raises:
            ReceiveError: If the read fails while the transport is open
        """
        try:
            data = self._stream.recv(size)
        except OSError as e:
            if self._closed:
                return b""
            raise ReceiveError(f"Failed to read from {self._peer}: {e}") from e

        if data:
            logger.debug(f"Received {len(data)} bytes: {data!r}")
        return data

    def write_bytes(self, data: bytes) -> None:
        """Write raw bytes to the device.

        Args:
            data: Raw bytes to send

        Raises:
            SendError: If the transport is closed or the write fails
        """
        if self._closed:
            raise SendError("Transport is closed")

        try:
            self._stream.sendall(data)
            logger.debug(f"Sent {len(data)} bytes: {data.hex(' ')}")
        except OSError as e:
            raise SendError(f"Failed to write to {self._peer}: {e}") from e

    def close(self) -> None:
        """Shut down and close the socket. Safe to call more than once.

        Errors are logged and swallowed; closing is best effort.
        """
        if self._closed:
            return
        self._closed = True

        try:
            self._stream.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            # Already reset by the peer, or never fully connected
            logger.debug(f"Shutdown of {self._peer} failed: {e}")

        try:
            self._stream.close()
            logger.info(f"Closed TCP connection to {self._peer}")
        except OSError as e:
            logger.warning(f"Error closing {self._peer}: {e}")

