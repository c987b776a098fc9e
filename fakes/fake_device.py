"""Fake socket that simulates the TCP sensor device.

Emulates the device side of the wire protocol:
- Sends the "connected" handshake token once the host starts reading
- Answers every AB BA 00 FF CD DC request with an ABBA...CDDC frame
- Can split responses into small chunks, inject raw bytes, drop the
  connection, or fail reads/writes on demand
"""

import logging
import queue
import threading
from typing import List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

DEFAULT_VALUES = (1.5, 20.0, 55.0, 300.0, 4500, 80)

_EOF = object()


def format_frame(values: Sequence[float]) -> bytes:
    """Build a response frame the way the firmware prints it."""
    body = ",".join(_format_value(v) for v in values)
    return f"ABBA{body}CDDC".encode("ascii")


def _format_value(value: float) -> str:
    if isinstance(value, int):
        return str(value)
    return repr(float(value))


class FakeSensorSocket:
    """Deterministic in-memory stand-in for a connected device socket.

    Implements the StreamLike protocol (recv, sendall, shutdown, close).
    recv() blocks until the device has something to say, the device drops
    the connection, or the host shuts the socket down.
    """

    def __init__(
        self,
        values: Sequence[float] = DEFAULT_VALUES,
        send_handshake: bool = True,
        handshake_delay_s: float = 0.0,
        respond: bool = True,
        response_chunk_size: Optional[int] = None,
    ) -> None:
        """Initialize fake device.

        Args:
            values: Six values reported in every response frame
            send_handshake: If False, the device never says "connected"
            handshake_delay_s: Delay between first host read and the token
            respond: If False, requests are recorded but never answered
            response_chunk_size: Split each response into chunks of this size
        """
        self.values = list(values)
        self.send_handshake = send_handshake
        self.handshake_delay_s = handshake_delay_s
        self.respond = respond
        self.response_chunk_size = response_chunk_size

        # Everything the host wrote, one entry per sendall()
        self.writes: List[bytes] = []
        self.requests_received = 0

        self.fail_writes = False
        self.is_open = True
        self.shutdown_called = False

        self._output: "queue.Queue[Union[bytes, Exception, object]]" = queue.Queue()
        self._leftover = b""
        self._eof = False
        self._input = bytearray()
        self._started = False
        self._lock = threading.Lock()
        self._handshake_timer: Optional[threading.Timer] = None

    # ========================================================================
    # StreamLike
    # ========================================================================

    def recv(self, bufsize: int) -> bytes:
        """Return up to bufsize bytes, blocking until data or end of stream."""
        self._maybe_start()

        if self._leftover:
            data, self._leftover = self._leftover[:bufsize], self._leftover[bufsize:]
            return data

        if self._eof:
            return b""

        item = self._output.get()
        if item is _EOF:
            self._eof = True
            return b""
        if isinstance(item, Exception):
            raise item

        assert isinstance(item, bytes)
        data, self._leftover = item[:bufsize], item[bufsize:]
        return data

    def sendall(self, data: bytes) -> None:
        """Accept bytes from the host and answer complete requests."""
        if not self.is_open or self.shutdown_called:
            raise OSError(9, "Bad file descriptor")
        if self.fail_writes:
            raise BrokenPipeError(32, "Broken pipe")

        with self._lock:
            self.writes.append(bytes(data))
            self._input.extend(data)
            requests = self._take_requests()

        for _ in range(requests):
            self.requests_received += 1
            if self.respond:
                self.send_frame(self.values)

    def shutdown(self, how: int) -> None:
        if not self.is_open:
            raise OSError(9, "Bad file descriptor")
        self.shutdown_called = True
        self._output.put(_EOF)

    def close(self) -> None:
        if self.is_open:
            self.is_open = False
            self._output.put(_EOF)
        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
        logger.debug("FakeSensorSocket closed")

    # ========================================================================
    # Device-side controls (used by tests)
    # ========================================================================

    def feed(self, data: bytes) -> None:
        """Make the device send raw bytes."""
        self._output.put(bytes(data))

    def send_frame(self, values: Sequence[float]) -> None:
        """Send one response frame, split per response_chunk_size."""
        frame = format_frame(values)
        size = self.response_chunk_size or len(frame)
        for i in range(0, len(frame), size):
            self.feed(frame[i : i + size])

    def send_handshake_token(self) -> None:
        self.feed(b"connected")

    def drop_connection(self) -> None:
        """Device closes its end: host reads end of stream."""
        self._output.put(_EOF)

    def fail_next_read(self, error: Optional[Exception] = None) -> None:
        """Make the host's next blocking read raise."""
        self._output.put(error or ConnectionResetError(104, "Connection reset by peer"))

    # ========================================================================
    # Internal
    # ========================================================================

    def _maybe_start(self) -> None:
        """Device behaviour that begins once the host is reading."""
        with self._lock:
            if self._started:
                return
            self._started = True

        if not self.send_handshake:
            return

        if self.handshake_delay_s <= 0:
            self.send_handshake_token()
        else:
            self._handshake_timer = threading.Timer(self.handshake_delay_s, self.send_handshake_token)
            self._handshake_timer.daemon = True
            self._handshake_timer.start()

    def _take_requests(self) -> int:
        """Count and consume complete AB BA .. .. CD DC requests in the input."""
        count = 0
        while True:
            start = self._input.find(b"\xab\xba")
            if start == -1 or len(self._input) - start < 6:
                return count
            frame = bytes(self._input[start : start + 6])
            del self._input[: start + 6]
            if frame[4:] == b"\xcd\xdc":
                count += 1
            else:
                logger.debug(f"FakeSensorSocket ignoring malformed request {frame.hex(' ')}")
