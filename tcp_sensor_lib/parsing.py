"""Pure parsing of response frames and the incremental stream decoder."""

import logging
from dataclasses import dataclass
from typing import List, Union

from tcp_sensor_lib import protocol
from tcp_sensor_lib.errors import InvalidFrame
from tcp_sensor_lib.models import SensorReading

logger = logging.getLogger(__name__)


def parse_frame_payload(payload: str) -> SensorReading:
    """Parse the text between ABBA and CDDC into a reading.

    Expected format: <v1>,<v2>,<v3>,<v4>,<v5>,<v6>
    Example: "1.5, 20.0,55.0,300.0,4500,80"

    Args:
        payload: Frame content with the markers already stripped

    Returns:
        SensorReading with the six values in wire order

    Raises:
        InvalidFrame: If the field count is not 6 or a field is not a decimal
    """
    fields = [part.strip() for part in payload.split(protocol.FIELD_SEPARATOR)]
    if len(fields) != protocol.FIELD_COUNT:
        raise InvalidFrame(
            f"Expected {protocol.FIELD_COUNT} fields, got {len(fields)}: {payload!r}"
        )

    for index, text in enumerate(fields):
        if not protocol.RE_DECIMAL_FIELD.match(text):
            raise InvalidFrame(f"Field {index} is not a number: {text!r} in {payload!r}")

    try:
        return SensorReading.from_values([float(text) for text in fields])
    except ValueError as e:
        raise InvalidFrame(f"Failed to parse numeric values in frame: {payload!r}") from e


# ============================================================================
# Decoder events
# ============================================================================


@dataclass(frozen=True)
class HandshakeToken:
    """The device sent its "connected" token (first time for this decoder)."""


@dataclass(frozen=True)
class ReadingFrame:
    """A complete, well-formed frame."""

    reading: SensorReading


@dataclass(frozen=True)
class MalformedFrame:
    """A complete frame that was dropped because it did not parse."""

    payload: str
    reason: str


DecodedEvent = Union[HandshakeToken, ReadingFrame, MalformedFrame]


class FrameDecoder:
    """Incremental decoder over an accumulating receive buffer.

    Bytes may arrive split at any position; feed() is called with every
    chunk and returns the events completed by it, in the order the frames
    closed in the stream. One decoder belongs to one session and must only
    be used from that session's receive thread.
    """

    def __init__(self, max_pending_bytes: int = protocol.MAX_PENDING_BYTES) -> None:
        """Initialize decoder.

        Args:
            max_pending_bytes: Buffer size above which a stale partial frame
                              or marker-free garbage is discarded.
        """
        self._buffer = bytearray()
        self._max_pending = max_pending_bytes
        self._handshake_seen = False
        self.resync_count = 0

    @property
    def handshake_seen(self) -> bool:
        return self._handshake_seen

    @property
    def pending(self) -> bytes:
        """Copy of the bytes still waiting for a frame to complete."""
        return bytes(self._buffer)

    def feed(self, chunk: bytes) -> List[DecodedEvent]:
        """Append a chunk and extract everything it completes.

        Args:
            chunk: Raw bytes as read from the socket

        Returns:
            Handshake event first (if any), then frame events in stream order
        """
        buf = self._buffer
        buf.extend(chunk)
        events: List[DecodedEvent] = []

        token_at = buf.find(protocol.HANDSHAKE_TOKEN)
        if token_at != -1:
            del buf[: token_at + len(protocol.HANDSHAKE_TOKEN)]
            if not self._handshake_seen:
                self._handshake_seen = True
                events.append(HandshakeToken())
            else:
                logger.debug("Ignoring repeated handshake token")

        start_len = len(protocol.FRAME_START)
        end_len = len(protocol.FRAME_END)

        start = buf.find(protocol.FRAME_START)
        while start != -1:
            end = buf.find(protocol.FRAME_END, start + start_len)
            if end == -1:
                # Incomplete frame: drop leading garbage, keep the partial
                if start > 0:
                    del buf[:start]
                break

            payload = buf[start + start_len : end].decode("ascii", errors="replace")
            del buf[: end + end_len]

            try:
                reading = parse_frame_payload(payload)
            except InvalidFrame as e:
                events.append(MalformedFrame(payload=payload, reason=str(e)))
            else:
                logger.debug(f"Decoded frame: {reading.as_list()}")
                events.append(ReadingFrame(reading))

            start = buf.find(protocol.FRAME_START)

        self._enforce_limit()
        return events

    def _enforce_limit(self) -> None:
        """Resync when the buffer outgrows max_pending_bytes.

        Keeps the newest frame start if it fits, otherwise only a short tail
        so a marker or token split across reads can still complete.
        """
        buf = self._buffer
        if len(buf) <= self._max_pending:
            return

        newest = buf.rfind(protocol.FRAME_START, 1)
        if newest > 0 and len(buf) - newest <= self._max_pending:
            dropped = newest
        else:
            dropped = len(buf) - protocol.RESYNC_KEEP_BYTES
        del buf[:dropped]

        self.resync_count += 1
        logger.warning(
            f"Receive buffer exceeded {self._max_pending} bytes without a complete "
            f"frame, discarded {dropped} bytes to resync"
        )
