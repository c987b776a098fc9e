"""Data models for the TCP sensor library."""

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Sequence

from tcp_sensor_lib import protocol


class ConnectionState(Enum):
    """Session connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    HANDSHAKING = "handshaking"  # socket open, token not seen yet
    HANDSHAKED = "handshaked"  # token seen, pre-poll delay pending
    POLLING = "polling"


# States in which the byte stream is open and usable.
OPEN_STATES = frozenset(
    {
        ConnectionState.CONNECTED,
        ConnectionState.HANDSHAKING,
        ConnectionState.HANDSHAKED,
        ConnectionState.POLLING,
    }
)


@dataclass(frozen=True)
class SensorReading:
    """One bundle of values decoded from an ABBA...CDDC frame.

    Attributes:
        distance: Distance reading.
        temperature: Temperature reading.
        humidity: Relative humidity reading.
        illuminance: Illuminance reading.
        color_temp: Colour temperature reading.
        battery: Battery level.
        ts: UTC timestamp when the frame was decoded. Not part of equality.
    """

    distance: float
    temperature: float
    humidity: float
    illuminance: float
    color_temp: float
    battery: float
    ts: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )

    @classmethod
    def from_values(cls, values: Sequence[float]) -> "SensorReading":
        """Build a reading from the six positional values of a frame.

        Raises:
            ValueError: If values does not hold exactly 6 items
        """
        if len(values) != protocol.FIELD_COUNT:
            raise ValueError(
                f"Expected {protocol.FIELD_COUNT} values, got {len(values)}"
            )
        return cls(*(float(v) for v in values))

    def as_list(self) -> List[float]:
        """Values in wire order."""
        return [
            self.distance,
            self.temperature,
            self.humidity,
            self.illuminance,
            self.color_temp,
            self.battery,
        ]

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation with ISO timestamp."""
        data = asdict(self)
        data["ts"] = self.ts.isoformat()
        return data


@dataclass
class SessionConfig:
    """Connection and timing parameters for one sensor endpoint.

    Attributes:
        host: Device IP address.
        port: Device TCP port.
        connect_timeout_s: Timeout for opening the TCP connection.
        handshake_timeout_s: Max wait for the "connected" token after connect.
        poll_delay_s: Settling delay between handshake and first poll.
        poll_interval_s: Time between request frames while polling.
        request_command: Command byte placed in the request frame.
        read_size: Max bytes per socket read.
        max_pending_bytes: Receive buffer size that triggers a resync.
    """

    host: str = protocol.DEFAULT_HOST
    port: int = protocol.DEFAULT_PORT
    connect_timeout_s: float = protocol.CONNECT_TIMEOUT
    handshake_timeout_s: float = protocol.HANDSHAKE_TIMEOUT
    poll_delay_s: float = protocol.DELAY_BEFORE_POLLING
    poll_interval_s: float = protocol.POLLING_INTERVAL
    request_command: int = protocol.CMD_REQUEST_ALL
    read_size: int = protocol.READ_SIZE
    max_pending_bytes: int = protocol.MAX_PENDING_BYTES

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not self.host:
            raise ValueError("host must not be empty")

        if not (1 <= self.port <= 65535):
            raise ValueError(f"port must be 1-65535, got {self.port}")

        for name in (
            "connect_timeout_s",
            "handshake_timeout_s",
            "poll_delay_s",
            "poll_interval_s",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be > 0, got {value}")

        if not (0 <= self.request_command <= 0xFF):
            raise ValueError(
                f"request_command must be a byte (0-255), got {self.request_command}"
            )

        if self.read_size <= 0:
            raise ValueError(f"read_size must be positive, got {self.read_size}")

        if self.max_pending_bytes < protocol.RESYNC_KEEP_BYTES:
            raise ValueError(
                f"max_pending_bytes must be >= {protocol.RESYNC_KEEP_BYTES}, "
                f"got {self.max_pending_bytes}"
            )

    @property
    def request_frame(self) -> bytes:
        """Request frame sent on every poll."""
        return protocol.encode_request(self.request_command)


class AtomicFlag:
    """Boolean with atomic read and compare-and-set."""

    def __init__(self, value: bool = False) -> None:
        self._value = value
        self._lock = threading.Lock()

    def get(self) -> bool:
        with self._lock:
            return self._value

    def set(self, value: bool) -> None:
        with self._lock:
            self._value = value

    def compare_and_set(self, expected: bool, new: bool) -> bool:
        """Set to new only if currently expected. Returns True on success."""
        with self._lock:
            if self._value != expected:
                return False
            self._value = new
            return True


class StateCell:
    """Thread-safe holder for the session's ConnectionState."""

    def __init__(self, initial: ConnectionState = ConnectionState.DISCONNECTED) -> None:
        self._state = initial
        self._lock = threading.Lock()

    def get(self) -> ConnectionState:
        with self._lock:
            return self._state

    def set(self, state: ConnectionState) -> ConnectionState:
        """Unconditionally set state. Returns the previous state."""
        with self._lock:
            previous = self._state
            self._state = state
            return previous

    def compare_and_set(self, expected: ConnectionState, new: ConnectionState) -> bool:
        """Transition expected -> new. Returns False if state was not expected."""
        with self._lock:
            if self._state != expected:
                return False
            self._state = new
            return True

    def is_open(self) -> bool:
        """True while the byte stream is usable."""
        return self.get() in OPEN_STATES
