"""Wire protocol constants and request encoding for the TCP sensor device.

Requests are 6 raw bytes; responses are ASCII frames embedded in the
byte stream:

    request:   AB BA <reserved> <command> CD DC
    response:  ABBA<distance>,<temp>,<humidity>,<lux>,<cct>,<battery>CDDC
    handshake: the literal token "connected", sent once after accept
"""

import re
from typing import Final

# ============================================================================
# Endpoint
# ============================================================================

# Device runs its own access point and listens on a fixed address/port
DEFAULT_HOST: Final[str] = "192.168.4.1"
DEFAULT_PORT: Final[int] = 8080

# ============================================================================
# Request Frame (binary)
# ============================================================================

REQUEST_HEADER: Final[bytes] = b"\xab\xba"
REQUEST_TRAILER: Final[bytes] = b"\xcd\xdc"

# Third byte is reserved; only 0x00 has been observed
RESERVED_BYTE: Final[int] = 0x00

# Fourth byte selects what to report; 0xFF = every reading in one frame
CMD_REQUEST_ALL: Final[int] = 0xFF


def encode_request(command: int = CMD_REQUEST_ALL, reserved: int = RESERVED_BYTE) -> bytes:
    """Build a request frame: AB BA <reserved> <command> CD DC

    Args:
        command: Command selector byte (0xFF requests all readings)
        reserved: Reserved byte, 0x00 on every known firmware

    Returns:
        6-byte request frame

    Raises:
        ValueError: If command or reserved is not a single byte value
    """
    for name, value in (("command", command), ("reserved", reserved)):
        if not (0 <= value <= 0xFF):
            raise ValueError(f"{name} must be 0-255, got {value}")
    return REQUEST_HEADER + bytes((reserved, command)) + REQUEST_TRAILER


REQUEST_ALL_FRAME: Final[bytes] = encode_request()

# ============================================================================
# Response Frame (ASCII)
# ============================================================================

FRAME_START: Final[bytes] = b"ABBA"
FRAME_END: Final[bytes] = b"CDDC"
FIELD_SEPARATOR: Final[str] = ","

# distance, temperature, humidity, illuminance, color temperature, battery
FIELD_COUNT: Final[int] = 6

# One payload field: plain decimal with optional sign and exponent
RE_DECIMAL_FIELD: Final[re.Pattern[str]] = re.compile(
    r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$"
)

# ============================================================================
# Handshake
# ============================================================================

# Case-sensitive, may appear anywhere in the stream
HANDSHAKE_TOKEN: Final[bytes] = b"connected"

# ============================================================================
# Timing Constants (seconds)
# ============================================================================

# Timeout for the TCP connect itself
CONNECT_TIMEOUT: Final[float] = 5.0

# Device must send the handshake token within this window (T1)
HANDSHAKE_TIMEOUT: Final[float] = 5.0

# Settling time between handshake and the first poll (T2)
DELAY_BEFORE_POLLING: Final[float] = 3.0

# Cadence of request frames while polling
POLLING_INTERVAL: Final[float] = 2.0

# Max wait when joining background threads during teardown
THREAD_JOIN_TIMEOUT: Final[float] = 2.0

# ============================================================================
# Buffering
# ============================================================================

READ_SIZE: Final[int] = 1024

# Receive buffer size that forces a resync (drop stale partial frame)
MAX_PENDING_BYTES: Final[int] = 4096

# Tail kept on resync: long enough for a split marker or split handshake token
RESYNC_KEEP_BYTES: Final[int] = max(len(FRAME_START), len(FRAME_END), len(HANDSHAKE_TOKEN)) - 1
