"""
tcp_sensor_lib - Session engine for a fixed-endpoint TCP environmental sensor.

Connects, waits for the device's "connected" handshake, then polls for
bundles of six readings framed as ABBA...CDDC on the byte stream.
"""

from tcp_sensor_lib.controller import SensorController
from tcp_sensor_lib.errors import (
    ConnectError,
    InvalidFrame,
    NotConnectedError,
    ReceiveError,
    SendError,
    SensorIOError,
    TCPSensorError,
)
from tcp_sensor_lib.events import EventHub, EventKind, EventSink, QueueEventSink, SensorEvent
from tcp_sensor_lib.models import ConnectionState, SensorReading, SessionConfig

__version__ = "0.1.0"

__all__ = [
    "SensorController",
    "SessionConfig",
    "SensorReading",
    "ConnectionState",
    "EventSink",
    "EventHub",
    "EventKind",
    "QueueEventSink",
    "SensorEvent",
    "TCPSensorError",
    "SensorIOError",
    "ConnectError",
    "SendError",
    "ReceiveError",
    "NotConnectedError",
    "InvalidFrame",
]
