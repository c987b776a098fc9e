"""Custom exceptions for the TCP sensor library."""


class TCPSensorError(Exception):
    """Base exception for all TCP sensor library errors."""

    pass


class SensorIOError(TCPSensorError):
    """Raised when socket communication fails (closed stream, reset, etc)."""

    pass


class ConnectError(SensorIOError):
    """Raised when the TCP connection to the device cannot be opened."""

    pass


class SendError(SensorIOError):
    """Raised when writing a request frame to the device fails."""

    pass


class ReceiveError(SensorIOError):
    """Raised when reading from the device stream fails."""

    pass


class NotConnectedError(TCPSensorError):
    """Raised when an operation requires an open session and there is none."""

    pass


class InvalidFrame(TCPSensorError):
    """Raised when a response frame payload cannot be parsed."""

    pass
