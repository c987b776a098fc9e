"""Tests for the TCP transport wrapper."""

import socket
import threading

import pytest

from fakes.fake_device import FakeSensorSocket, format_frame
from tcp_sensor_lib import protocol
from tcp_sensor_lib.errors import ConnectError, ReceiveError, SendError
from tcp_sensor_lib.transport import Transport


def test_write_and_read_with_fake_device() -> None:
    """Test request bytes reach the device and its response comes back."""
    fake = FakeSensorSocket(send_handshake=False)
    transport = Transport(fake)

    transport.write_bytes(protocol.REQUEST_ALL_FRAME)

    assert fake.writes == [protocol.REQUEST_ALL_FRAME]
    assert fake.requests_received == 1
    assert transport.read_chunk() == format_frame(fake.values)


def test_handshake_arrives_on_first_read() -> None:
    """Test the fake device greets the host once reading starts."""
    transport = Transport(FakeSensorSocket())
    assert transport.read_chunk() == b"connected"


def test_read_chunk_respects_size() -> None:
    """Test read_chunk never returns more than size bytes."""
    fake = FakeSensorSocket(send_handshake=False)
    fake.feed(b"0123456789")
    transport = Transport(fake)

    assert transport.read_chunk(4) == b"0123"
    assert transport.read_chunk(100) == b"456789"


def test_close_is_idempotent() -> None:
    """Test close() shuts down once and can be called again."""
    fake = FakeSensorSocket()
    transport = Transport(fake)

    transport.close()
    transport.close()

    assert fake.shutdown_called
    assert not fake.is_open
    assert not transport.is_open


def test_read_after_close_returns_eof() -> None:
    """Test reads after close() report end of stream, not an error."""
    transport = Transport(FakeSensorSocket(send_handshake=False))
    transport.close()

    assert transport.read_chunk() == b""


def test_write_after_close_raises() -> None:
    """Test writes after close() raise SendError."""
    transport = Transport(FakeSensorSocket())
    transport.close()

    with pytest.raises(SendError):
        transport.write_bytes(protocol.REQUEST_ALL_FRAME)


def test_write_failure_raises_send_error() -> None:
    """Test socket write errors are translated."""
    fake = FakeSensorSocket()
    fake.fail_writes = True

    with pytest.raises(SendError, match="Broken pipe"):
        Transport(fake).write_bytes(protocol.REQUEST_ALL_FRAME)


def test_read_failure_raises_receive_error() -> None:
    """Test socket read errors are translated while open."""
    fake = FakeSensorSocket(send_handshake=False)
    fake.fail_next_read()

    with pytest.raises(ReceiveError, match="reset"):
        Transport(fake).read_chunk()


def test_device_eof() -> None:
    """Test device closing its end reads as b''."""
    fake = FakeSensorSocket(send_handshake=False)
    fake.drop_connection()

    assert Transport(fake).read_chunk() == b""


def test_close_unblocks_pending_read_on_real_socket() -> None:
    """Test close() from another thread wakes a blocked recv()."""
    a, b = socket.socketpair()
    transport = Transport(a)
    result = []

    reader = threading.Thread(target=lambda: result.append(transport.read_chunk()))
    reader.start()

    b.sendall(b"connected")
    reader.join(timeout=2.0)
    assert result == [b"connected"]

    reader = threading.Thread(target=lambda: result.append(transport.read_chunk()))
    reader.start()
    transport.close()
    reader.join(timeout=2.0)

    assert not reader.is_alive()
    assert result[-1] == b""
    b.close()


def test_open_connects_to_listener() -> None:
    """Test Transport.open against a local TCP listener."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    port = server.getsockname()[1]

    transport = Transport.open("127.0.0.1", port, timeout_s=2.0)
    conn, _ = server.accept()
    try:
        assert transport.peer == f"127.0.0.1:{port}"
        transport.write_bytes(protocol.REQUEST_ALL_FRAME)
        assert conn.recv(16) == protocol.REQUEST_ALL_FRAME

        conn.sendall(b"connected")
        assert transport.read_chunk() == b"connected"
    finally:
        transport.close()
        conn.close()
        server.close()


def test_open_refused_raises_connect_error() -> None:
    """Test a refused connection raises ConnectError."""
    unused = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    unused.bind(("127.0.0.1", 0))
    port = unused.getsockname()[1]
    unused.close()

    with pytest.raises(ConnectError, match=f"127.0.0.1:{port}"):
        Transport.open("127.0.0.1", port, timeout_s=1.0)
