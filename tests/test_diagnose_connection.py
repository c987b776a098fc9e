"""Tests for the connection diagnosis tool against a local listening socket."""

import socket
import threading

import pytest

from fakes.fake_device import DEFAULT_VALUES, format_frame
from tcp_sensor_lib import protocol
from tcp_sensor_lib.parsing import FrameDecoder
from tools.diagnose_connection import describe_events, diagnose_connection


@pytest.fixture
def device():
    """One-shot device: split handshake token, then a split response frame."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)

    def serve() -> None:
        conn, _ = server.accept()
        with conn:
            conn.sendall(b"conn")
            conn.sendall(b"ected")

            request = b""
            while len(request) < len(protocol.REQUEST_ALL_FRAME):
                chunk = conn.recv(64)
                if not chunk:
                    return
                request += chunk

            frame = format_frame(DEFAULT_VALUES)
            conn.sendall(frame[:3])
            conn.sendall(frame[3:])

            while conn.recv(64):
                pass

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield server.getsockname()[1]
    thread.join(timeout=2.0)
    server.close()


def test_describe_events_uses_frame_decoder() -> None:
    """Test handshake, good frame, and bad frame each get one line."""
    events = FrameDecoder().feed(b"connected" + b"ABBA1,2CDDC" + format_frame(DEFAULT_VALUES))
    lines = describe_events(events)

    assert lines[0] == "*** FOUND HANDSHAKE TOKEN ***"
    assert lines[1].startswith("*** MALFORMED FRAME '1,2'")
    assert lines[2] == "*** FOUND FRAME: [1.5, 20.0, 55.0, 300.0, 4500.0, 80.0] ***"


def test_diagnose_reports_split_token_and_frame(device, capsys) -> None:
    """Test markers split across reads are still found."""
    assert diagnose_connection("127.0.0.1", device, handshake_wait=0.5, response_wait=0.5) is True

    out = capsys.readouterr().out
    assert "FOUND HANDSHAKE TOKEN" in out
    assert "FOUND FRAME: [1.5, 20.0, 55.0, 300.0, 4500.0, 80.0]" in out
    assert "NO COMPLETE FRAME RECEIVED" not in out
    assert "Socket closed" in out


def test_diagnose_connect_failure(capsys) -> None:
    """Test an unreachable endpoint is reported, not raised."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as unused:
        unused.bind(("127.0.0.1", 0))
        port = unused.getsockname()[1]

    assert diagnose_connection("127.0.0.1", port) is False
    assert "CONNECT FAILED" in capsys.readouterr().out
