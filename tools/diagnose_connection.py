"""Diagnose what happens during a connection attempt, below the session engine."""

import socket
import sys
import time

from tcp_sensor_lib import protocol
from tcp_sensor_lib.parsing import FrameDecoder, HandshakeToken, MalformedFrame, ReadingFrame


def _read_for(sock, seconds):
    """Collect whatever arrives within the given number of seconds."""
    received = b""
    deadline = time.time() + seconds
    while time.time() < deadline:
        sock.settimeout(max(0.05, deadline - time.time()))
        try:
            chunk = sock.recv(protocol.READ_SIZE)
        except socket.timeout:
            break
        if not chunk:
            print("RX: <connection closed by device>")
            break
        print(f"RX: {chunk!r}")
        received += chunk
    return received


def describe_events(events):
    """One human-readable line per decoded event."""
    lines = []
    for event in events:
        if isinstance(event, HandshakeToken):
            lines.append("*** FOUND HANDSHAKE TOKEN ***")
        elif isinstance(event, ReadingFrame):
            lines.append(f"*** FOUND FRAME: {event.reading.as_list()} ***")
        elif isinstance(event, MalformedFrame):
            lines.append(f"*** MALFORMED FRAME {event.payload!r}: {event.reason} ***")
    return lines


def diagnose_connection(
    host=protocol.DEFAULT_HOST,
    port=protocol.DEFAULT_PORT,
    handshake_wait=protocol.HANDSHAKE_TIMEOUT,
    response_wait=3.0,
):
    """Show exactly what happens when we connect and send one request frame.

    Everything received goes through the same FrameDecoder the session uses,
    so markers split across reads are handled the same way.

    Returns:
        False if the connection could not be opened, True otherwise
    """
    decoder = FrameDecoder()

    print(f"\n=== Connecting to {host}:{port} ===")
    start = time.time()
    try:
        sock = socket.create_connection((host, port), timeout=protocol.CONNECT_TIMEOUT)
    except OSError as e:
        print(f"*** CONNECT FAILED after {time.time() - start:.2f}s: {e} ***")
        print("\nPossible reasons:")
        print("1. Not joined to the sensor's Wi-Fi access point")
        print("2. Sensor is powered off or still booting")
        print("3. Wrong address or port")
        return False
    print(f"Connected in {time.time() - start:.2f}s")

    try:
        print(f"\n=== Waiting {handshake_wait}s for handshake token ===")
        for line in describe_events(decoder.feed(_read_for(sock, handshake_wait))):
            print(f"\n{line}")
        if not decoder.handshake_seen:
            print("\n*** HANDSHAKE TOKEN NOT FOUND ***")

        request = protocol.REQUEST_ALL_FRAME
        print(f"\n=== Sending request {request.hex(' ').upper()} ===")
        sock.sendall(request)

        print(f"\n=== Waiting {response_wait}s for response frame ===")
        events = decoder.feed(_read_for(sock, response_wait))
        for line in describe_events(events):
            print(f"\n{line}")
        if not any(isinstance(event, ReadingFrame) for event in events):
            print("\n*** NO COMPLETE FRAME RECEIVED ***")
        if decoder.pending:
            print(f"Undecoded bytes left over: {decoder.pending!r}")
    finally:
        sock.close()
        print("\nSocket closed")

    return True


if __name__ == "__main__":
    host = sys.argv[1] if len(sys.argv) > 1 else protocol.DEFAULT_HOST
    port = int(sys.argv[2]) if len(sys.argv) > 2 else protocol.DEFAULT_PORT
    diagnose_connection(host, port)
