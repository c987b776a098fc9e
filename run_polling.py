#!/usr/bin/env python3
"""
Runbook: Polling Session Test
Expected: handshake within 5s, first reading ~3s later, then one every 2s
"""

import argparse
import logging
import threading
import time

from tcp_sensor_lib import EventSink, SensorController, SensorReading, SessionConfig
from tcp_sensor_lib import protocol

# ============================================================================
# CONFIGURATION - EDIT THIS (or pass --host/--port/--duration)
# ============================================================================
SENSOR_HOST = protocol.DEFAULT_HOST
SENSOR_PORT = protocol.DEFAULT_PORT
RUN_DURATION_S = 20.0

# ============================================================================
# TEST SCRIPT - DO NOT EDIT BELOW
# ============================================================================


class ConsoleSink(EventSink):
    """Prints every event with the time since start."""

    def __init__(self) -> None:
        self.start_time = time.time()
        self.readings = []
        self.errors = []
        self.timed_out = threading.Event()
        self.closed = threading.Event()

    def _stamp(self) -> str:
        return f"[{time.time() - self.start_time:5.1f}s]"

    def on_reading(self, reading: SensorReading) -> None:
        self.readings.append(reading)
        print(f"      {self._stamp()} Reading #{len(self.readings)}: "
              f"distance={reading.distance} temp={reading.temperature} "
              f"humidity={reading.humidity} lux={reading.illuminance} "
              f"cct={reading.color_temp} battery={reading.battery}")

    def on_connection_status_changed(self, connected: bool) -> None:
        print(f"      {self._stamp()} Connection: {'UP' if connected else 'DOWN'}")
        if not connected:
            self.closed.set()

    def on_polling_status_changed(self, polling: bool) -> None:
        print(f"      {self._stamp()} Polling: {'started' if polling else 'stopped'}")

    def on_error(self, message: str) -> None:
        self.errors.append(message)
        print(f"      {self._stamp()} ERROR: {message}")

    def on_connection_timeout(self) -> None:
        print(f"      {self._stamp()} Connection timeout: no handshake from device")
        self.timed_out.set()


def main() -> int:
    parser = argparse.ArgumentParser(description="Connect, poll the sensor, and print readings")
    parser.add_argument("--host", default=SENSOR_HOST, help="Sensor address")
    parser.add_argument("--port", type=int, default=SENSOR_PORT, help="Sensor port")
    parser.add_argument("--duration", type=float, default=RUN_DURATION_S, help="Seconds to run")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    print("=" * 70)
    print("Runbook: Polling Session Validation")
    print("=" * 70)
    print(f"Sensor: {args.host}:{args.port}")
    print(f"Duration: {args.duration}s")
    print()

    sink = ConsoleSink()
    config = SessionConfig(host=args.host, port=args.port)
    controller = SensorController(sink=sink, config=config)

    try:
        print("[1/3] Connecting and waiting for handshake...")
        controller.connect()

        print(f"[2/3] Running for {args.duration}s...")
        deadline = time.time() + args.duration
        while time.time() < deadline and not sink.closed.is_set():
            time.sleep(0.5)

    except KeyboardInterrupt:
        print()
        print("Interrupted.")

    finally:
        controller.disconnect()
        controller.wait_closed()

    print()
    print("[3/3] Results")
    expected = max(0, int((args.duration - config.poll_delay_s) / config.poll_interval_s))
    print(f"      Total readings: {len(sink.readings)}")
    print(f"      Expected: ~{expected}")
    print(f"      Errors: {len(sink.errors)}")

    if sink.timed_out.is_set():
        print("✗ FAIL: Device never sent the handshake token")
        status = 1
    elif sink.readings:
        print("✓ PASS: Received readings")
        status = 0
    else:
        print("✗ FAIL: No readings received")
        status = 1

    print("=" * 70)
    return status


if __name__ == "__main__":
    raise SystemExit(main())
