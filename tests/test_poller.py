"""Tests for the polling controller against a real session and fake device."""

import threading
import time
from typing import Callable

import pytest

from fakes.fake_device import FakeSensorSocket
from tcp_sensor_lib import protocol
from tcp_sensor_lib.events import EventKind, QueueEventSink
from tcp_sensor_lib.models import ConnectionState, SessionConfig
from tcp_sensor_lib.poller import PollingController
from tcp_sensor_lib.session import TransportSession


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll predicate until true or timeout."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _polling_events(sink: QueueEventSink):
    return [e.payload for e in sink.drain() if e.kind == EventKind.POLLING_STATUS]


@pytest.fixture
def fake() -> FakeSensorSocket:
    return FakeSensorSocket()


@pytest.fixture
def sink() -> QueueEventSink:
    return QueueEventSink()


@pytest.fixture
def session(fake, sink):
    session = TransportSession(SessionConfig(), on_error=sink.on_error)
    session.open(fake)
    yield session
    session.close()


@pytest.fixture
def poller(session, sink) -> PollingController:
    p = PollingController(session, session.state, sink, interval_s=0.05)
    yield p
    p.stop()
    p.join()


def test_interval_must_be_positive(session, sink) -> None:
    """Test a zero interval is rejected."""
    with pytest.raises(ValueError):
        PollingController(session, session.state, sink, interval_s=0)


def test_start_sends_requests_periodically(poller, fake) -> None:
    """Test the request frame is sent every interval."""
    assert poller.start() is True
    assert poller.is_active

    assert wait_until(lambda: fake.requests_received >= 3)
    assert all(w == protocol.REQUEST_ALL_FRAME for w in fake.writes)


def test_start_twice_emits_once(poller, sink) -> None:
    """Test a second start() is a no-op."""
    assert poller.start() is True
    assert poller.start() is False

    poller.stop()
    assert _polling_events(sink) == [True, False]


def test_stop_twice_emits_once(poller, sink) -> None:
    """Test only the call that stops polling emits an event."""
    poller.start()

    assert poller.stop() is True
    assert poller.stop() is False
    assert _polling_events(sink) == [True, False]


def test_stop_when_idle_is_silent(poller, sink) -> None:
    """Test stop() without start() emits nothing."""
    assert poller.stop() is False
    assert sink.drain() == []


def test_stop_halts_requests(poller, fake) -> None:
    """Test no more requests are sent after stop()."""
    poller.start()
    assert wait_until(lambda: fake.requests_received >= 1)

    poller.stop()
    poller.join()
    sent = fake.requests_received
    time.sleep(0.2)

    assert fake.requests_received == sent


def test_start_leaves_state_to_settling_delay(poller, session) -> None:
    """Test start() never enters POLLING; stop() falls back to HANDSHAKED."""
    session.state.set(ConnectionState.HANDSHAKED)

    poller.start()
    assert session.state.get() == ConnectionState.HANDSHAKED

    session.state.set(ConnectionState.POLLING)
    poller.stop()
    assert session.state.get() == ConnectionState.HANDSHAKED


def test_start_before_handshake_keeps_state(poller, session) -> None:
    """Test manual start while still CONNECTED does not fake a handshake."""
    assert session.state.get() in (ConnectionState.CONNECTED, ConnectionState.HANDSHAKING)
    before = session.state.get()

    assert poller.start() is True
    assert session.state.get() == before


def test_start_when_not_connected() -> None:
    """Test start() on an unopened session reports an error."""
    sink = QueueEventSink()
    session = TransportSession(SessionConfig())
    poller = PollingController(session, session.state, sink, interval_s=0.05)

    assert poller.start() is False
    assert not poller.is_active

    events = sink.drain()
    assert len(events) == 1
    assert events[0].kind == EventKind.ERROR
    assert "Not connected" in events[0].payload


def test_send_failure_stops_polling(poller, fake, session, sink) -> None:
    """Test a failed write ends polling and the session."""
    fake.fail_writes = True
    poller.start()

    assert wait_until(lambda: not poller.is_active)
    assert wait_until(lambda: session.finished)

    events = sink.drain()
    errors = [e.payload for e in events if e.kind == EventKind.ERROR]
    polling = [e.payload for e in events if e.kind == EventKind.POLLING_STATUS]
    assert len(errors) == 1
    assert errors[0].startswith("Send failed")
    assert polling == [True, False]


def test_session_close_stops_polling(poller, session, sink) -> None:
    """Test the poll loop notices the session going away."""
    poller.start()
    session.close()

    assert wait_until(lambda: not poller.is_active)
    assert _polling_events(sink) == [True, False]


def test_silent_start_when_not_connected() -> None:
    """Test start(report_errors=False) on a closed session emits nothing."""
    sink = QueueEventSink()
    session = TransportSession(SessionConfig())
    poller = PollingController(session, session.state, sink, interval_s=0.05)

    assert poller.start(report_errors=False) is False
    assert not poller.is_active
    assert sink.drain() == []


def test_start_racing_close_emits_paired_events() -> None:
    """Test a start racing teardown yields either nothing or True then False."""
    for _ in range(20):
        sink = QueueEventSink()
        session = TransportSession(SessionConfig(), on_error=sink.on_error)
        session.open(FakeSensorSocket())
        poller = PollingController(session, session.state, sink, interval_s=0.05)
        closer = threading.Thread(target=session.close)

        closer.start()
        poller.start(report_errors=False)
        closer.join()
        poller.join()

        events = sink.drain()
        assert [e for e in events if e.kind == EventKind.ERROR] == []
        assert [e.payload for e in events if e.kind == EventKind.POLLING_STATUS] in ([], [True, False])
        assert not poller.is_active
