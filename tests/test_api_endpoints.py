"""Tests for FastAPI REST endpoints.

Tests verify:
- Connect / disconnect lifecycle
- Polling start/stop and status reporting
- Latest reading retrieval
- Error mapping (400, 503)
"""

import time
from typing import Callable

import pytest
from fastapi.testclient import TestClient

from api import main as api_module
from fakes.fake_device import FakeSensorSocket
from tcp_sensor_lib.errors import ConnectError
from tcp_sensor_lib.transport import Transport


def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    """Poll predicate until true or timeout."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch):
    """Reset global singletons and speed up session timing."""
    monkeypatch.setattr(api_module, "HANDSHAKE_TIMEOUT_S", 1.0)
    monkeypatch.setattr(api_module, "POLL_DELAY_S", 0.2)
    monkeypatch.setattr(api_module, "POLL_INTERVAL_S", 0.1)
    api_module._controller = None
    api_module._hub.clear_latest()
    yield
    if api_module._controller is not None:
        api_module._controller.disconnect()
        api_module._controller.wait_closed()
    api_module._controller = None
    api_module._hub.clear_latest()


@pytest.fixture
def client():
    """FastAPI test client."""
    return TestClient(api_module.app)


@pytest.fixture
def fake_device():
    """Create a FakeSensorSocket instance."""
    return FakeSensorSocket()


@pytest.fixture
def monkeypatch_transport(monkeypatch, fake_device):
    """Monkeypatch Transport.open to use FakeSensorSocket."""
    def mock_open(host: str, port: int, timeout_s: float):
        return Transport(fake_device, peer=f"{host}:{port}")

    monkeypatch.setattr(Transport, "open", mock_open)


def _status(client) -> dict:
    response = client.get("/status")
    assert response.status_code == 200
    return response.json()


# =============================================================================
# Health
# =============================================================================

def test_health(client):
    """Test health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "online"
    assert data["version"] == api_module.API_VERSION


def test_version(client):
    """Test version endpoint."""
    response = client.get("/version")
    assert response.status_code == 200
    assert response.json()["api"] == api_module.API_VERSION


# =============================================================================
# Lifecycle
# =============================================================================

def test_status_disconnected(client):
    """Test status before any connect."""
    data = _status(client)

    assert data["connected"] is False
    assert data["polling"] is False
    assert data["state"] == "disconnected"
    assert data["host"] == api_module.SENSOR_HOST
    assert data["port"] == api_module.SENSOR_PORT


def test_connect_success(client, monkeypatch_transport):
    """Test connect returns immediately and the session opens."""
    response = client.post("/connect")
    assert response.status_code == 200
    assert response.json() == {"status": "connecting"}

    assert wait_until(lambda: _status(client)["connected"])


def test_connect_with_host_and_port(client, monkeypatch_transport):
    """Test query parameters override the configured endpoint."""
    response = client.post("/connect", params={"host": "10.0.0.5", "port": 9000})
    assert response.status_code == 200

    data = _status(client)
    assert data["host"] == "10.0.0.5"
    assert data["port"] == 9000


def test_connect_invalid_port(client, monkeypatch_transport):
    """Test an out-of-range port is rejected."""
    response = client.post("/connect", params={"port": 70000})
    assert response.status_code == 400
    assert "port" in response.json()["detail"]


def test_connect_twice_fails(client, monkeypatch_transport):
    """Test second connect while live returns 400."""
    client.post("/connect")
    assert wait_until(lambda: _status(client)["connected"])

    response = client.post("/connect")
    assert response.status_code == 400
    assert "Already connected" in response.json()["detail"]


def test_connect_failure_reports_disconnected(client, monkeypatch):
    """Test an unreachable sensor ends up disconnected."""
    def refuse(host: str, port: int, timeout_s: float):
        raise ConnectError(f"Failed to connect to {host}:{port}: Connection refused")

    monkeypatch.setattr(Transport, "open", refuse)

    response = client.post("/connect")
    assert response.status_code == 200
    assert wait_until(lambda: not api_module._controller.has_live_session())
    assert _status(client)["connected"] is False

    # A new attempt is allowed once the failed session is finished
    assert client.post("/connect").status_code == 200


def test_reconnect_drains_previous_controller(client, monkeypatch):
    """Test a new connect waits for the finished session's threads first."""
    def refuse(host: str, port: int, timeout_s: float):
        raise ConnectError(f"Failed to connect to {host}:{port}: Connection refused")

    monkeypatch.setattr(Transport, "open", refuse)
    client.post("/connect")
    previous = api_module._controller
    assert wait_until(lambda: not previous.has_live_session())

    drained = []
    monkeypatch.setattr(previous, "wait_closed", lambda: drained.append(True))

    assert client.post("/connect").status_code == 200
    assert drained == [True]
    assert api_module._controller is not previous


def test_disconnect_success(client, monkeypatch_transport, fake_device):
    """Test disconnect closes the session."""
    client.post("/connect")
    assert wait_until(lambda: _status(client)["connected"])

    response = client.post("/disconnect")
    assert response.status_code == 200
    assert response.json() == {"status": "disconnected"}

    assert _status(client)["connected"] is False
    assert not fake_device.is_open


def test_disconnect_when_not_connected(client):
    """Test disconnect without a session is harmless."""
    response = client.post("/disconnect")
    assert response.status_code == 200


# =============================================================================
# Polling
# =============================================================================

def test_polling_start_not_connected(client):
    """Test polling start without a session maps to 503."""
    response = client.post("/polling/start")
    assert response.status_code == 503
    assert "Not connected" in response.json()["detail"]


def test_polling_starts_after_handshake(client, monkeypatch_transport):
    """Test polling begins on its own after the settling delay."""
    client.post("/connect")

    assert wait_until(lambda: _status(client)["polling"])
    assert _status(client)["state"] == "polling"


def test_polling_stop_and_start(client, monkeypatch_transport):
    """Test manual polling control."""
    client.post("/connect")
    assert wait_until(lambda: _status(client)["polling"])

    response = client.post("/polling/stop")
    assert response.status_code == 200
    assert response.json() == {"status": "stopped"}
    assert _status(client)["polling"] is False
    assert _status(client)["connected"] is True

    response = client.post("/polling/start")
    assert response.status_code == 200
    assert response.json() == {"status": "polling"}
    assert _status(client)["polling"] is True


def test_polling_start_while_polling(client, monkeypatch_transport):
    """Test a second start reports that polling was already running."""
    client.post("/connect")
    assert wait_until(lambda: _status(client)["polling"])

    response = client.post("/polling/start")
    assert response.status_code == 200
    assert response.json() == {"status": "already_polling"}
    assert _status(client)["polling"] is True


def test_polling_stop_when_idle(client):
    """Test polling stop without a session is a no-op."""
    response = client.post("/polling/stop")
    assert response.status_code == 200


# =============================================================================
# Latest reading
# =============================================================================

def test_latest_no_data(client):
    """Test latest before any reading."""
    response = client.get("/latest")
    assert response.status_code == 200
    assert response.json() == {}


def test_latest_with_data(client, monkeypatch_transport):
    """Test latest returns the most recent reading."""
    client.post("/connect")

    assert wait_until(lambda: client.get("/latest").json() != {})
    data = client.get("/latest").json()

    assert data["distance"] == 1.5
    assert data["temperature"] == 20.0
    assert data["humidity"] == 55.0
    assert data["illuminance"] == 300.0
    assert data["color_temp"] == 4500.0
    assert data["battery"] == 80.0
    assert "ts" in data
