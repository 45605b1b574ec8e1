import pytest
from fastapi.testclient import TestClient

from attsync.codec import CMD_GET_USERS
from attsync.server import create_app


@pytest.fixture
def client(ledger, network):
    return TestClient(create_app(ledger=ledger, transport=network.transport))


@pytest.fixture
def mapped(ledger):
    ledger.map_device_user(None, "101", "EMP-001")
    ledger.map_device_user(None, "102", "EMP-002")


def test_sync_device(client, terminal, mapped, ledger):
    r = client.post("/api/sync", json={"device_id": "gate-1", "ip_address": "10.0.0.5"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["records"] == 3
    assert body["deviceInfo"]["serial_number"] == terminal.serial
    assert body["result"]["duplicates"] == 0
    assert ledger.get_device("gate-1").host == "10.0.0.5"

    again = client.post("/api/sync", json={"device_id": "gate-1", "ip_address": "10.0.0.5"}).json()
    assert again["records"] == 0
    assert again["result"]["duplicates"] == 3


@pytest.mark.parametrize("payload", [
    {"device_id": "gate-1", "ip_address": "not-an-ip"},
    {"device_id": "", "ip_address": "10.0.0.5"},
    {"ip_address": "10.0.0.5"},
    {"device_id": "gate-1", "ip_address": "10.0.0.5", "port": 70000},
    {"device_id": "gate-1", "ip_address": "10.0.0.5", "timeout_ms": 0},
])
def test_sync_rejects_bad_input(client, payload):
    r = client.post("/api/sync", json=payload)
    assert r.status_code == 400
    assert r.json()["success"] is False
    assert r.json()["message"].startswith("Invalid request")


def test_sync_unreachable_device(client, network):
    r = client.post("/api/sync", json={"device_id": "gate-9", "ip_address": "10.0.0.99"})
    assert r.status_code == 500
    body = r.json()
    assert body["success"] is False
    assert body["failure"] == "DeviceUnreachable"
    assert "10.0.0.99" in body["message"]


def test_test_device(client, terminal, ledger):
    r = client.post("/api/test-device", json={"ip_address": "10.0.0.5"})
    assert r.status_code == 200
    assert r.json()["deviceInfo"]["user_count"] == 2
    assert terminal.open_sockets == 0
    assert ledger.list_devices() == []


def test_test_device_refused(client, terminal):
    terminal.refuse = True
    r = client.post("/api/test-device", json={"ip_address": "10.0.0.5"})
    assert r.status_code == 500
    assert r.json()["failure"] == "ConnectionRefused"


def test_sync_all_and_devices(client, network, terminal, mapped, ledger):
    ledger.register_device("gate-1", "10.0.0.5", 4370)
    ledger.register_device("gate-9", "10.0.0.99", 4370)

    body = client.post("/api/sync/all").json()
    assert body["success"] is False
    assert body["records"] == 3
    assert "gate-9" in body["message"]
    assert [r["success"] for r in body["results"]] == [True, False]

    devices = client.get("/api/devices").json()["devices"]
    assert [d["device_id"] for d in devices] == ["gate-1", "gate-9"]
    assert devices[0]["last_successful_sync"] is not None


def test_mappings(client, terminal, ledger):
    r = client.post("/api/mappings", json={"device_user_id": "101", "employee_id": "EMP-001",
                                           "device_id": "gate-1"})
    assert r.status_code == 200
    assert ledger.resolve_employee_by_device_user("gate-1", "101") == "EMP-001"
    assert client.post("/api/mappings", json={"device_user_id": "101"}).status_code == 400


def test_status_and_cancel(client):
    assert client.get("/api/status").json()["active_runs"] == 0
    assert client.post("/api/sync/cancel").json()["success"] is True


def test_logs_are_exposed(client, terminal, mapped):
    client.post("/api/sync", json={"device_id": "gate-1", "ip_address": "10.0.0.5"})
    body = client.get("/api/logs", params={"cat": "SYNC"}).json()
    assert body["total"] > 0
    assert body["logs"]
    assert all(entry["cat"] == "SYNC" for entry in body["logs"])


def test_cancel_stops_an_in_flight_sync(client, terminal, mapped, ledger):
    replies = []

    def cancel_from_dashboard(cmd, t):
        if cmd == CMD_GET_USERS:
            replies.append(client.post("/api/sync/cancel").json())
    terminal.on_command = cancel_from_dashboard

    r = client.post("/api/sync", json={"device_id": "gate-1", "ip_address": "10.0.0.5"})

    assert r.status_code == 500
    assert r.json()["failure"] == "Cancelled"
    assert replies[0]["message"] == "Cancellation sent to 1 run(s)"
    assert terminal.enabled
    assert terminal.open_sockets == 0
    assert ledger.count_events() == 0
    assert client.get("/api/status").json()["active_runs"] == 0
