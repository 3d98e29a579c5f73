"""Test the HTTP and WebSocket surface against the in-memory store."""
import pytest
from fastapi.testclient import TestClient

from database import MemoryStore
from main import app

CHARGER = {
    "location": {"latitude": 37.77, "longitude": -122.42},
    "address": "1 Market St",
    "type": "Level 2",
    "connector_type": "CCS",
    "price_per_hour": 3.0,
    "credits_per_hour": 2,
    "max_speed": 7.2,
}


@pytest.fixture
def client():
    app.state.store = MemoryStore()
    app.state.debit_guards = None
    with TestClient(app) as client:
        yield client


def signup(client, email):
    response = client.post("/auth/signup", json={"email": email, "password": "secret1"})
    assert response.status_code == 200
    body = response.json()
    return body["user"]["id"], {"Authorization": f"Bearer {body['token']}"}


@pytest.fixture
def host(client):
    return signup(client, "host@example.com")


@pytest.fixture
def driver(client):
    user_id, headers = signup(client, "driver@example.com")
    assert client.post("/credits/purchase", json={"package_id": "starter"}, headers=headers).status_code == 200
    return user_id, headers


@pytest.fixture
def charger_id(client, host):
    response = client.post("/chargers", json=CHARGER, headers=host[1])
    assert response.status_code == 200
    return response.json()["id"]


@pytest.fixture
def booking_id(client, driver, charger_id):
    response = client.post("/bookings", json={"charger_id": charger_id, "estimated_duration": 7200},
                           headers=driver[1])
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "pending"
    assert body["credits_used"] == 4
    return body["id"]


def credits(client, headers):
    return client.get("/me", headers=headers).json()["green_credits"]


def test_root_and_status(client):
    assert client.get("/").json() == {"message": "Plug-In API running"}
    assert client.get("/test").json()["backend"] == "✅ Running"


def test_status_reports_availability_timezone(client, monkeypatch):
    assert client.get("/test").json()["availability_timezone"] == "UTC"
    monkeypatch.delenv("PLUGIN_TIMEZONE")
    assert client.get("/test").json()["availability_timezone"] == "UTC (PLUGIN_TIMEZONE not set)"


def test_auth(client):
    _user_id, headers = signup(client, "a@example.com")
    assert client.get("/me").status_code == 401
    assert client.get("/me", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get("/me", headers=headers).json()["email"] == "a@example.com"

    login = client.post("/auth/login", json={"email": "a@example.com", "password": "secret1"})
    assert login.status_code == 200
    assert client.post("/auth/login", json={"email": "a@example.com", "password": "wrong"}).status_code == 401
    assert client.post("/auth/signup", json={"email": "a@example.com", "password": "secret1"}).status_code == 400


def test_credit_packages_and_purchase(client, driver):
    packages = client.get("/credits/packages").json()
    assert [p["total_credits"] for p in packages] == [10, 30, 65, 135]
    assert credits(client, driver[1]) == 10
    assert client.post("/credits/purchase", json={"package_id": "nope"}, headers=driver[1]).status_code == 400


def test_registering_a_charger_makes_a_host(client, host, charger_id):
    me = client.get("/me", headers=host[1]).json()
    assert me["roles"] == ["driver", "host"]
    assert [c["id"] for c in client.get("/chargers/mine", headers=host[1]).json()] == [charger_id]
    # Hosts do not see their own chargers in the driver list.
    assert client.get("/chargers", headers=host[1]).json() == []
    assert [c["id"] for c in client.get("/chargers").json()] == [charger_id]
    assert client.get("/chargers", params={"charger_type": "DC Fast Charge"}).json() == []


def test_only_owner_edits_charger(client, driver, charger_id):
    assert client.post(f"/chargers/{charger_id}/toggle", headers=driver[1]).status_code == 403
    assert client.delete(f"/chargers/{charger_id}", headers=driver[1]).status_code == 403


def test_accept_settles_through_booking_socket(client, host, driver, booking_id):
    token = driver[1]["Authorization"].split()[1]
    with client.websocket_connect(f"/ws/bookings/{booking_id}?token={token}") as ws:
        assert ws.receive_json()["booking"]["status"] == "pending"

        response = client.post(f"/bookings/{booking_id}/accept", headers=host[1])
        assert response.status_code == 200

        message = ws.receive_json()
        assert message["booking"]["status"] == "accepted"
        assert message["notice"] is None

    assert credits(client, host[1]) == 4
    assert credits(client, driver[1]) == 6


def test_reconnecting_after_restart_does_not_debit_again(client, host, driver, booking_id):
    token = driver[1]["Authorization"].split()[1]
    client.post(f"/bookings/{booking_id}/accept", headers=host[1])
    client.post(f"/bookings/{booking_id}/start", headers=host[1])

    for _ in range(2):
        app.state.debit_guards = None
        with client.websocket_connect(f"/ws/bookings/{booking_id}?token={token}") as ws:
            assert ws.receive_json()["booking"]["status"] == "active"

    assert credits(client, host[1]) == 4
    assert credits(client, driver[1]) == 6


def test_decline_twice_conflicts(client, host, driver, booking_id):
    assert client.post(f"/bookings/{booking_id}/decline", headers=driver[1]).status_code == 403
    assert client.post(f"/bookings/{booking_id}/decline", headers=host[1]).status_code == 200
    assert client.post(f"/bookings/{booking_id}/decline", headers=host[1]).status_code == 409
    assert credits(client, host[1]) == 0
    assert credits(client, driver[1]) == 10


def test_booking_lists(client, host, driver, booking_id):
    assert [b["id"] for b in client.get("/bookings", headers=driver[1]).json()] == [booking_id]
    assert [b["id"] for b in client.get("/bookings", params={"role": "host"}, headers=host[1]).json()] == [booking_id]
    assert client.get(f"/bookings/{booking_id}", headers=driver[1]).status_code == 200

    assert client.get("/bookings/history", headers=driver[1]).json() == []
    client.post(f"/bookings/{booking_id}/decline", headers=host[1])
    assert [b["status"] for b in client.get("/bookings/history", headers=driver[1]).json()] == ["declined"]


def test_booking_socket_rejects_strangers(client, booking_id):
    _user_id, headers = signup(client, "stranger@example.com")
    token = headers["Authorization"].split()[1]
    with client.websocket_connect(f"/ws/bookings/{booking_id}?token={token}") as ws:
        message = ws.receive()
        assert message["type"] == "websocket.close"
        assert message["code"] == 4403
