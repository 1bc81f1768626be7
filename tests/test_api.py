import asyncio

import pytest
from fastapi.testclient import TestClient

import config
from app import app
from conftest import at, make_world
from database.sql_store import SqlAttendanceStore


def seed(database_url, **world_options):
    async def main():
        store = SqlAttendanceStore(database_url)
        await store.connect(5)
        try:
            return await make_world(store, **world_options)
        finally:
            await store.close()

    return asyncio.run(main())


@pytest.fixture()
def client(monkeypatch, database_url):
    monkeypatch.setattr(config, "STORE_BACKEND", "sql")
    monkeypatch.setattr(config, "DATABASE_URL", database_url)
    monkeypatch.setattr(config, "SCHEDULER_ENABLED", False)
    monkeypatch.setattr(config, "TIMEZONE", "UTC")
    with TestClient(app) as test_client:
        yield test_client


def post_scan(client, registration_no="2022/ICTS/01", timestamp=None, key="dev-key"):
    headers = {"X-Device-Key": key} if key else {}
    return client.post(
        "/api/scans",
        json={"registrationNo": registration_no, "timestamp": timestamp or at("09:05")},
        headers=headers,
    )


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["dashboards"] == 0


def test_scan_requires_device_key(client):
    response = post_scan(client, key=None)

    assert response.status_code == 401
    assert response.json() == {"success": False, "code": "invalid_device", "message": "Device key required"}


def test_scan_rejects_unknown_device_key(client):
    response = post_scan(client, key="wrong")

    assert response.status_code == 401
    assert response.json()["message"] == "Invalid device key"


def test_scan_requires_registration_number(client):
    response = client.post("/api/scans", json={"timestamp": at("09:05")}, headers={"X-Device-Key": "dev-key"})

    assert response.status_code == 422


def test_scan_is_recorded(client, database_url):
    world = seed(database_url)

    response = post_scan(client)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["status"] == "present"
    assert body["data"]["duplicate"] is False
    assert body["data"]["session"]["id"] == world.session.id
    assert body["data"]["student"]["registrationNo"] == "2022/ICTS/01"
    assert body["data"]["message"] == "Allowed! ICT2113 (Y2S1) - On Time"

    again = post_scan(client, timestamp=at("09:20")).json()
    assert again["data"]["duplicate"] is True
    assert again["data"]["message"] == "Already marked present"


def test_scan_errors_map_to_status_codes(client, database_url):
    seed(database_url)

    unknown = post_scan(client, registration_no="2099/XXX/99")
    assert unknown.status_code == 404
    assert unknown.json()["code"] == "student_not_found"

    ended = post_scan(client, timestamp=at("10:30"))
    assert ended.status_code == 409
    assert ended.json()["code"] == "session_ended"

    garbage = post_scan(client, timestamp="not-a-time")
    assert garbage.status_code == 400
    assert garbage.json()["code"] == "invalid_scan"


def test_dashboard_receives_scan_events(client, database_url):
    seed(database_url)

    with client.websocket_connect("/ws") as websocket:
        assert websocket.receive_json()["type"] == "connected"

        post_scan(client)
        event = websocket.receive_json()

        assert event["type"] == "scan.ingested"
        assert event["payload"]["registrationNo"] == "2022/ICTS/01"
        assert event["payload"]["courseCode"] == "ICT2113"
        assert event["payload"]["status"] == "present"

        post_scan(client, registration_no="2099/XXX/99")
        error = websocket.receive_json()

        assert error["type"] == "scan.error"
        assert error["payload"]["registrationNo"] == "2099/XXX/99"


def test_session_attendance_and_correction(client, database_url):
    world = seed(database_url)
    post_scan(client)

    listing = client.get(f"/api/sessions/{world.session.id}/attendance")
    assert listing.status_code == 200
    records = listing.json()["data"]["records"]
    assert [r["status"] for r in records] == ["present"]

    patched = client.patch(
        f"/api/sessions/{world.session.id}/attendance/{world.student.id}",
        json={"status": "late", "notes": "badge scanned after roll call"},
    )
    assert patched.status_code == 200
    assert patched.json()["data"]["status"] == "late"

    invalid = client.patch(
        f"/api/sessions/{world.session.id}/attendance/{world.student.id}",
        json={"status": "sick"},
    )
    assert invalid.status_code == 400

    missing = client.get("/api/sessions/999/attendance")
    assert missing.status_code == 404
    assert missing.json()["code"] == "session_not_found"


def test_scheduler_tick_closes_past_sessions(client, database_url):
    world = seed(database_url, date="2020-01-01")

    response = client.post("/api/scheduler/tick")

    assert response.status_code == 200
    assert response.json()["data"]["closed"] == [world.session.id]
