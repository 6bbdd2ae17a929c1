"""
HTTP API tests: run the FastAPI app in-process over httpx's ASGI transport with
the collection client pointed at a fresh in-memory database.
"""
import json
from datetime import datetime, timezone

import aiosqlite
import httpx
import pytest

from krysselista import config
from krysselista.client import SERVER_TIMESTAMP
from krysselista.db.collections import SqliteCollectionClient
from krysselista.db.database import init_schema
from krysselista.db.models import BROADCAST, DIRECT, GUARDIAN, STAFF, ChangeEvent, Viewer
from krysselista.errors import PersistenceError
from krysselista.main import _event_data, app, get_client

STAFF_HEADERS = {"X-Viewer-Id": "staff-1", "X-Viewer-Role": "staff", "X-Viewer-Name": "Kari"}
ANNE_HEADERS = {"X-Viewer-Id": "anne", "X-Viewer-Role": "guardian", "X-Viewer-Name": "Anne"}


class FailingAppendClient(SqliteCollectionClient):
    async def append(self, collection, record, record_id=None):
        raise PersistenceError("store unavailable", collection=collection)


async def _make_client(cls=SqliteCollectionClient) -> SqliteCollectionClient:
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await init_schema(db)
    client = cls(db, poll_interval=0.01)
    for sid, name, dept, guardians in (
        ("ola", "Ola", "Storbarna", ["anne"]),
        ("per", "Per", "Småbarna", ["carl"]),
    ):
        await SqliteCollectionClient.append(client, "children", {
            "name": name, "department": dept, "guardianIds": guardians, "checkedIn": False,
        }, record_id=sid)
    return client


def _http() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health():
    async with _http() as http:
        resp = await http.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_staff_thread_list_and_message_flow():
    client = await _make_client()
    app.dependency_overrides[get_client] = lambda: client
    try:
        async with _http() as http:
            resp = await http.get("/api/threads", headers=STAFF_HEADERS)
            assert resp.status_code == 200
            assert [(t["type"], t["key"]) for t in resp.json()] == [
                (BROADCAST, "Småbarna"), (BROADCAST, "Mellombarna"), (BROADCAST, "Storbarna"),
            ]

            resp = await http.post("/api/threads/direct/ola/messages", json={"body": "Ola sov godt"},
                                   headers=STAFF_HEADERS)
            assert resp.status_code == 201
            mid = resp.json()["id"]

            resp = await http.get("/api/threads", headers=ANNE_HEADERS)
            threads = resp.json()
            assert [(t["type"], t["key"]) for t in threads] == [(DIRECT, "ola")]
            assert threads[0]["unread_count"] == 1
            assert threads[0]["last_message"]["id"] == mid

            resp = await http.post("/api/threads/direct/ola/read", headers=ANNE_HEADERS)
            assert resp.json() == {"marked": [mid], "failed": []}

            resp = await http.get("/api/threads/direct/ola/messages", headers=ANNE_HEADERS)
            assert "anne" in resp.json()[0]["read_by"]

            resp = await http.get("/api/threads", params={"q": "småbarna"}, headers=STAFF_HEADERS)
            assert [t["key"] for t in resp.json()] == ["Småbarna"]
    finally:
        app.dependency_overrides.clear()
        await client.db.close()


@pytest.mark.asyncio
async def test_error_mapping():
    client = await _make_client()
    app.dependency_overrides[get_client] = lambda: client
    try:
        async with _http() as http:
            resp = await http.post("/api/threads/broadcast/Storbarna/messages", json={"body": "hei"},
                                   headers=ANNE_HEADERS)
            assert resp.status_code == 403

            resp = await http.get("/api/threads/direct/per/messages", headers=ANNE_HEADERS)
            assert resp.status_code == 403

            resp = await http.post("/api/threads/direct/ola/messages", json={"body": "   "},
                                   headers=STAFF_HEADERS)
            assert resp.status_code == 422

            resp = await http.get("/api/threads/direct/ghost/messages", headers=STAFF_HEADERS)
            assert resp.status_code == 422

            resp = await http.get("/api/threads", headers={"X-Viewer-Id": "x", "X-Viewer-Role": "admin"})
            assert resp.status_code == 403

            resp = await http.get("/api/threads")
            assert resp.status_code == 422
        assert await client.snapshot("messages") == []
    finally:
        app.dependency_overrides.clear()
        await client.db.close()


@pytest.mark.asyncio
async def test_send_failure_returns_503_with_body():
    client = await _make_client(FailingAppendClient)
    app.dependency_overrides[get_client] = lambda: client
    try:
        async with _http() as http:
            resp = await http.post("/api/threads/direct/ola/messages", json={"body": "Husk matpakke"},
                                   headers=STAFF_HEADERS)
        assert resp.status_code == 503
        assert resp.json()["body"] == "Husk matpakke"
    finally:
        app.dependency_overrides.clear()
        await client.db.close()


@pytest.mark.asyncio
async def test_attendance_endpoints():
    client = await _make_client()
    app.dependency_overrides[get_client] = lambda: client
    try:
        async with _http() as http:
            resp = await http.post("/api/subjects/ola/attendance", json={"action": "check-in"},
                                   headers=ANNE_HEADERS)
            assert resp.status_code == 200
            data = resp.json()
            assert data["changed"] is True
            assert data["subject"]["checked_in"] is True
            assert data["event"]["performed_by_label"] == "Anne"

            resp = await http.post("/api/subjects/ola/attendance", json={"action": "check-in"},
                                   headers=STAFF_HEADERS)
            assert resp.json()["changed"] is False

            resp = await http.post("/api/subjects/ola/attendance", json={"action": "check-out"},
                                   headers=STAFF_HEADERS)
            assert resp.json()["changed"] is True
            await http.post("/api/subjects/ola/attendance", json={"action": "check-in"}, headers=STAFF_HEADERS)

            resp = await http.get("/api/subjects/ola/attendance", headers=ANNE_HEADERS)
            assert [e["action"] for e in resp.json()["events"]] == ["check-in", "check-out"]
            resp = await http.get("/api/subjects/ola/attendance", params={"expanded": True}, headers=ANNE_HEADERS)
            assert len(resp.json()["events"]) == 3

            resp = await http.get("/api/subjects/per/attendance", headers=ANNE_HEADERS)
            assert resp.status_code == 403
            resp = await http.post("/api/subjects/per/attendance", json={"action": "check-in"},
                                   headers=ANNE_HEADERS)
            assert resp.status_code == 403
            resp = await http.post("/api/subjects/ola/attendance", json={"action": "teleport"},
                                   headers=STAFF_HEADERS)
            assert resp.status_code == 422

            resp = await http.get("/api/attendance/summary", headers=STAFF_HEADERS)
            assert resp.json() == {"checked_in": 1, "checked_out": 1, "total": 2}
    finally:
        app.dependency_overrides.clear()
        await client.db.close()


@pytest.mark.asyncio
async def test_guardian_sees_broadcast_only_for_own_department():
    client = await _make_client()
    app.dependency_overrides[get_client] = lambda: client
    try:
        for dept in ("Storbarna", "Småbarna"):
            await client.append("messages", {
                "threadType": BROADCAST, "department": dept, "senderId": "staff-1", "senderName": "Kari",
                "senderRole": STAFF, "body": f"Info til {dept}", "sentAt": SERVER_TIMESTAMP, "readBy": ["staff-1"],
            })
        async with _http() as http:
            resp = await http.get("/api/threads", headers=ANNE_HEADERS)
        assert [(t["type"], t["key"]) for t in resp.json()] == [(BROADCAST, "Storbarna")]
    finally:
        app.dependency_overrides.clear()
        await client.db.close()


@pytest.mark.asyncio
async def test_conversation_candidates_staff_only():
    client = await _make_client()
    app.dependency_overrides[get_client] = lambda: client
    try:
        async with _http() as http:
            resp = await http.get("/api/conversation-candidates", headers=STAFF_HEADERS)
            assert [g["department"] for g in resp.json()] == ["Småbarna", "Storbarna"]

            resp = await http.get("/api/conversation-candidates", params={"q": "ol"}, headers=STAFF_HEADERS)
            assert [[s["id"] for s in g["subjects"]] for g in resp.json()] == [["ola"]]

            resp = await http.get("/api/conversation-candidates", headers=ANNE_HEADERS)
            assert resp.status_code == 403
    finally:
        app.dependency_overrides.clear()
        await client.db.close()


@pytest.mark.asyncio
async def test_settings_round_trip(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "BASE_DIR", tmp_path)
    async with _http() as http:
        resp = await http.get("/api/settings", headers=STAFF_HEADERS)
        assert resp.status_code == 200
        assert "DEPARTMENTS" in resp.json()

        resp = await http.put("/api/settings", json={"READ_MARK_CONCURRENCY": 4}, headers=STAFF_HEADERS)
        assert resp.json()["restart_required"] is True

        resp = await http.put("/api/settings", json={}, headers=STAFF_HEADERS)
        assert resp.status_code == 422
        resp = await http.get("/api/settings", headers=ANNE_HEADERS)
        assert resp.status_code == 403

    saved = json.loads((tmp_path / "data" / "config.json").read_text(encoding="utf-8"))
    assert saved == {"READ_MARK_CONCURRENCY": 4}


@pytest.mark.asyncio
async def test_change_stream_requires_viewer():
    client = await _make_client()
    app.dependency_overrides[get_client] = lambda: client
    try:
        async with _http() as http:
            resp = await http.get("/events")
            assert resp.status_code == 422
            resp = await http.get("/events", headers={"X-Viewer-Id": "x", "X-Viewer-Role": "admin"})
            assert resp.status_code == 403
    finally:
        app.dependency_overrides.clear()
        await client.db.close()


def test_change_stream_hides_record_ids_from_guardians():
    ev = ChangeEvent(id=7, event_type="record.new", collection="messages", record_id="m1",
                     payload=json.dumps({"id": "m1", "seq": 3}),
                     created_at=datetime(2025, 3, 3, tzinfo=timezone.utc))
    staff = Viewer(id="staff-1", role=STAFF)
    guardian = Viewer(id="anne", role=GUARDIAN)
    assert _event_data(ev, staff)["payload"] == {"id": "m1", "seq": 3}
    assert _event_data(ev, guardian) == {"type": "record.new", "collection": "messages"}
