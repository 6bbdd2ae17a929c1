"""
Unit tests for the aiosqlite-backed collection client: write sentinels,
error wrapping and full-snapshot subscriptions.
"""
import asyncio

import aiosqlite
import pytest

from krysselista.client import SERVER_TIMESTAMP, ArrayUnion
from krysselista.db import crud
from krysselista.db.collections import SqliteCollectionClient
from krysselista.db.database import init_schema
from krysselista.errors import PersistenceError


async def _make_client() -> SqliteCollectionClient:
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await init_schema(db)
    return SqliteCollectionClient(db, poll_interval=0.01)


@pytest.mark.asyncio
async def test_append_assigns_id_seq_and_server_timestamp():
    client = await _make_client()
    try:
        first = await client.append("messages", {"body": "a", "sentAt": SERVER_TIMESTAMP})
        second = await client.append("messages", {"body": "b", "sentAt": SERVER_TIMESTAMP})
        rec1 = await client.get("messages", first)
        rec2 = await client.get("messages", second)
        assert rec1["id"] == first
        assert isinstance(rec1["sentAt"], str) and rec1["sentAt"]
        assert rec2["seq"] > rec1["seq"]
    finally:
        await client.db.close()


@pytest.mark.asyncio
async def test_array_union_only_grows():
    client = await _make_client()
    try:
        mid = await client.append("messages", {"readBy": ["staff-1"]})
        await client.update_fields("messages", mid, {"readBy": ArrayUnion("anne")})
        await client.update_fields("messages", mid, {"readBy": ArrayUnion("anne", "bjorn")})
        rec = await client.get("messages", mid)
        assert rec["readBy"] == ["staff-1", "anne", "bjorn"]
    finally:
        await client.db.close()


@pytest.mark.asyncio
async def test_concurrent_unions_are_not_lost():
    client = await _make_client()
    try:
        mid = await client.append("messages", {"readBy": []})
        await asyncio.gather(*(
            client.update_fields("messages", mid, {"readBy": ArrayUnion(f"v{i}")}) for i in range(10)
        ))
        rec = await client.get("messages", mid)
        assert sorted(rec["readBy"]) == sorted(f"v{i}" for i in range(10))
    finally:
        await client.db.close()


@pytest.mark.asyncio
async def test_update_missing_record_raises_persistence_error():
    client = await _make_client()
    try:
        with pytest.raises(PersistenceError) as exc_info:
            await client.update_fields("children", "ghost", {"checkedIn": True})
        assert exc_info.value.collection == "children"
        assert exc_info.value.record_id == "ghost"
    finally:
        await client.db.close()


@pytest.mark.asyncio
async def test_duplicate_record_id_raises_persistence_error():
    client = await _make_client()
    try:
        await client.append("logs", {"action": "check-in"}, record_id="evt-1")
        with pytest.raises(PersistenceError):
            await client.append("logs", {"action": "check-in"}, record_id="evt-1")
        # connection is still usable afterwards
        assert await client.append("logs", {"action": "check-out"}, record_id="evt-2") == "evt-2"
    finally:
        await client.db.close()


@pytest.mark.asyncio
async def test_snapshot_predicate_filters():
    client = await _make_client()
    try:
        await client.append("children", {"name": "Ola", "guardianIds": ["anne"]}, record_id="ola")
        await client.append("children", {"name": "Per", "guardianIds": ["carl"]}, record_id="per")
        mine = await client.snapshot("children", lambda r: "anne" in r.get("guardianIds", []))
        assert [r["id"] for r in mine] == ["ola"]
    finally:
        await client.db.close()


@pytest.mark.asyncio
async def test_subscription_delivers_full_snapshots():
    client = await _make_client()
    try:
        await client.append("messages", {"body": "first"})
        sub = client.subscribe("messages")
        initial = await asyncio.wait_for(sub.__anext__(), 1)
        assert [r["body"] for r in initial] == ["first"]

        await client.append("messages", {"body": "second"})
        await client.append("children", {"name": "ignored"})
        nxt = await asyncio.wait_for(sub.__anext__(), 1)
        assert [r["body"] for r in nxt] == ["first", "second"]

        await sub.close()
        with pytest.raises(StopAsyncIteration):
            await sub.__anext__()
    finally:
        await client.db.close()


@pytest.mark.asyncio
async def test_subscription_ignores_other_collections():
    client = await _make_client()
    try:
        sub = client.subscribe("messages")
        await asyncio.wait_for(sub.__anext__(), 1)
        await client.append("children", {"name": "Ola"})
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(sub.__anext__(), 0.1)
        await sub.close()
    finally:
        await client.db.close()


@pytest.mark.asyncio
async def test_events_pruned_after_retention():
    client = await _make_client()
    try:
        await client.append("messages", {"body": "x"})
        await client.db.execute("UPDATE events SET created_at = '2000-01-01T00:00:00+00:00'")
        await client.db.commit()
        assert await client.prune_events(60) == 1
        assert await crud.events_since(client.db) == []
    finally:
        await client.db.close()


@pytest.mark.asyncio
async def test_failed_event_insert_rolls_back_the_write():
    client = await _make_client()
    try:
        mid = await client.append("messages", {"body": "før", "readBy": ["staff-1"]})
        await client.db.execute("DROP TABLE events")
        await client.db.commit()

        with pytest.raises(PersistenceError):
            await client.append("messages", {"body": "tapt"})
        with pytest.raises(PersistenceError):
            await client.update_fields("messages", mid, {"readBy": ArrayUnion("anne")})

        records = await client.snapshot("messages")
        assert [r["body"] for r in records] == ["før"]
        assert records[0]["readBy"] == ["staff-1"]
    finally:
        await client.db.close()
