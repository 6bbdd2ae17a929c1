"""
Record-level CRUD for the Krysselista document store.
All functions are async and receive the aiosqlite connection from the caller.

Records are JSON documents addressed by (collection, id). Every write bumps the
bus-wide sequence counter and emits a change event so subscriptions can
re-deliver a fresh snapshot. The record row and its event commit together.
"""
import json
import uuid
import logging
from datetime import datetime, timezone, timedelta
from typing import Any, Optional

import aiosqlite

from krysselista.client import SERVER_TIMESTAMP, ArrayUnion
from krysselista.db.models import ChangeEvent

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(data: dict) -> str:
    return json.dumps(data, default=_json_default, ensure_ascii=False)


def _resolve_fields(fields: dict, current: dict, now: str) -> dict:
    """Apply write sentinels against the stored document and return the merged document."""
    merged = dict(current)
    for key, value in fields.items():
        if value is SERVER_TIMESTAMP:
            merged[key] = now
        elif isinstance(value, ArrayUnion):
            existing = list(merged.get(key) or [])
            for item in value.values:
                if item not in existing:
                    existing.append(item)
            merged[key] = existing
        else:
            merged[key] = value
    return merged


# ─────────────────────────────────────────────
# Sequence counter (global, bus-wide)
# ─────────────────────────────────────────────

async def next_seq(db: aiosqlite.Connection) -> int:
    """Increment and return the next global sequence number (uncommitted)."""
    async with db.execute(
        "UPDATE seq_counter SET val = val + 1 WHERE id = 1 RETURNING val"
    ) as cur:
        row = await cur.fetchone()
    return row["val"]


# ─────────────────────────────────────────────
# Record CRUD
# ─────────────────────────────────────────────

async def record_append(
    db: aiosqlite.Connection,
    collection: str,
    data: dict,
    record_id: Optional[str] = None,
) -> dict:
    rid = record_id or str(uuid.uuid4())
    now = _now()
    doc = _resolve_fields(data, {}, now)
    doc.pop("id", None)
    doc.pop("seq", None)
    seq = await next_seq(db)
    await db.execute(
        "INSERT INTO records (collection, id, data, seq, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
        (collection, rid, _dumps(doc), seq, now, now),
    )
    await _emit_event(db, "record.new", collection, rid, {"id": rid, "seq": seq})
    await db.commit()
    logger.debug(f"Record appended: {collection}/{rid} seq={seq}")
    return {**doc, "id": rid, "seq": seq}


async def record_update(
    db: aiosqlite.Connection,
    collection: str,
    record_id: str,
    fields: dict,
) -> bool:
    """Merge `fields` into a stored record. Returns False if the record does not exist.

    This is a read-modify-write; callers sharing one connection must serialize
    calls for the same record (see SqliteCollectionClient).
    """
    async with db.execute(
        "SELECT data FROM records WHERE collection = ? AND id = ?", (collection, record_id)
    ) as cur:
        row = await cur.fetchone()
    if row is None:
        return False

    now = _now()
    merged = _resolve_fields(fields, json.loads(row["data"]), now)
    merged.pop("id", None)
    merged.pop("seq", None)
    await db.execute(
        "UPDATE records SET data = ?, updated_at = ? WHERE collection = ? AND id = ?",
        (_dumps(merged), now, collection, record_id),
    )
    await _emit_event(db, "record.update", collection, record_id, {"id": record_id, "fields": sorted(fields)})
    await db.commit()
    return True


async def record_get(db: aiosqlite.Connection, collection: str, record_id: str) -> Optional[dict]:
    async with db.execute(
        "SELECT * FROM records WHERE collection = ? AND id = ?", (collection, record_id)
    ) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_record(row)


async def record_list(db: aiosqlite.Connection, collection: str) -> list[dict]:
    async with db.execute(
        "SELECT * FROM records WHERE collection = ? ORDER BY seq ASC", (collection,)
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_record(r) for r in rows]


def _row_to_record(row: aiosqlite.Row) -> dict:
    doc = json.loads(row["data"])
    doc["id"] = row["id"]
    doc["seq"] = row["seq"]
    return doc


# ─────────────────────────────────────────────
# Event fan-out (subscriptions + SSE)
# ─────────────────────────────────────────────

async def _emit_event(
    db: aiosqlite.Connection,
    event_type: str,
    collection: str,
    record_id: Optional[str],
    payload: dict,
) -> None:
    """Insert a change event inside the caller's transaction (no commit)."""
    await db.execute(
        "INSERT INTO events (event_type, collection, record_id, payload, created_at) VALUES (?, ?, ?, ?, ?)",
        (event_type, collection, record_id, json.dumps(payload), _now()),
    )


async def latest_event_id(db: aiosqlite.Connection) -> int:
    async with db.execute("SELECT MAX(id) AS max_id FROM events") as cur:
        row = await cur.fetchone()
    return row["max_id"] or 0


async def events_since(
    db: aiosqlite.Connection,
    after_id: int = 0,
    limit: int = 50,
    collection: Optional[str] = None,
) -> list[ChangeEvent]:
    """Fetch events newer than `after_id`, optionally for one collection."""
    if collection is None:
        query = "SELECT * FROM events WHERE id > ? ORDER BY id ASC LIMIT ?"
        params: tuple = (after_id, limit)
    else:
        query = "SELECT * FROM events WHERE id > ? AND collection = ? ORDER BY id ASC LIMIT ?"
        params = (after_id, collection, limit)
    async with db.execute(query, params) as cur:
        rows = await cur.fetchall()
    return [ChangeEvent(
        id=row["id"],
        event_type=row["event_type"],
        collection=row["collection"],
        record_id=row["record_id"],
        payload=row["payload"],
        created_at=_parse_dt(row["created_at"]),
    ) for row in rows]


async def events_delete_old(db: aiosqlite.Connection, max_age_seconds: int = 600) -> int:
    """Prune events older than max_age_seconds to keep the table small."""
    cutoff = (datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)).isoformat()
    async with db.execute("DELETE FROM events WHERE created_at < ?", (cutoff,)) as cur:
        deleted = cur.rowcount
    await db.commit()
    if deleted > 0:
        logger.debug(f"Pruned {deleted} old events.")
    return deleted
