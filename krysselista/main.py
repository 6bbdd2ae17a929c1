"""
Krysselista main entry point.

Starts a FastAPI HTTP server that:
  1. Exposes the derived thread list, compose, read marking and attendance at /api
  2. Streams collection change events at /events (SSE) so clients know when to re-fetch
  3. Prunes old change events in the background

Authentication is handled upstream; the caller identifies the viewer with the
X-Viewer-Id / X-Viewer-Role / X-Viewer-Name headers.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from krysselista import attendance, composer
from krysselista.config import (
    ACTIVITY_LOG_EXPANDED_LIMIT,
    ACTIVITY_LOG_LIMIT,
    APP_VERSION,
    DEPARTMENTS,
    EVENT_RETENTION_SECONDS,
    HOST,
    MESSAGES_COLLECTION,
    PORT,
    SUBJECTS_COLLECTION,
    get_config_dict,
    save_config_dict,
)
from krysselista.db import crud
from krysselista.db.collections import SqliteCollectionClient
from krysselista.db.database import close_db, get_db
from krysselista.db.models import (
    ROLES,
    AttendanceEvent,
    ChangeEvent,
    Message,
    Subject,
    Thread,
    Viewer,
    message_from_record,
    subject_from_record,
)
from krysselista.errors import AccessError, PersistenceError, SendError, ValidationError
from krysselista.read_tracker import mark_thread_read
from krysselista.session import translate_records
from krysselista.threads import (
    can_view_subject,
    conversation_candidates,
    derive_threads,
    filter_threads,
    last_activity,
    resolve_thread,
    visible_subjects,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("krysselista")

_client: SqliteCollectionClient | None = None


async def get_client() -> SqliteCollectionClient:
    """Shared collection client; one per process so writes serialize on one lock."""
    global _client
    if _client is None:
        _client = SqliteCollectionClient(await get_db())
    return _client


async def _prune_loop(interval: float = 60.0) -> None:
    while True:
        await asyncio.sleep(interval)
        client = await get_client()
        await client.prune_events(EVENT_RETENTION_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: initialize DB
    await get_client()
    pruner = asyncio.create_task(_prune_loop())
    logger.info(f"Krysselista running at http://{HOST}:{PORT}")
    yield
    # Shutdown: stop pruning, close DB
    global _client
    pruner.cancel()
    await asyncio.gather(pruner, return_exceptions=True)
    _client = None
    await close_db()


app = FastAPI(
    title="Krysselista",
    description="Daycare attendance and guardian/staff messaging.",
    version=APP_VERSION,
    lifespan=lifespan,
)


# ─────────────────────────────────────────────
# Error mapping
# ─────────────────────────────────────────────

@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(AccessError)
async def _access_error(request: Request, exc: AccessError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(PersistenceError)
async def _persistence_error(request: Request, exc: PersistenceError):
    content = {"detail": str(exc)}
    if isinstance(exc, SendError):
        content["body"] = exc.body
    return JSONResponse(status_code=503, content=content)


# ─────────────────────────────────────────────
# Viewer + state helpers
# ─────────────────────────────────────────────

def current_viewer(
    x_viewer_id: str = Header(...),
    x_viewer_role: str = Header(...),
    x_viewer_name: str = Header(""),
) -> Viewer:
    if x_viewer_role not in ROLES:
        raise AccessError(f"Unknown viewer role '{x_viewer_role}'", viewer_id=x_viewer_id)
    return Viewer(id=x_viewer_id, role=x_viewer_role, name=x_viewer_name)


async def _load_state(client: SqliteCollectionClient) -> tuple[list[Subject], list[Message]]:
    # full roster; derivation applies visibility per viewer
    subjects = translate_records(await client.snapshot(SUBJECTS_COLLECTION), subject_from_record)
    messages = translate_records(await client.snapshot(MESSAGES_COLLECTION), message_from_record)
    return subjects, messages


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def _message_to_dict(m: Message) -> dict:
    return {
        "id": m.id, "thread_type": m.thread_type, "subject_id": m.subject_id,
        "department": m.department, "sender_id": m.sender_id, "sender_name": m.sender_name,
        "sender_role": m.sender_role, "kind": m.kind, "body": m.body,
        "sent_at": _iso(m.sent_at), "read_by": sorted(m.read_by), "seq": m.seq,
    }


def _thread_to_dict(t: Thread) -> dict:
    last = t.last_message
    return {
        "type": t.thread_type, "key": t.key[1], "name": t.display_name,
        "department": t.department, "unread_count": t.unread_count,
        "message_count": t.message_count, "last_activity": _iso(last_activity(t)),
        "last_message": _message_to_dict(last) if last is not None else None,
    }


def _subject_to_dict(s: Subject) -> dict:
    return {
        "id": s.id, "name": s.name, "department": s.department, "checked_in": s.checked_in,
        "last_check_in": _iso(s.last_check_in), "last_check_out": _iso(s.last_check_out),
    }


def _event_to_dict(e: AttendanceEvent) -> dict:
    return {
        "id": e.id, "subject_id": e.subject_id, "action": e.action,
        "performed_by": e.performed_by, "performed_by_label": e.performed_by_label,
        "timestamp": e.timestamp.isoformat(), "repaired": e.repaired,
    }


# ─────────────────────────────────────────────
# Public SSE change stream
# ─────────────────────────────────────────────

def _event_data(ev: ChangeEvent, viewer: Viewer) -> dict:
    """SSE payload for one change. Guardians learn only that a collection changed."""
    data = {"type": ev.event_type, "collection": ev.collection}
    if viewer.is_staff:
        data["payload"] = json.loads(ev.payload)
    return data


@app.get("/events")
async def change_stream(
    request: Request,
    viewer: Viewer = Depends(current_viewer),
    client: SqliteCollectionClient = Depends(get_client),
):
    """
    SSE stream of collection changes for an identified viewer. Staff payloads
    carry record ids; clients re-fetch the thread list to see the new state.
    """
    async def event_generator():
        last_id = await crud.latest_event_id(client.db)
        while True:
            if await request.is_disconnected():
                break
            events = await crud.events_since(client.db, after_id=last_id)
            for ev in events:
                last_id = ev.id
                data = json.dumps(_event_data(ev, viewer))
                yield f"id: {ev.id}\nevent: {ev.event_type}\ndata: {data}\n\n"
            await asyncio.sleep(client.poll_interval)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


# ─────────────────────────────────────────────
# Threads
# ─────────────────────────────────────────────

class MessageCreate(BaseModel):
    body: str


@app.get("/api/threads")
async def api_threads(
    q: str = "",
    viewer: Viewer = Depends(current_viewer),
    client: SqliteCollectionClient = Depends(get_client),
):
    subjects, messages = await _load_state(client)
    threads = filter_threads(derive_threads(viewer, subjects, messages, DEPARTMENTS), q)
    return [_thread_to_dict(t) for t in threads]


@app.get("/api/threads/{thread_type}/{ref}/messages")
async def api_thread_messages(
    thread_type: str,
    ref: str,
    viewer: Viewer = Depends(current_viewer),
    client: SqliteCollectionClient = Depends(get_client),
):
    subjects, messages = await _load_state(client)
    thread = resolve_thread(viewer, (thread_type, ref), subjects, messages, DEPARTMENTS)
    return [_message_to_dict(m) for m in thread.messages]


@app.post("/api/threads/{thread_type}/{ref}/messages", status_code=201)
async def api_post_message(
    thread_type: str,
    ref: str,
    body: MessageCreate,
    viewer: Viewer = Depends(current_viewer),
    client: SqliteCollectionClient = Depends(get_client),
):
    subjects, messages = await _load_state(client)
    thread = resolve_thread(viewer, (thread_type, ref), subjects, messages, DEPARTMENTS)
    mid = await composer.send_message(client, viewer, thread, body.body)
    return {"id": mid}


@app.post("/api/threads/{thread_type}/{ref}/read")
async def api_mark_read(
    thread_type: str,
    ref: str,
    viewer: Viewer = Depends(current_viewer),
    client: SqliteCollectionClient = Depends(get_client),
):
    subjects, messages = await _load_state(client)
    thread = resolve_thread(viewer, (thread_type, ref), subjects, messages, DEPARTMENTS)
    result = await mark_thread_read(client, thread, viewer.id)
    return {"marked": result.marked, "failed": result.failed}


# ─────────────────────────────────────────────
# Attendance
# ─────────────────────────────────────────────

class AttendanceChange(BaseModel):
    action: str


@app.get("/api/attendance/summary")
async def api_attendance_summary(
    viewer: Viewer = Depends(current_viewer),
    client: SqliteCollectionClient = Depends(get_client),
):
    subjects, _ = await _load_state(client)
    return attendance.attendance_summary(visible_subjects(viewer, subjects))


@app.get("/api/subjects/{subject_id}/attendance")
async def api_attendance_history(
    subject_id: str,
    expanded: bool = False,
    viewer: Viewer = Depends(current_viewer),
    client: SqliteCollectionClient = Depends(get_client),
):
    subject = await attendance.load_subject(client, subject_id)
    if not can_view_subject(viewer, subject):
        raise AccessError(f"Viewer may not view subject '{subject_id}'", viewer_id=viewer.id)
    limit = ACTIVITY_LOG_EXPANDED_LIMIT if expanded else ACTIVITY_LOG_LIMIT
    events = await attendance.attendance_history(client, subject_id, limit=limit)
    return {"subject": _subject_to_dict(subject), "events": [_event_to_dict(e) for e in events]}


@app.post("/api/subjects/{subject_id}/attendance")
async def api_attendance_transition(
    subject_id: str,
    body: AttendanceChange,
    viewer: Viewer = Depends(current_viewer),
    client: SqliteCollectionClient = Depends(get_client),
):
    result = await attendance.transition_by_id(client, subject_id, body.action, viewer)
    return {
        "subject": _subject_to_dict(result.subject),
        "event": _event_to_dict(result.event) if result.event is not None else None,
        "changed": result.changed,
        "repaired": result.repaired,
    }


@app.get("/api/conversation-candidates")
async def api_conversation_candidates(
    q: str = "",
    viewer: Viewer = Depends(current_viewer),
    client: SqliteCollectionClient = Depends(get_client),
):
    subjects, _ = await _load_state(client)
    groups = conversation_candidates(viewer, subjects, q, DEPARTMENTS)
    return [{"department": dept, "subjects": [_subject_to_dict(s) for s in members]} for dept, members in groups]


# ─────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────

class SettingsUpdate(BaseModel):
    HOST: Optional[str] = None
    PORT: Optional[int] = None
    DEPARTMENTS: Optional[str] = None
    READ_MARK_CONCURRENCY: Optional[int] = None
    SNAPSHOT_POLL_INTERVAL: Optional[float] = None


def _require_staff(viewer: Viewer) -> None:
    if not viewer.is_staff:
        raise AccessError("Settings are restricted to staff", viewer_id=viewer.id)


@app.get("/api/settings")
async def api_get_settings(viewer: Viewer = Depends(current_viewer)):
    _require_staff(viewer)
    return get_config_dict()


@app.put("/api/settings")
async def api_update_settings(body: SettingsUpdate, viewer: Viewer = Depends(current_viewer)):
    _require_staff(viewer)
    update_data = {k: v for k, v in body.model_dump().items() if v is not None}
    if not update_data:
        raise ValidationError("No settings given")
    save_config_dict(update_data)
    logger.info(f"Settings updated by {viewer.id}: {sorted(update_data)}")
    # values are read at import time
    return {"ok": True, "restart_required": True}


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "service": "Krysselista", "version": APP_VERSION}


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("krysselista.main:app", host=HOST, port=PORT, reload=True)
