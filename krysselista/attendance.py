"""
Attendance ledger: check-in/check-out transitions with an append-only audit trail.

A transition is two writes with no atomicity between them: the status update on
the subject record, then the audit append. Replays are safe. If the status
already shows the requested state, the newest audit record is compared against
the status timestamp and the missing record is appended only when the trail
lacks it. A redundant transition with nothing to repair is a no-op.
"""
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from krysselista.client import CollectionClient
from krysselista.config import (
    ACTIVITY_LOG_LIMIT,
    ATTENDANCE_COLLECTION,
    SUBJECTS_COLLECTION,
)
from krysselista.db.models import (
    ACTIONS,
    CHECK_IN,
    STAFF,
    AttendanceEvent,
    AttendanceResult,
    Subject,
    Viewer,
    attendance_event_from_record,
    attendance_event_to_record,
    subject_from_record,
)
from krysselista.errors import AccessError, ValidationError

logger = logging.getLogger(__name__)


def can_transition(actor: Viewer, subject: Subject) -> bool:
    return actor.role == STAFF or actor.id in subject.guardian_ids


async def load_subject(client: CollectionClient, subject_id: str) -> Subject:
    rec = await client.get(SUBJECTS_COLLECTION, subject_id)
    if rec is None:
        raise ValidationError(f"Unknown subject '{subject_id}'")
    return subject_from_record(rec)


async def attendance_history(
    client: CollectionClient,
    subject_id: str,
    limit: Optional[int] = ACTIVITY_LOG_LIMIT,
) -> list[AttendanceEvent]:
    """Audit records for one subject, newest first."""
    records = await client.snapshot(ATTENDANCE_COLLECTION, lambda r: r.get("subjectId") == subject_id)
    pairs = [(attendance_event_from_record(r), r.get("seq") or 0) for r in records]
    pairs.sort(key=lambda p: (p[0].timestamp, p[1]), reverse=True)
    events = [event for event, _ in pairs]
    return events if limit is None else events[:limit]


def attendance_summary(subjects: list[Subject]) -> dict[str, int]:
    checked_in = sum(1 for s in subjects if s.checked_in)
    return {"checked_in": checked_in, "checked_out": len(subjects) - checked_in, "total": len(subjects)}


async def transition(
    client: CollectionClient,
    subject: Subject,
    action: str,
    actor: Viewer,
    now: Optional[datetime] = None,
) -> AttendanceResult:
    """Apply a check-in or check-out to `subject`.

    Raises ValidationError for an unknown action and AccessError when the actor
    may not change this subject. PersistenceError from either write propagates
    unchanged; the caller re-reads the subject and may simply retry.
    """
    if action not in ACTIONS:
        raise ValidationError(f"Unknown attendance action '{action}'")
    if not can_transition(actor, subject):
        raise AccessError(f"Viewer may not change attendance for '{subject.id}'", viewer_id=actor.id)

    target = action == CHECK_IN
    stamp_field = "lastCheckIn" if target else "lastCheckOut"

    if subject.checked_in == target:
        return await _replay(client, subject, action, actor)

    ts = now or datetime.now(timezone.utc)
    await client.update_fields(SUBJECTS_COLLECTION, subject.id, {
        "checkedIn": target,
        stamp_field: ts.isoformat(),
    })
    if target:
        updated = _with_status(subject, True, last_check_in=ts)
    else:
        updated = _with_status(subject, False, last_check_out=ts)
    logger.info(f"Attendance: {subject.id} {action} by {actor.id}")

    event = await _append_event(client, subject.id, action, actor, ts)
    return AttendanceResult(subject=updated, event=event, changed=True)


async def transition_by_id(
    client: CollectionClient,
    subject_id: str,
    action: str,
    actor: Viewer,
    now: Optional[datetime] = None,
) -> AttendanceResult:
    subject = await load_subject(client, subject_id)
    return await transition(client, subject, action, actor, now=now)


async def _replay(client: CollectionClient, subject: Subject, action: str, actor: Viewer) -> AttendanceResult:
    stamp = subject.last_check_in if action == CHECK_IN else subject.last_check_out
    if stamp is None:
        logger.info(f"Attendance: {subject.id} already in state for '{action}', nothing to do")
        return AttendanceResult(subject=subject, event=None, changed=False, notes=["already-in-state"])

    history = await attendance_history(client, subject.id, limit=1)
    latest = history[0] if history else None
    if latest is not None and latest.action == action and latest.timestamp == stamp:
        logger.info(f"Attendance: {subject.id} '{action}' already recorded at {stamp.isoformat()}")
        return AttendanceResult(subject=subject, event=latest, changed=False, notes=["already-recorded"])

    logger.warning(f"Attendance: audit record missing for {subject.id} '{action}' at {stamp.isoformat()}, repairing")
    event = await _append_event(client, subject.id, action, actor, stamp, repaired=True)
    return AttendanceResult(subject=subject, event=event, changed=False, repaired=True)


async def _append_event(
    client: CollectionClient,
    subject_id: str,
    action: str,
    actor: Viewer,
    ts: datetime,
    repaired: bool = False,
) -> AttendanceEvent:
    event = AttendanceEvent(
        id=str(uuid.uuid4()),
        subject_id=subject_id,
        action=action,
        performed_by=actor.id,
        performed_by_label=actor.label,
        timestamp=ts,
        repaired=repaired,
    )
    await client.append(ATTENDANCE_COLLECTION, attendance_event_to_record(event), record_id=event.id)
    return event


def _with_status(subject: Subject, checked_in: bool, **stamps) -> Subject:
    return replace(subject, checked_in=checked_in, **stamps)
