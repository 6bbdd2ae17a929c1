"""
Data models (dataclasses) for Krysselista.
These are plain Python objects used across the store, core, and API layers.
Stored documents use camelCase field names; the *_from_record helpers at the
bottom translate them.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union

STAFF = "staff"
GUARDIAN = "guardian"
ROLES = (STAFF, GUARDIAN)

DIRECT = "direct"
BROADCAST = "broadcast"

CHECK_IN = "check-in"
CHECK_OUT = "check-out"
ACTIONS = (CHECK_IN, CHECK_OUT)

# Display tags on messages; access control never reads these.
KIND_GUARDIAN_TO_STAFF = "guardian-to-staff"
KIND_STAFF_TO_GUARDIAN = "staff-to-guardian"
KIND_STAFF_BROADCAST = "staff-broadcast"

ThreadKey = tuple[str, str]   # (DIRECT, subject_id) | (BROADCAST, department)


@dataclass(frozen=True)
class Viewer:
    id: str
    role: str            # staff | guardian
    name: str = ""

    @property
    def is_staff(self) -> bool:
        return self.role == STAFF

    @property
    def label(self) -> str:
        return self.name or self.id


@dataclass
class Subject:
    id: str
    name: str
    department: str
    guardian_ids: frozenset[str] = frozenset()
    checked_in: bool = False
    last_check_in: Optional[datetime] = None
    last_check_out: Optional[datetime] = None
    allergies: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class Message:
    id: str
    thread_type: str     # direct | broadcast
    subject_id: Optional[str]
    department: str
    sender_id: str
    sender_name: str
    sender_role: str     # staff | guardian
    body: str
    sent_at: Optional[datetime]   # None while the server timestamp is pending
    read_by: frozenset[str] = frozenset()
    kind: Optional[str] = None
    seq: int = 0         # store insertion order, tie-breaker for equal sent_at

    @property
    def thread_key(self) -> ThreadKey:
        if self.thread_type == DIRECT:
            return (DIRECT, self.subject_id)
        return (BROADCAST, self.department)

    def is_read_by(self, viewer_id: str) -> bool:
        return viewer_id in self.read_by


@dataclass(frozen=True)
class AttendanceEvent:
    id: str
    subject_id: str
    action: str          # check-in | check-out
    performed_by: str
    performed_by_label: str
    timestamp: datetime
    repaired: bool = False   # appended on replay; performed_by is the replaying actor


class _ThreadView:
    """Shared accessors for derived threads. `messages` is chronological."""

    messages: tuple[Message, ...]

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    @property
    def message_count(self) -> int:
        return len(self.messages)


@dataclass(frozen=True)
class DirectThread(_ThreadView):
    subject_id: str
    department: str
    name: str
    guardian_ids: frozenset[str] = frozenset()
    messages: tuple[Message, ...] = ()
    unread_count: int = 0

    thread_type = DIRECT

    @property
    def key(self) -> ThreadKey:
        return (DIRECT, self.subject_id)

    @property
    def display_name(self) -> str:
        return self.name


@dataclass(frozen=True)
class BroadcastThread(_ThreadView):
    department: str
    messages: tuple[Message, ...] = ()
    unread_count: int = 0

    thread_type = BROADCAST

    @property
    def key(self) -> ThreadKey:
        return (BROADCAST, self.department)

    @property
    def display_name(self) -> str:
        return self.department


Thread = Union[DirectThread, BroadcastThread]


@dataclass
class ChangeEvent:
    """
    Transient notification row used to fan out collection changes.
    Rows are written by every append/update and pruned after a retention window.
    """
    id: int
    event_type: str      # record.new | record.update
    collection: str
    record_id: Optional[str]
    payload: str         # JSON string
    created_at: datetime


@dataclass
class AttendanceResult:
    subject: Subject
    event: Optional[AttendanceEvent]
    changed: bool        # status write issued
    repaired: bool = False   # audit record appended for an earlier status write
    notes: list[str] = field(default_factory=list)


# ─────────────────────────────────────────────
# Record translation
# ─────────────────────────────────────────────

def _dt(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def subject_from_record(rec: dict) -> Subject:
    return Subject(
        id=rec["id"],
        name=rec.get("name", ""),
        department=rec.get("department", ""),
        guardian_ids=frozenset(rec.get("guardianIds") or ()),
        checked_in=bool(rec.get("checkedIn", False)),
        last_check_in=_dt(rec.get("lastCheckIn")),
        last_check_out=_dt(rec.get("lastCheckOut")),
        allergies=rec.get("allergies"),
        notes=rec.get("notes"),
    )


def message_from_record(rec: dict) -> Message:
    return Message(
        id=rec["id"],
        thread_type=rec.get("threadType", DIRECT),
        subject_id=rec.get("subjectId"),
        department=rec.get("department", ""),
        sender_id=rec.get("senderId", ""),
        sender_name=rec.get("senderName", ""),
        sender_role=rec.get("senderRole", GUARDIAN),
        body=rec.get("body", ""),
        sent_at=_dt(rec.get("sentAt")),
        read_by=frozenset(rec.get("readBy") or ()),
        kind=rec.get("kind"),
        seq=int(rec.get("seq") or 0),
    )


def attendance_event_from_record(rec: dict) -> AttendanceEvent:
    return AttendanceEvent(
        id=rec["id"],
        subject_id=rec["subjectId"],
        action=rec["action"],
        performed_by=rec.get("performedBy", ""),
        performed_by_label=rec.get("performedByLabel", ""),
        timestamp=_dt(rec["timestamp"]),
        repaired=bool(rec.get("repaired", False)),
    )


def attendance_event_to_record(event: AttendanceEvent) -> dict:
    rec = {
        "subjectId": event.subject_id,
        "action": event.action,
        "performedBy": event.performed_by,
        "performedByLabel": event.performed_by_label,
        "timestamp": event.timestamp.isoformat(),
    }
    if event.repaired:
        rec["repaired"] = True
    return rec
