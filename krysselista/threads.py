"""
Thread derivation: projects the roster and the flat message stream into the
threads visible to one viewer.

Everything here is a pure function of its inputs. Callers recompute from the
latest snapshots on every delivery instead of patching earlier results, so a
thread list never outlives the snapshot it was built from.

Visibility rules
----------------
- Staff see every subject and every direct message, plus one broadcast thread
  per department even when it has no messages yet.
- Guardians see subjects that list them in ``guardian_ids``. Within those
  direct threads they see their own messages and every staff message, never
  another guardian's side of the conversation. They see a department's
  broadcast thread only when one of their subjects is in that department and
  the thread has at least one message.
"""
from collections import defaultdict
from datetime import datetime
from typing import Iterable, Optional, Sequence

from krysselista.config import DEPARTMENTS
from krysselista.db.models import (
    BROADCAST,
    DIRECT,
    STAFF,
    BroadcastThread,
    DirectThread,
    Message,
    Subject,
    Thread,
    ThreadKey,
    Viewer,
)
from krysselista.errors import AccessError, ValidationError


def message_order(m: Message) -> tuple:
    """Chronological sort key. Pending server timestamps sort after everything else."""
    if m.sent_at is None:
        return (1, 0, m.seq)
    return (0, m.sent_at.timestamp(), m.seq)


def can_view_subject(viewer: Viewer, subject: Subject) -> bool:
    return viewer.role == STAFF or viewer.id in subject.guardian_ids


def visible_subjects(viewer: Viewer, subjects: Iterable[Subject]) -> list[Subject]:
    """Subjects the viewer may see, de-duplicated by id (last occurrence wins)."""
    by_id: dict[str, Subject] = {}
    for s in subjects:
        by_id[s.id] = s
    return [s for s in by_id.values() if can_view_subject(viewer, s)]


def is_direct_message_visible(viewer: Viewer, message: Message) -> bool:
    if viewer.role == STAFF:
        return True
    return message.sender_id == viewer.id or message.sender_role == STAFF


def _count_unread(messages: Sequence[Message], viewer_id: str) -> int:
    return sum(1 for m in messages if not m.is_read_by(viewer_id))


def _ordered_departments(departments: Sequence[str], extra: Iterable[str]) -> list[str]:
    ordered = list(dict.fromkeys(departments))
    for d in extra:
        if d and d not in ordered:
            ordered.append(d)
    return ordered


def derive_threads(
    viewer: Viewer,
    subjects: Iterable[Subject],
    messages: Iterable[Message],
    departments: Sequence[str] = DEPARTMENTS,
) -> list[Thread]:
    """Return the viewer's threads, most recently active first.

    Threads without messages (only staff broadcast threads can be empty) come
    last, in department order.
    """
    roster = visible_subjects(viewer, subjects)

    # de-duplicate by id, then order once so every group inherits the order
    unique: dict[str, Message] = {}
    for m in messages:
        unique[m.id] = m
    ordered = sorted(unique.values(), key=message_order)

    direct: dict[str, list[Message]] = defaultdict(list)
    broadcast: dict[str, list[Message]] = defaultdict(list)
    for m in ordered:
        if m.thread_type == DIRECT:
            if m.subject_id is not None and is_direct_message_visible(viewer, m):
                direct[m.subject_id].append(m)
        elif m.thread_type == BROADCAST:
            broadcast[m.department].append(m)

    threads: list[Thread] = []
    for subject in roster:
        thread_messages = direct.get(subject.id)
        if not thread_messages:
            continue
        threads.append(DirectThread(
            subject_id=subject.id,
            department=subject.department,
            name=subject.name,
            guardian_ids=subject.guardian_ids,
            messages=tuple(thread_messages),
            unread_count=_count_unread(thread_messages, viewer.id),
        ))

    if viewer.role == STAFF:
        broadcast_departments = _ordered_departments(departments, broadcast.keys())
    else:
        own = {s.department for s in roster}
        broadcast_departments = [
            d for d in _ordered_departments(departments, sorted(own))
            if d in own and broadcast.get(d)
        ]

    for dept in broadcast_departments:
        dept_messages = broadcast.get(dept, [])
        threads.append(BroadcastThread(
            department=dept,
            messages=tuple(dept_messages),
            unread_count=_count_unread(dept_messages, viewer.id),
        ))

    active = [t for t in threads if t.messages]
    empty = [t for t in threads if not t.messages]
    active.sort(key=lambda t: message_order(t.last_message), reverse=True)
    return active + empty


def find_thread(threads: Iterable[Thread], key: ThreadKey) -> Optional[Thread]:
    for t in threads:
        if t.key == key:
            return t
    return None


def empty_direct_thread(subject: Subject) -> DirectThread:
    """A direct thread with no messages yet, used to start a new conversation."""
    return DirectThread(
        subject_id=subject.id,
        department=subject.department,
        name=subject.name,
        guardian_ids=subject.guardian_ids,
    )


def resolve_thread(
    viewer: Viewer,
    key: ThreadKey,
    subjects: Iterable[Subject],
    messages: Iterable[Message],
    departments: Sequence[str] = DEPARTMENTS,
) -> Thread:
    """Return the viewer's thread for `key`, or an empty one the viewer may open.

    Raises AccessError when the viewer may not open the thread at all and
    ValidationError for an unknown key.
    """
    subjects = list(subjects)
    thread = find_thread(derive_threads(viewer, subjects, messages, departments), key)
    if thread is not None:
        return thread

    thread_type, ref = key
    if thread_type == DIRECT:
        subject = next((s for s in subjects if s.id == ref), None)
        if subject is None:
            raise ValidationError(f"Unknown subject '{ref}'")
        if not can_view_subject(viewer, subject):
            raise AccessError(f"Viewer may not open the thread for subject '{ref}'", viewer_id=viewer.id)
        return empty_direct_thread(subject)
    if thread_type == BROADCAST:
        if viewer.role != STAFF:
            raise AccessError(f"No broadcast thread for '{ref}' is visible to this viewer", viewer_id=viewer.id)
        return BroadcastThread(department=ref)
    raise ValidationError(f"Unknown thread type '{thread_type}'")


def filter_threads(threads: Iterable[Thread], query: str) -> list[Thread]:
    """Case-insensitive search over thread name and department."""
    q = (query or "").strip().lower()
    if not q:
        return list(threads)
    return [
        t for t in threads
        if q in t.display_name.lower() or q in t.department.lower()
    ]


def conversation_candidates(
    viewer: Viewer,
    subjects: Iterable[Subject],
    query: str = "",
    departments: Sequence[str] = DEPARTMENTS,
) -> list[tuple[str, list[Subject]]]:
    """Subjects a staff member can start a conversation with, grouped by department.

    Only departments with at least one matching subject are returned.
    """
    if viewer.role != STAFF:
        raise AccessError("Only staff can start new conversations", viewer_id=viewer.id)
    q = (query or "").strip().lower()
    roster = visible_subjects(viewer, subjects)
    if q:
        roster = [s for s in roster if q in s.name.lower() or q in s.department.lower()]

    groups = []
    for dept in _ordered_departments(departments, (s.department for s in roster)):
        members = [s for s in roster if s.department == dept]
        if members:
            groups.append((dept, members))
    return groups


def last_activity(thread: Thread) -> Optional[datetime]:
    last = thread.last_message
    return last.sent_at if last is not None else None
