"""
Shared test configuration for Krysselista.

Points the store at an in-memory database and shortens the subscription poll
interval before any krysselista module reads its configuration. Provides
factories for domain objects so tests can state only the fields they care about.
"""
import os
from datetime import datetime, timezone

import pytest

os.environ.setdefault("KRYSSELISTA_DB", ":memory:")
os.environ.setdefault("KRYSSELISTA_SNAPSHOT_POLL_INTERVAL", "0.01")

from krysselista.db.models import (  # noqa: E402
    BROADCAST,
    DIRECT,
    STAFF,
    Message,
    Subject,
)


def _at(hhmm: str, day: int = 3) -> datetime:
    hour, minute = (int(p) for p in hhmm.split(":"))
    return datetime(2025, 3, day, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
def make_subject():
    def _make(sid: str, department: str = "Storbarna", guardians=(), name: str | None = None, **kw) -> Subject:
        return Subject(id=sid, name=name or sid.title(), department=department,
                       guardian_ids=frozenset(guardians), **kw)
    return _make


@pytest.fixture
def make_message():
    counter = {"seq": 0}

    def _make(
        mid: str,
        sent: str | None = "10:00",
        subject_id: str | None = None,
        department: str = "Storbarna",
        sender: str = "staff-1",
        role: str = STAFF,
        read_by=(),
        body: str = "hei",
        seq: int | None = None,
    ) -> Message:
        counter["seq"] += 1
        return Message(
            id=mid,
            thread_type=DIRECT if subject_id else BROADCAST,
            subject_id=subject_id,
            department=department,
            sender_id=sender,
            sender_name=sender,
            sender_role=role,
            body=body,
            sent_at=_at(sent) if sent else None,
            read_by=frozenset(read_by) | {sender},
            seq=counter["seq"] if seq is None else seq,
        )
    return _make
