"""
Messaging session: one viewer's live view over the roster and message collections.

The session owns the viewing context (viewer + selected thread) and the two
subscriptions feeding it. Every snapshot replaces the previous one and the
thread list is derived again from scratch. While a thread is selected, each
refresh re-applies the read intent through the session's ReadTracker as a
background task, so snapshot delivery never waits on read-mark writes.

A session serves exactly one viewer. Changing viewer, logging out or
navigating away means closing the session, which releases both subscriptions.
"""
import asyncio
import logging
from typing import Optional, Sequence

from krysselista import attendance, composer
from krysselista.client import CollectionClient, Record
from krysselista.config import (
    DEPARTMENTS,
    MESSAGES_COLLECTION,
    READ_MARK_CONCURRENCY,
    SUBJECTS_COLLECTION,
)
from krysselista.db.models import (
    STAFF,
    AttendanceResult,
    Message,
    Subject,
    Thread,
    ThreadKey,
    Viewer,
    message_from_record,
    subject_from_record,
)
from krysselista.errors import AccessError, PersistenceError, ValidationError
from krysselista.read_tracker import ReadMarkResult, ReadTracker
from krysselista.threads import (
    conversation_candidates,
    derive_threads,
    filter_threads,
    find_thread,
    resolve_thread,
)

logger = logging.getLogger(__name__)


def roster_predicate(viewer: Viewer):
    """Filter for the roster subscription: all subjects for staff, own for guardians."""
    if viewer.role == STAFF:
        return None
    return lambda rec: viewer.id in (rec.get("guardianIds") or ())


def translate_records(records: list[Record], from_record) -> list:
    """Translate snapshot records, skipping any that are malformed."""
    items = []
    for rec in records:
        try:
            items.append(from_record(rec))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed record '{rec.get('id')}': {type(e).__name__}: {e}")
    return items


class MessagingSession:
    def __init__(
        self,
        client: CollectionClient,
        viewer: Viewer,
        departments: Sequence[str] = DEPARTMENTS,
        read_concurrency: int = READ_MARK_CONCURRENCY,
    ) -> None:
        self.client = client
        self.viewer = viewer
        self.departments = tuple(departments)
        self.version = 0
        self._subjects: list[Subject] = []
        self._messages: list[Message] = []
        self._threads: list[Thread] = []
        self._selected: Optional[ThreadKey] = None
        self._tracker = ReadTracker(client, viewer.id, concurrency=read_concurrency)
        self._subscriptions = []
        self._pumps: set[asyncio.Task] = set()
        self._read_passes: set[asyncio.Task] = set()
        self._roster_seen = asyncio.Event()
        self._messages_seen = asyncio.Event()
        self._closed = False

    # ── lifecycle ──────────────────────────────

    async def start(self) -> "MessagingSession":
        roster = self.client.subscribe(SUBJECTS_COLLECTION, roster_predicate(self.viewer))
        stream = self.client.subscribe(MESSAGES_COLLECTION)
        self._subscriptions = [roster, stream]
        for sub, apply in ((roster, self.apply_roster_snapshot), (stream, self.apply_message_snapshot)):
            task = asyncio.create_task(self._pump(sub, apply))
            self._pumps.add(task)
            task.add_done_callback(self._pumps.discard)
        logger.info(f"Session started for {self.viewer.id} ({self.viewer.role})")
        return self

    async def wait_ready(self, timeout: Optional[float] = None) -> None:
        """Wait until both collections delivered their first snapshot."""
        await asyncio.wait_for(
            asyncio.gather(self._roster_seen.wait(), self._messages_seen.wait()), timeout
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._selected = None
        for sub in self._subscriptions:
            await sub.close()
        for task in list(self._pumps):
            task.cancel()
        await asyncio.gather(*self._pumps, return_exceptions=True)
        await self.drain()
        self._tracker.forget()
        logger.info(f"Session closed for {self.viewer.id}")

    async def __aenter__(self) -> "MessagingSession":
        return await self.start()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _pump(self, subscription, apply) -> None:
        try:
            async for records in subscription:
                try:
                    apply(records)
                except Exception as e:
                    # keep following the collection; the next snapshot re-derives everything
                    logger.error(f"Snapshot of '{subscription.collection}' not applied: {type(e).__name__}: {e}")
        except PersistenceError as e:
            logger.error(f"Subscription to '{subscription.collection}' stopped: {e}")

    # ── snapshot intake ────────────────────────

    def apply_roster_snapshot(self, records: list[Record]) -> None:
        self._subjects = translate_records(records, subject_from_record)
        self._roster_seen.set()
        self._refresh()

    def apply_message_snapshot(self, records: list[Record]) -> None:
        self._messages = translate_records(records, message_from_record)
        self._messages_seen.set()
        self._refresh()

    def _refresh(self) -> None:
        self._threads = derive_threads(self.viewer, self._subjects, self._messages, self.departments)
        self.version += 1
        if self._selected is not None:
            self._schedule_read_pass()

    def _schedule_read_pass(self) -> None:
        thread = self.selected_thread()
        if thread is None or thread.unread_count == 0:
            return
        task = asyncio.create_task(self._tracker.mark_thread_read(thread))
        self._read_passes.add(task)
        task.add_done_callback(self._read_passes.discard)

    async def drain(self) -> list[ReadMarkResult]:
        """Wait for read-mark passes that are currently running."""
        if not self._read_passes:
            return []
        return list(await asyncio.gather(*self._read_passes))

    # ── queries ────────────────────────────────

    @property
    def subjects(self) -> list[Subject]:
        return list(self._subjects)

    def get_visible_threads(self, query: str = "") -> list[Thread]:
        return filter_threads(self._threads, query)

    def selected_thread(self) -> Optional[Thread]:
        if self._selected is None:
            return None
        thread = find_thread(self._threads, self._selected)
        if thread is not None:
            return thread
        try:
            return resolve_thread(self.viewer, self._selected, self._subjects, self._messages, self.departments)
        except (AccessError, ValidationError):
            return None

    def conversation_candidates(self, query: str = "") -> list[tuple[str, list[Subject]]]:
        return conversation_candidates(self.viewer, self._subjects, query, self.departments)

    def attendance_summary(self) -> dict[str, int]:
        return attendance.attendance_summary(self._subjects)

    # ── commands ───────────────────────────────

    def select_thread(self, key: ThreadKey) -> Thread:
        """Open a thread and keep it read while it stays selected."""
        thread = resolve_thread(self.viewer, key, self._subjects, self._messages, self.departments)
        if self._selected != key:
            logger.debug(f"{self.viewer.id} selected thread {key[0]}:{key[1]}")
        self._selected = key
        self._schedule_read_pass()
        return thread

    def deselect_thread(self) -> None:
        self._selected = None

    async def compose_message(self, body: str, key: Optional[ThreadKey] = None) -> str:
        """Send `body` to `key`, or to the selected thread when no key is given."""
        if key is None:
            thread = self.selected_thread()
        else:
            thread = resolve_thread(self.viewer, key, self._subjects, self._messages, self.departments)
        return await composer.send_message(self.client, self.viewer, thread, body)

    async def transition_attendance(self, subject_id: str, action: str) -> AttendanceResult:
        # always re-read the subject; the roster snapshot may lag our own writes
        return await attendance.transition_by_id(self.client, subject_id, action, self.viewer)
