"""
Read tracking: propagates the viewer's read acknowledgement onto message records.

Each pass issues one ``readBy`` set-union update per unread message, with a
bounded number in flight. Failures are isolated per message and logged, never
raised: read receipts are best effort.

A tracker remembers the messages it already requested for its viewer until a
snapshot shows them as read. A second pass that runs before the store echoes
the first pass back therefore issues no duplicate writes, and a failed update
is forgotten so the next pass retries it.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable

from krysselista.client import ArrayUnion, CollectionClient
from krysselista.config import MESSAGES_COLLECTION, READ_MARK_CONCURRENCY
from krysselista.db.models import Message, Thread
from krysselista.errors import PersistenceError

logger = logging.getLogger(__name__)


@dataclass
class ReadMarkResult:
    marked: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def writes(self) -> int:
        return len(self.marked) + len(self.failed)


def unread_message_ids(messages: Iterable[Message], viewer_id: str) -> list[str]:
    return [m.id for m in messages if not m.is_read_by(viewer_id)]


class ReadTracker:
    def __init__(
        self,
        client: CollectionClient,
        viewer_id: str,
        concurrency: int = READ_MARK_CONCURRENCY,
        collection: str = MESSAGES_COLLECTION,
    ) -> None:
        self.client = client
        self.viewer_id = viewer_id
        self.collection = collection
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._requested: set[str] = set()

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._requested)

    async def mark_thread_read(self, thread: Thread) -> ReadMarkResult:
        return await self.mark_messages_read(thread.messages)

    async def mark_messages_read(self, messages: Iterable[Message]) -> ReadMarkResult:
        messages = list(messages)
        # the snapshot has caught up with these; stop tracking them
        self._requested.difference_update(m.id for m in messages if m.is_read_by(self.viewer_id))

        pending = [mid for mid in unread_message_ids(messages, self.viewer_id) if mid not in self._requested]
        result = ReadMarkResult()
        if not pending:
            return result

        self._requested.update(pending)
        try:
            outcomes = await asyncio.gather(
                *(self._mark_one(mid) for mid in pending), return_exceptions=True
            )
        except asyncio.CancelledError:
            self._requested.difference_update(pending)
            raise
        for mid, outcome in zip(pending, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Could not mark message {mid} as read: {type(outcome).__name__}: {outcome}")
            if outcome is True:
                result.marked.append(mid)
            else:
                self._requested.discard(mid)
                result.failed.append(mid)
        if result.failed:
            logger.warning(
                f"Read marking for {self.viewer_id}: {len(result.failed)} of {len(pending)} updates failed"
            )
        else:
            logger.debug(f"Read marking for {self.viewer_id}: marked {len(result.marked)} message(s)")
        return result

    async def _mark_one(self, message_id: str) -> bool:
        async with self._semaphore:
            try:
                await self.client.update_fields(
                    self.collection, message_id, {"readBy": ArrayUnion(self.viewer_id)}
                )
            except PersistenceError as e:
                logger.warning(f"Could not mark message {message_id} as read: {e}")
                return False
        return True

    def forget(self) -> None:
        """Drop remembered requests, e.g. when the viewing context changes."""
        self._requested.clear()


async def mark_thread_read(
    client: CollectionClient,
    thread: Thread,
    viewer_id: str,
    concurrency: int = READ_MARK_CONCURRENCY,
) -> ReadMarkResult:
    """One-shot read-mark pass for callers without a standing tracker."""
    return await ReadTracker(client, viewer_id, concurrency=concurrency).mark_thread_read(thread)
