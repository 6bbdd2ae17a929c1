"""
aiosqlite-backed implementation of the remote collection client.

Writes go through crud; reads return plain dict records carrying their `id`
and `seq`. Subscriptions poll the events table and re-deliver the complete
matching record set whenever their collection changes.
"""
import asyncio
import logging
import sqlite3
from typing import Optional

import aiosqlite

from krysselista.client import Predicate, Record
from krysselista.config import SNAPSHOT_POLL_INTERVAL
from krysselista.db import crud
from krysselista.errors import PersistenceError

logger = logging.getLogger(__name__)


class SqliteSubscription:
    """Async iterator of full snapshots for one collection.

    The first iteration yields the current snapshot immediately. Later
    iterations block until a change event for the collection shows up, then
    yield the new snapshot. Several events between two polls collapse into one
    delivery. `close()` releases the subscription; iteration then stops.
    """

    def __init__(
        self,
        client: "SqliteCollectionClient",
        collection: str,
        predicate: Optional[Predicate] = None,
        poll_interval: float = SNAPSHOT_POLL_INTERVAL,
    ) -> None:
        self._client = client
        self.collection = collection
        self._predicate = predicate
        self._poll_interval = poll_interval
        self._cursor: Optional[int] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "SqliteSubscription":
        return self

    async def __anext__(self) -> list[Record]:
        if self._closed:
            raise StopAsyncIteration
        db = self._client.db
        if self._cursor is None:
            self._cursor = await crud.latest_event_id(db)
            return await self._client.snapshot(self.collection, self._predicate)

        while not self._closed:
            events = await crud.events_since(db, after_id=self._cursor, collection=self.collection)
            if events:
                self._cursor = events[-1].id
                # drain the rest of the burst so one snapshot covers it
                while events:
                    events = await crud.events_since(db, after_id=self._cursor, collection=self.collection)
                    if events:
                        self._cursor = events[-1].id
                return await self._client.snapshot(self.collection, self._predicate)
            await asyncio.sleep(self._poll_interval)
        raise StopAsyncIteration

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            logger.debug(f"Subscription to '{self.collection}' released")

    async def __aenter__(self) -> "SqliteSubscription":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()


class SqliteCollectionClient:
    """Collection client over a single aiosqlite connection."""

    def __init__(self, db: aiosqlite.Connection, poll_interval: float = SNAPSHOT_POLL_INTERVAL) -> None:
        self.db = db
        self.poll_interval = poll_interval
        # serializes read-modify-write updates on the shared connection
        self._write_lock = asyncio.Lock()

    def subscribe(self, collection: str, predicate: Optional[Predicate] = None) -> SqliteSubscription:
        return SqliteSubscription(self, collection, predicate, poll_interval=self.poll_interval)

    async def append(self, collection: str, record: Record, record_id: Optional[str] = None) -> str:
        async with self._write_lock:
            try:
                stored = await crud.record_append(self.db, collection, record, record_id=record_id)
            except (sqlite3.Error, TypeError, ValueError) as e:
                await self._rollback()
                logger.error(f"Append to '{collection}' failed: {type(e).__name__}: {e}")
                raise PersistenceError(f"Append to '{collection}' failed: {e}", collection=collection, record_id=record_id) from e
        return stored["id"]

    async def update_fields(self, collection: str, record_id: str, fields: Record) -> None:
        async with self._write_lock:
            try:
                found = await crud.record_update(self.db, collection, record_id, fields)
            except (sqlite3.Error, TypeError, ValueError) as e:
                await self._rollback()
                logger.error(f"Update of '{collection}/{record_id}' failed: {type(e).__name__}: {e}")
                raise PersistenceError(f"Update of '{collection}/{record_id}' failed: {e}", collection=collection, record_id=record_id) from e
        if not found:
            raise PersistenceError(f"No record '{record_id}' in '{collection}'", collection=collection, record_id=record_id)

    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        try:
            return await crud.record_get(self.db, collection, record_id)
        except sqlite3.Error as e:
            raise PersistenceError(f"Read of '{collection}/{record_id}' failed: {e}", collection=collection, record_id=record_id) from e

    async def snapshot(self, collection: str, predicate: Optional[Predicate] = None) -> list[Record]:
        try:
            records = await crud.record_list(self.db, collection)
        except sqlite3.Error as e:
            raise PersistenceError(f"Read of '{collection}' failed: {e}", collection=collection) from e
        if predicate is None:
            return records
        return [r for r in records if predicate(r)]

    async def prune_events(self, max_age_seconds: int) -> int:
        async with self._write_lock:
            return await crud.events_delete_old(self.db, max_age_seconds=max_age_seconds)

    async def _rollback(self) -> None:
        try:
            await self.db.rollback()
        except sqlite3.Error as e:
            logger.warning(f"Rollback failed: {e}")
