"""
Contract of the remote collection client consumed by the core.

The core never talks to a concrete store. It receives an object satisfying
``CollectionClient`` and uses full-snapshot subscriptions plus
append/update_fields writes. ``krysselista.db.collections`` provides the
aiosqlite-backed implementation.
"""
from typing import Any, AsyncIterator, Callable, Optional, Protocol

Record = dict[str, Any]
Predicate = Callable[[Record], bool]


class _ServerTimestamp:
    """Field value replaced by the store with its own clock at write time."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class ArrayUnion:
    """Field value merged by the store as a set union with the stored list."""

    def __init__(self, *values: Any) -> None:
        self.values = tuple(values)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ArrayUnion) and self.values == other.values

    def __repr__(self) -> str:
        return f"ArrayUnion{self.values!r}"


class Subscription(Protocol):
    """Live view of a collection. Each item is the complete matching record set."""

    def __aiter__(self) -> AsyncIterator[list[Record]]: ...

    async def __anext__(self) -> list[Record]: ...

    async def close(self) -> None: ...


class CollectionClient(Protocol):
    def subscribe(self, collection: str, predicate: Optional[Predicate] = None) -> Subscription: ...

    async def append(self, collection: str, record: Record, record_id: Optional[str] = None) -> str: ...

    async def update_fields(self, collection: str, record_id: str, fields: Record) -> None: ...

    async def get(self, collection: str, record_id: str) -> Optional[Record]: ...

    async def snapshot(self, collection: str, predicate: Optional[Predicate] = None) -> list[Record]: ...
