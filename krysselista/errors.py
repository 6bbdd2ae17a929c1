"""
Error taxonomy shared by the messaging and attendance core.

ValidationError and AccessError are raised locally before any write is issued.
PersistenceError wraps failures reported by the collection client.
"""
from typing import Optional


class KrysselistaError(Exception):
    """Base class for all errors raised by the core."""


class ValidationError(KrysselistaError):
    """Raised when a command's input is malformed (empty body, no thread, unknown action)."""


class AccessError(KrysselistaError):
    """Raised when the viewer's role does not permit the requested thread or mutation."""

    def __init__(self, message: str, viewer_id: Optional[str] = None) -> None:
        self.viewer_id = viewer_id
        super().__init__(message)


class PersistenceError(KrysselistaError):
    """Raised when a write to (or read from) the remote store fails."""

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> None:
        self.collection = collection
        self.record_id = record_id
        super().__init__(message)


class SendError(PersistenceError):
    """Raised when appending a composed message fails. Carries the body for retry."""

    def __init__(self, message: str, body: str, collection: Optional[str] = None) -> None:
        self.body = body
        super().__init__(message, collection=collection)
