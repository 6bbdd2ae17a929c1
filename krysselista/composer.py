"""
Message composer: validates a new message and appends it with the addressing
fields of the thread it belongs to.

Access is decided structurally from the thread (subject guardians, broadcast
department), never from the display `kind` tag written on the record.
"""
import logging
from typing import Optional

from krysselista.client import SERVER_TIMESTAMP, CollectionClient
from krysselista.config import MESSAGES_COLLECTION
from krysselista.db.models import (
    BROADCAST,
    DIRECT,
    GUARDIAN,
    KIND_GUARDIAN_TO_STAFF,
    KIND_STAFF_BROADCAST,
    KIND_STAFF_TO_GUARDIAN,
    ROLES,
    STAFF,
    BroadcastThread,
    DirectThread,
    Thread,
    Viewer,
)
from krysselista.errors import AccessError, PersistenceError, SendError, ValidationError

logger = logging.getLogger(__name__)


def build_message_record(viewer: Viewer, thread: Optional[Thread], body: str) -> dict:
    """Validate a compose request and return the record to append.

    Raises ValidationError or AccessError; nothing is written.
    """
    if viewer.role not in ROLES:
        raise AccessError(f"Unknown viewer role '{viewer.role}'", viewer_id=viewer.id)
    if thread is None:
        raise ValidationError("No thread selected")
    text = (body or "").strip()
    if not text:
        raise ValidationError("Message body is empty")

    record = {
        "senderId": viewer.id,
        "senderName": viewer.label,
        "senderRole": viewer.role,
        "body": text,
        "sentAt": SERVER_TIMESTAMP,
        "readBy": [viewer.id],
    }

    if isinstance(thread, DirectThread):
        if viewer.role == GUARDIAN and viewer.id not in thread.guardian_ids:
            raise AccessError(
                f"Viewer is not a guardian of subject '{thread.subject_id}'", viewer_id=viewer.id
            )
        record.update({
            "threadType": DIRECT,
            "subjectId": thread.subject_id,
            "department": thread.department,
            "kind": KIND_GUARDIAN_TO_STAFF if viewer.role == GUARDIAN else KIND_STAFF_TO_GUARDIAN,
        })
    elif isinstance(thread, BroadcastThread):
        if viewer.role != STAFF:
            raise AccessError("Broadcast threads are read-only for guardians", viewer_id=viewer.id)
        record.update({
            "threadType": BROADCAST,
            "department": thread.department,
            "kind": KIND_STAFF_BROADCAST,
        })
    else:
        raise ValidationError(f"Unsupported thread {thread!r}")
    return record


async def send_message(
    client: CollectionClient,
    viewer: Viewer,
    thread: Optional[Thread],
    body: str,
    collection: str = MESSAGES_COLLECTION,
) -> str:
    """Append a message to `thread` and return its id.

    The new message is not inserted locally; it arrives with the next snapshot.
    A failed append raises SendError carrying the caller's original body.
    """
    record = build_message_record(viewer, thread, body)
    try:
        message_id = await client.append(collection, record)
    except PersistenceError as e:
        logger.error(f"Sending to {thread.key} failed for {viewer.id}: {e}")
        raise SendError(f"Message could not be sent: {e}", body=body, collection=collection) from e
    logger.info(f"Message {message_id} sent to {thread.key[0]}:{thread.key[1]} by {viewer.id}")
    return message_id
