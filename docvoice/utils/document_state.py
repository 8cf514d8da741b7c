"""
Lifecycle rules for :class:`~docvoice.models.Document`.

Statuses move ``pending -> processing -> completed``; a failed attempt goes
``processing -> pending`` (retry) or ``processing -> failed``.  Only an
explicit admin reprocess moves ``failed``/``completed`` back to ``pending``.
Deletion is orthogonal to status: a soft delete sets a tombstone that can be
restored, a hard delete removes the row and its stored artifacts.
"""

import logging
import os
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from docvoice.models import DOCUMENT_TYPES, Document
from docvoice.utils.clock import utcnow
from docvoice.utils.filename_utils import sanitize_filename

logger = logging.getLogger(__name__)


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    DocumentStatus.PENDING: {DocumentStatus.PROCESSING},
    DocumentStatus.PROCESSING: {DocumentStatus.COMPLETED, DocumentStatus.PENDING, DocumentStatus.FAILED},
    DocumentStatus.FAILED: set(),
    DocumentStatus.COMPLETED: set(),
}

#: Transitions only an admin reprocess may perform.
REPROCESS_TRANSITIONS = {
    DocumentStatus.FAILED: {DocumentStatus.PENDING},
    DocumentStatus.COMPLETED: {DocumentStatus.PENDING},
}


class InvalidTransitionError(ValueError):
    pass


def new_document(
    db: Session,
    blob_store,
    *,
    title: str,
    data: bytes,
    file_name: str,
    mime_type: str,
    year: Optional[int] = None,
    type: str = "publication",
    description: Optional[str] = None,
    indicator_id: Optional[int] = None,
    created_by: Optional[int] = None,
) -> Document:
    """Store an uploaded source file and create its ``pending`` document."""
    if type not in DOCUMENT_TYPES:
        raise ValueError(f"Unknown document type: {type!r}")
    if not data:
        raise ValueError("Uploaded file is empty")

    file_name = sanitize_filename(file_name)
    document = Document(
        title=title,
        year=year,
        type=type,
        description=description,
        indicator_id=indicator_id,
        file_name=file_name,
        file_mime_type=mime_type,
        file_size=len(data),
        status=DocumentStatus.PENDING.value,
        created_by=created_by,
    )
    db.add(document)
    db.flush()

    key = f"sources/{document.uuid}{os.path.splitext(file_name)[1].lower()}"
    blob_store.put(key, data)
    document.file_path = key
    db.commit()
    db.refresh(document)
    logger.info(f"[document {document.id}] Uploaded {file_name} ({len(data)} bytes) as {key}")
    return document


def can_transition(current: str, target: str, *, reprocess: bool = False) -> bool:
    current, target = DocumentStatus(current), DocumentStatus(target)
    allowed = set(ALLOWED_TRANSITIONS[current])
    if reprocess:
        allowed |= REPROCESS_TRANSITIONS.get(current, set())
    return target in allowed


def transition(document: Document, target: str, *, reprocess: bool = False) -> None:
    """Set ``document.status`` to *target* or raise :class:`InvalidTransitionError`."""
    if not can_transition(document.status, target, reprocess=reprocess):
        raise InvalidTransitionError(f"Document {document.id}: {document.status} -> {target} is not allowed")
    document.status = DocumentStatus(target).value


def merge_metadata(document: Document, **values: Any) -> dict:
    """Merge *values* into ``processing_metadata`` and return the new dict.

    A fresh dict is assigned so the JSON column registers the change.
    """
    merged = dict(document.processing_metadata or {})
    merged.update(values)
    document.processing_metadata = merged
    return merged


def claim_for_processing(
    db: Session,
    document_id: int,
    ownership_window: timedelta,
    metadata: dict,
    now: Optional[datetime] = None,
) -> bool:
    """
    Atomically move a document to ``processing``.

    The conditional update only matches when the document is not completed,
    not soft-deleted, and not owned by an attempt that started inside the
    ownership window.  Returns False when another attempt holds it.
    """
    now = now or utcnow()
    cutoff = now - ownership_window
    document = db.get(Document, document_id)
    if document is None:
        return False
    merged = dict(document.processing_metadata or {})
    merged.update(metadata)

    claimed = (
        db.query(Document)
        .filter(
            Document.id == document_id,
            Document.deleted_at.is_(None),
            Document.status.in_([DocumentStatus.PENDING.value, DocumentStatus.PROCESSING.value]),
            or_(
                Document.status != DocumentStatus.PROCESSING.value,
                Document.processing_started_at.is_(None),
                and_(Document.processing_started_at.isnot(None), Document.processing_started_at < cutoff),
            ),
        )
        .update(
            {
                Document.status: DocumentStatus.PROCESSING.value,
                Document.processing_started_at: now,
                Document.processing_completed_at: None,
                Document.processing_metadata: merged,
                Document.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if claimed:
        db.refresh(document)
    return bool(claimed)


def is_owned(document: Document, ownership_window: timedelta, now: Optional[datetime] = None) -> bool:
    """True when an attempt marked the document processing inside the window."""
    now = now or utcnow()
    return (
        document.status == DocumentStatus.PROCESSING.value
        and document.processing_started_at is not None
        and now - document.processing_started_at < ownership_window
    )


def request_reprocess(db: Session, document: Document, actor: Optional[int] = None) -> Document:
    """
    Admin action: send a failed or completed document back to ``pending``.

    Extracted text and audio references are cleared; the stored audio files
    are overwritten by the next successful run.
    """
    previous = document.status
    transition(document, DocumentStatus.PENDING, reprocess=True)
    now = utcnow()
    document.extracted_text = None
    document.mp3_path = None
    document.mp3_checksum = None
    document.flac_path = None
    document.flac_checksum = None
    document.audio_size = None
    document.audio_duration = None
    document.processing_started_at = None
    document.processing_completed_at = None
    document.processing_metadata = {
        "reprocess_requested_at": now.isoformat(),
        "reprocess_requested_by": actor,
        "previous_status": previous,
    }
    db.commit()
    db.refresh(document)
    logger.info(f"[document {document.id}] Reprocess requested by {actor} (was {previous})")
    return document


def soft_delete(db: Session, document: Document, actor: Optional[int] = None, reason: Optional[str] = None) -> None:
    if document.deleted_at is not None:
        return
    document.deleted_at = utcnow()
    document.deleted_by = actor
    document.deleted_reason = reason or "delete by admin"
    db.commit()


def restore(db: Session, document: Document) -> None:
    document.deleted_at = None
    document.deleted_by = None
    document.deleted_reason = None
    db.commit()


def hard_delete(db: Session, document: Document, blob_store, conversion_log=None, actor: Optional[int] = None) -> list:
    """
    Irreversibly remove a soft-deleted document and its stored artifacts.

    Returns the storage keys that were deleted.  Blob removal is best-effort;
    the audit entry is written before the row disappears.
    """
    if document.deleted_at is None:
        raise InvalidTransitionError(f"Document {document.id} must be soft-deleted before a hard delete")

    keys = [k for k in (document.file_path, document.cover_path, *document.audio_paths().values()) if k]
    removed = []
    for key in keys:
        try:
            if blob_store.delete(key):
                removed.append(key)
        except Exception as exc:
            logger.warning(f"[document {document.id}] Could not delete blob {key}: {exc}")

    if conversion_log is not None:
        conversion_log.record(
            document.id,
            "warning",
            "hard_deleted",
            f"Document permanently deleted: {document.title}",
            {"deleted_keys": removed, "deleted_reason": document.deleted_reason, "uuid": document.uuid},
            user_id=actor,
            job_name="DocumentAdmin",
        )

    db.delete(document)
    db.commit()
    logger.info(f"[document {document.id}] Hard deleted by {actor}, removed {len(removed)} blob(s)")
    return removed


def check_invariants(document: Document) -> list[str]:
    """Return human readable descriptions of violated lifecycle invariants."""
    problems = []
    metadata = document.processing_metadata or {}
    if document.status == DocumentStatus.COMPLETED.value:
        if not (document.extracted_text or "").strip():
            problems.append("completed document has no extracted text")
        if not document.audio_paths():
            problems.append("completed document has no audio artifact")
        if document.audio_duration is None:
            problems.append("completed document has no audio duration")
    if document.status == DocumentStatus.FAILED.value:
        if not metadata.get("error"):
            problems.append("failed document has no error description")
        if "final_status" not in metadata and "will_retry" not in metadata:
            problems.append("failed document has no retry decision flag")
    return problems
