"""
Conversion progress API endpoints.

Progress comes from the short-lived cache snapshots written by the
converter; when a snapshot has expired the document status is used instead.
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from docvoice.api.dependencies import get_progress_store
from docvoice.database import get_db
from docvoice.models import Document
from docvoice.utils.document_state import DocumentStatus
from docvoice.utils.errors import describe_failure
from docvoice.utils.progress import ProgressStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["progress"])

DbSession = Annotated[Session, Depends(get_db)]
Progress = Annotated[ProgressStore, Depends(get_progress_store)]


def _get_document_or_404(db: Session, document_id: int) -> Document:
    document = db.get(Document, document_id)
    if document is None or document.deleted_at is not None:
        raise HTTPException(status_code=404, detail=f"Document {document_id} not found")
    return document


@router.get("/documents/{document_id}/progress")
def get_document_progress(document_id: int, db: DbSession, progress: Progress) -> dict[str, Any]:
    """
    Returns the progress snapshot of one document.

    Example response:
    {
      "document_id": 42,
      "percentage": 55,
      "message": "Converting chunk 3 of 5 (completed)",
      "stage": "tts_processing",
      "status": "processing",
      "found": true
    }
    """
    document = _get_document_or_404(db, document_id)
    snapshot = progress.snapshot_for(document)
    snapshot["status"] = document.status
    snapshot["error"] = describe_failure(document.processing_metadata)
    return snapshot


@router.get("/progress")
def list_active_progress(
    db: DbSession,
    progress: Progress,
    limit: int = Query(50, ge=1, le=500, description="Number of documents to return"),
) -> list[dict[str, Any]]:
    """Progress of every document waiting for or undergoing conversion."""
    documents = (
        db.query(Document)
        .filter(
            Document.deleted_at.is_(None),
            Document.status.in_([DocumentStatus.PENDING.value, DocumentStatus.PROCESSING.value]),
        )
        .order_by(Document.updated_at.desc())
        .limit(limit)
        .all()
    )
    return [progress.snapshot_for(document) for document in documents]


@router.get("/progress/stats")
def get_progress_stats(db: DbSession) -> dict[str, Any]:
    """Document counts by status plus totals of converted audio."""
    counts = dict(
        db.query(Document.status, func.count(Document.id))
        .filter(Document.deleted_at.is_(None))
        .group_by(Document.status)
        .all()
    )
    by_status = {status.value: counts.get(status.value, 0) for status in DocumentStatus}
    audio = (
        db.query(func.coalesce(func.sum(Document.audio_duration), 0), func.coalesce(func.sum(Document.audio_size), 0))
        .filter(Document.deleted_at.is_(None), Document.status == DocumentStatus.COMPLETED.value)
        .one()
    )
    return {
        "total": sum(by_status.values()),
        **by_status,
        "total_audio_duration": int(audio[0]),
        "total_audio_size": int(audio[1]),
    }
