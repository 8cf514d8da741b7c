"""
Document admin API endpoints: upload, details, reprocess, soft delete, restore, purge.
"""

import logging
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from sqlalchemy.orm import Session

from docvoice.api.dependencies import get_conversion_log, get_dispatcher, get_document_store, get_progress_store
from docvoice.database import get_db
from docvoice.models import Document
from docvoice.utils.blob_store import BlobStore
from docvoice.utils.conversion_log import ConversionLog
from docvoice.utils.document_state import (
    InvalidTransitionError,
    check_invariants,
    hard_delete,
    new_document,
    request_reprocess,
    restore,
    soft_delete,
)
from docvoice.utils.errors import describe_failure
from docvoice.utils.progress import ProgressStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["documents"])

DbSession = Annotated[Session, Depends(get_db)]
AuditLog = Annotated[ConversionLog, Depends(get_conversion_log)]


def _get_document(db: Session, document_id: int, include_deleted: bool = False) -> Document:
    document = db.get(Document, document_id)
    if document is None or (document.deleted_at is not None and not include_deleted):
        raise HTTPException(status_code=404, detail=f"Document {document_id} not found")
    return document


def _serialize(document: Document) -> dict[str, Any]:
    return {
        "id": document.id,
        "uuid": document.uuid,
        "title": document.title,
        "slug": document.slug,
        "type": document.type,
        "year": document.year,
        "status": document.status,
        "file_name": document.file_name,
        "file_size": document.file_size_formatted(),
        "cover_path": document.cover_path,
        "audio": document.audio_paths(),
        "audio_duration": document.audio_duration_formatted() if document.audio_duration is not None else None,
        "processing_started_at": document.processing_started_at.isoformat() if document.processing_started_at else None,
        "processing_completed_at": (
            document.processing_completed_at.isoformat() if document.processing_completed_at else None
        ),
        "processing_metadata": document.processing_metadata or {},
        "error": describe_failure(document.processing_metadata),
        "deleted_at": document.deleted_at.isoformat() if document.deleted_at else None,
    }


@router.post("", status_code=201)
async def upload_document(
    db: DbSession,
    file: UploadFile = File(...),
    title: str = Form(..., min_length=1, max_length=255),
    year: Optional[int] = Form(None),
    type: str = Form("publication"),
    description: Optional[str] = Form(None),
    indicator_id: Optional[int] = Form(None),
    user_id: Optional[int] = Form(None),
    store: BlobStore = Depends(get_document_store),
    dispatcher=Depends(get_dispatcher),
):
    """Store an uploaded file as a new pending document and queue its conversion."""
    data = await file.read()
    try:
        document = new_document(
            db,
            store,
            title=title,
            data=data,
            file_name=file.filename or "upload",
            mime_type=file.content_type or "application/octet-stream",
            year=year,
            type=type,
            description=description,
            indicator_id=indicator_id,
            created_by=user_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    task_id = dispatcher.dispatch(document.id)
    result = _serialize(document)
    result["task_id"] = task_id
    return result


@router.get("/{document_id}")
def get_document(document_id: int, db: DbSession):
    document = _get_document(db, document_id, include_deleted=True)
    data = _serialize(document)
    data["invariant_violations"] = check_invariants(document)
    return data


@router.post("/{document_id}/reprocess")
def reprocess_document(
    document_id: int,
    db: DbSession,
    audit: AuditLog,
    dispatcher=Depends(get_dispatcher),
    progress: ProgressStore = Depends(get_progress_store),
    user_id: Optional[int] = Query(None, description="Acting admin"),
):
    """Send a failed or completed document back through the pipeline."""
    document = _get_document(db, document_id)
    previous = document.status
    try:
        request_reprocess(db, document, actor=user_id)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    progress.clear(document_id)
    task_id = dispatcher.dispatch(document_id)
    audit.record(
        document_id,
        "info",
        "reprocess_requested",
        f"Reprocess requested (was {previous})",
        {"previous_status": previous, "task_id": task_id},
        user_id=user_id,
    )
    return {"document_id": document_id, "status": document.status, "task_id": task_id}


@router.delete("/{document_id}")
def delete_document(
    document_id: int,
    db: DbSession,
    audit: AuditLog,
    user_id: Optional[int] = Query(None, description="Acting admin"),
    reason: Optional[str] = Query(None, max_length=255),
):
    """Soft delete: the document disappears from listings but can be restored."""
    document = _get_document(db, document_id)
    soft_delete(db, document, actor=user_id, reason=reason)
    audit.record(
        document_id, "warning", "soft_deleted", "Document moved to trash", {"reason": document.deleted_reason}, user_id=user_id
    )
    return {"document_id": document_id, "deleted_at": document.deleted_at.isoformat()}


@router.post("/{document_id}/restore")
def restore_document(
    document_id: int,
    db: DbSession,
    audit: AuditLog,
    user_id: Optional[int] = Query(None, description="Acting admin"),
):
    document = _get_document(db, document_id, include_deleted=True)
    if document.deleted_at is None:
        raise HTTPException(status_code=409, detail=f"Document {document_id} is not deleted")
    restore(db, document)
    audit.record(document_id, "info", "restored", "Document restored from trash", user_id=user_id)
    return {"document_id": document_id, "status": document.status}


@router.delete("/{document_id}/purge")
def purge_document(
    document_id: int,
    db: DbSession,
    audit: AuditLog,
    store: BlobStore = Depends(get_document_store),
    user_id: Optional[int] = Query(None, description="Acting admin"),
):
    """Irreversibly delete a soft-deleted document and its files."""
    document = _get_document(db, document_id, include_deleted=True)
    try:
        removed = hard_delete(db, document, store, conversion_log=audit, actor=user_id)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"document_id": document_id, "deleted_keys": removed}
