"""
Conversion log API endpoints
"""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from docvoice.database import get_db
from docvoice.utils.conversion_log import list_entries

logger = logging.getLogger(__name__)

router = APIRouter(tags=["logs"])

DbSession = Annotated[Session, Depends(get_db)]


@router.get("/documents/{document_id}/conversion-logs")
def list_conversion_logs(
    document_id: int,
    db: DbSession,
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Number of entries to return"),
):
    """
    Returns the conversion log of a document, oldest entry first.

    Entries are kept after the document is deleted, so this endpoint does not
    404 for unknown ids; it returns an empty list.

    Example response:
    {
      "document_id": 42,
      "logs": [
        {
          "id": 1,
          "stage": "initializing",
          "status": "info",
          "message": "Processing started (attempt 1/3)",
          "meta": {"attempt": 1, "max_attempts": 3},
          "job_name": "ProcessDocument",
          "queue_job_id": "abc-123",
          "created_at": "2025-05-01T12:34:56.789000"
        },
        ...
      ]
    }
    """
    entries = list_entries(db, document_id, limit=limit)
    return {
        "document_id": document_id,
        "logs": [
            {
                "id": entry.id,
                "stage": entry.stage,
                "status": entry.status,
                "message": entry.message,
                "meta": entry.meta or {},
                "user_id": entry.user_id,
                "job_name": entry.job_name,
                "queue_job_id": entry.queue_job_id,
                "queue_name": entry.queue_name,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
