import logging
from typing import Any, Optional

from pydantic_core import to_jsonable_python
from sqlalchemy.orm import Session

from docvoice.models import DocumentConversionLog
from docvoice.utils.clock import utcnow

logger = logging.getLogger(__name__)

LOG_STATUSES = ("info", "success", "warning", "error")


class ConversionLog:
    """
    Writes and reads the durable per-document audit trail.

    Every entry is committed in its own short session so that it survives a
    rollback of the caller's unit of work.
    """

    def __init__(self, session_factory, job_name: str = "ProcessDocument"):
        self.session_factory = session_factory
        self.job_name = job_name

    def record(
        self,
        document_id: int,
        status: str,
        stage: str,
        message: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
        *,
        user_id: Optional[int] = None,
        job_name: Optional[str] = None,
        queue_job_id: Optional[str] = None,
        queue_name: Optional[str] = None,
    ) -> None:
        """
        Append one stage event for a document.

        Args:
            document_id: Document the event belongs to
            status: One of "info", "success", "warning", "error"
            stage: Pipeline stage token, e.g. "extracting_text"
            message: Short human readable summary
            meta: Structured details; datetimes and enums are made JSON-safe
            user_id: Acting admin, when the event was triggered by a person
            job_name: Overrides the default job name of this log
            queue_job_id: Celery task id of the work unit
            queue_name: Queue the work unit was consumed from
        """
        if status not in LOG_STATUSES:
            raise ValueError(f"Unknown conversion log status: {status!r}")

        meta = dict(meta or {})
        if user_id is None:
            user_id = meta.get("user_id")

        with self.session_factory() as db:
            db.add(
                DocumentConversionLog(
                    document_id=document_id,
                    user_id=user_id,
                    job_name=job_name or self.job_name,
                    stage=stage,
                    status=status,
                    message=message,
                    meta=to_jsonable_python(meta),
                    queue_job_id=queue_job_id,
                    queue_name=queue_name,
                    created_at=utcnow(),
                )
            )
            db.commit()

    def entries_for(self, document_id: int, limit: Optional[int] = None) -> list[DocumentConversionLog]:
        """Entries of one document, oldest first."""
        with self.session_factory() as db:
            return list_entries(db, document_id, limit=limit)


def list_entries(db: Session, document_id: int, limit: Optional[int] = None) -> list[DocumentConversionLog]:
    query = (
        db.query(DocumentConversionLog)
        .filter(DocumentConversionLog.document_id == document_id)
        .order_by(DocumentConversionLog.created_at.asc(), DocumentConversionLog.id.asc())
    )
    if limit is not None:
        query = query.limit(limit)
    return query.all()
