"""
Durable record of dispatched conversion work units.

The broker only knows what is in flight; this ledger lets the reconciler see
units that were reserved by a worker and never finished, and keeps a copy of
units that failed for good.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from docvoice.models import FailedQueueJob, QueueJob
from docvoice.utils.clock import utcnow

logger = logging.getLogger(__name__)


def record_dispatch(
    db: Session,
    task_id: str,
    document_id: int,
    job_name: str,
    queue_name: str,
    available_at: Optional[datetime] = None,
) -> QueueJob:
    now = utcnow()
    job = QueueJob(
        task_id=task_id,
        document_id=document_id,
        job_name=job_name,
        queue_name=queue_name,
        attempts=0,
        available_at=available_at or now,
        created_at=now,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def claim(db: Session, task_id: str, document_id: int, job_name: str, queue_name: str) -> QueueJob:
    """Mark the unit as reserved by a worker, creating the row if the dispatch bypassed the ledger."""
    job = db.query(QueueJob).filter(QueueJob.task_id == task_id).one_or_none()
    now = utcnow()
    if job is None:
        job = QueueJob(
            task_id=task_id,
            document_id=document_id,
            job_name=job_name,
            queue_name=queue_name,
            attempts=0,
            available_at=now,
            created_at=now,
        )
        db.add(job)
    job.reserved_at = now
    job.attempts = (job.attempts or 0) + 1
    db.commit()
    db.refresh(job)
    return job


def release(db: Session, task_id: str, available_at: Optional[datetime] = None) -> bool:
    """Put a reserved unit back in the waiting state (retry scheduled)."""
    job = db.query(QueueJob).filter(QueueJob.task_id == task_id).one_or_none()
    if job is None:
        return False
    job.reserved_at = None
    job.available_at = available_at or utcnow()
    db.commit()
    return True


def complete(db: Session, task_id: str) -> bool:
    deleted = db.query(QueueJob).filter(QueueJob.task_id == task_id).delete(synchronize_session=False)
    db.commit()
    return bool(deleted)


def fail(db: Session, task_id: str, document_id: Optional[int], queue_name: Optional[str], exception: str) -> FailedQueueJob:
    """Move a unit to the failed ledger."""
    job = db.query(QueueJob).filter(QueueJob.task_id == task_id).one_or_none()
    if job is not None:
        document_id = document_id if document_id is not None else job.document_id
        queue_name = queue_name or job.queue_name
        db.delete(job)
    failed = FailedQueueJob(
        task_id=task_id,
        document_id=document_id,
        queue_name=queue_name,
        exception=exception,
        failed_at=utcnow(),
    )
    db.add(failed)
    db.commit()
    logger.warning(f"[{task_id}] Work unit for document {document_id} moved to failed jobs")
    return failed


def has_live_job(db: Session, document_id: int) -> bool:
    return db.query(QueueJob.id).filter(QueueJob.document_id == document_id).first() is not None


def stuck_reservations(db: Session, cutoff: datetime) -> list[QueueJob]:
    return (
        db.query(QueueJob)
        .filter(QueueJob.reserved_at.isnot(None), QueueJob.reserved_at < cutoff)
        .order_by(QueueJob.reserved_at.asc())
        .all()
    )


def queued_count(db: Session) -> int:
    return db.query(QueueJob).filter(QueueJob.reserved_at.is_(None)).count()


def failed_count(db: Session) -> int:
    return db.query(FailedQueueJob).count()
