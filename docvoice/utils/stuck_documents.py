"""
Stuck-work detection and recovery.

Workers can die mid-conversion, leaving a document in ``processing`` and its
work unit reserved forever.  :class:`StuckDocumentReconciler` finds such work
by age and puts it back in line:

* documents in ``processing`` for longer than ``stuck_processing``
* documents still ``pending`` after ``stale_pending`` that never started and
  have no work unit in the ledger
* work units reserved for longer than ``stuck_reservation``

Backlogs of failed and queued work units are only reported.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from docvoice.models import Document, QueueJob
from docvoice.utils import queue_ledger
from docvoice.utils.clock import utcnow
from docvoice.utils.conversion_log import ConversionLog
from docvoice.utils.document_state import DocumentStatus, can_transition, transition
from docvoice.utils.progress import ProgressStore

logger = logging.getLogger(__name__)

JOB_NAME = "StuckDocumentReconciler"


class Dispatcher(Protocol):
    def dispatch(self, document_id: int, countdown: int = 0) -> str: ...

    def redeliver(self, task_id: str, document_id: int) -> str: ...


@dataclass
class ReconcileThresholds:
    stuck_processing: timedelta = timedelta(minutes=120)
    stale_pending: timedelta = timedelta(minutes=360)
    stuck_reservation: timedelta = timedelta(minutes=30)
    failed_jobs_warning: int = 10
    queued_jobs_warning: int = 10

    @classmethod
    def from_settings(cls, settings) -> "ReconcileThresholds":
        return cls(
            stuck_processing=timedelta(minutes=settings.stuck_processing_minutes),
            stale_pending=timedelta(minutes=settings.stale_pending_minutes),
            stuck_reservation=timedelta(minutes=settings.stuck_reservation_minutes),
            failed_jobs_warning=settings.failed_jobs_warning_threshold,
            queued_jobs_warning=settings.queued_jobs_warning_threshold,
        )


@dataclass
class HealthReport:
    checked_at: datetime
    stuck_processing: list = field(default_factory=list)
    stale_pending: list = field(default_factory=list)
    stuck_reservations: list = field(default_factory=list)
    failed_jobs: int = 0
    queued_jobs: int = 0
    warnings: list = field(default_factory=list)
    actions: list = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not (self.stuck_processing or self.stale_pending or self.stuck_reservations or self.warnings)

    def to_dict(self) -> dict:
        return {
            "checked_at": self.checked_at.isoformat(),
            "healthy": self.healthy,
            "stuck_processing": self.stuck_processing,
            "stale_pending": self.stale_pending,
            "stuck_reservations": self.stuck_reservations,
            "failed_jobs": self.failed_jobs,
            "queued_jobs": self.queued_jobs,
            "warnings": self.warnings,
            "actions": self.actions,
        }


def _minutes_since(moment: Optional[datetime], now: datetime) -> Optional[int]:
    if moment is None:
        return None
    return int((now - moment).total_seconds() // 60)


class StuckDocumentReconciler:
    def __init__(
        self,
        session_factory,
        progress: ProgressStore,
        conversion_log: ConversionLog,
        dispatcher: Optional[Dispatcher] = None,
        thresholds: Optional[ReconcileThresholds] = None,
        requeue: bool = True,
        requeue_stale_pending: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.progress = progress
        self.conversion_log = conversion_log
        self.dispatcher = dispatcher
        self.thresholds = thresholds or ReconcileThresholds()
        self.requeue = requeue
        self.requeue_stale_pending = requeue_stale_pending
        self.clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _stuck_processing(self, db: Session, now: datetime) -> list[Document]:
        cutoff = now - self.thresholds.stuck_processing
        return (
            db.query(Document)
            .filter(
                Document.status == DocumentStatus.PROCESSING.value,
                Document.processing_started_at.isnot(None),
                Document.processing_started_at < cutoff,
                Document.deleted_at.is_(None),
            )
            .order_by(Document.processing_started_at.asc())
            .all()
        )

    def _stale_pending(self, db: Session, now: datetime) -> list[Document]:
        cutoff = now - self.thresholds.stale_pending
        live_jobs = select(QueueJob.document_id)
        return (
            db.query(Document)
            .filter(
                Document.status == DocumentStatus.PENDING.value,
                Document.processing_started_at.is_(None),
                Document.created_at < cutoff,
                Document.deleted_at.is_(None),
                Document.id.notin_(live_jobs),
            )
            .order_by(Document.created_at.asc())
            .all()
        )

    def _stuck_reservations(self, db: Session, now: datetime) -> list[QueueJob]:
        # A reservation held by a conversion still inside its processing window
        # belongs to a live worker; the stuck-processing sweep covers it later.
        live_documents = set(
            db.scalars(
                select(Document.id).where(
                    Document.status == DocumentStatus.PROCESSING.value,
                    Document.processing_started_at >= now - self.thresholds.stuck_processing,
                )
            )
        )
        return [
            job
            for job in queue_ledger.stuck_reservations(db, now - self.thresholds.stuck_reservation)
            if job.document_id not in live_documents
        ]

    def _build_report(self, db: Session, now: datetime):
        stuck = self._stuck_processing(db, now)
        stale = self._stale_pending(db, now)
        reservations = self._stuck_reservations(db, now)

        report = HealthReport(
            checked_at=now,
            stuck_processing=[
                {
                    "id": d.id,
                    "title": d.title,
                    "processing_started_at": d.processing_started_at.isoformat(),
                    "minutes_processing": _minutes_since(d.processing_started_at, now),
                }
                for d in stuck
            ],
            stale_pending=[
                {
                    "id": d.id,
                    "title": d.title,
                    "created_at": d.created_at.isoformat(),
                    "minutes_pending": _minutes_since(d.created_at, now),
                }
                for d in stale
            ],
            stuck_reservations=[
                {
                    "task_id": j.task_id,
                    "document_id": j.document_id,
                    "queue_name": j.queue_name,
                    "attempts": j.attempts,
                    "reserved_at": j.reserved_at.isoformat(),
                    "minutes_reserved": _minutes_since(j.reserved_at, now),
                }
                for j in reservations
            ],
            failed_jobs=queue_ledger.failed_count(db),
            queued_jobs=queue_ledger.queued_count(db),
        )
        if report.failed_jobs > self.thresholds.failed_jobs_warning:
            report.warnings.append(f"{report.failed_jobs} failed jobs exceed the threshold of {self.thresholds.failed_jobs_warning}")
        if report.queued_jobs > self.thresholds.queued_jobs_warning:
            report.warnings.append(f"{report.queued_jobs} queued jobs exceed the threshold of {self.thresholds.queued_jobs_warning}")
        return report, stuck, stale, reservations

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def scan(self) -> HealthReport:
        """Report stuck work without changing anything."""
        with self.session_factory() as db:
            report, *_ = self._build_report(db, self.clock())
        return report

    def reconcile(self) -> HealthReport:
        """Reset stuck documents, requeue stale ones and release stuck reservations."""
        now = self.clock()
        with self.session_factory() as db:
            report, stuck, stale, reservations = self._build_report(db, now)
            redispatched: set[int] = set()

            for document in stuck:
                minutes = _minutes_since(document.processing_started_at, now)
                reason = f"Stuck in processing for {minutes} minutes"
                self._reset(db, document, reason, "reset_stuck_processing", now)
                action = {"action": "reset_stuck_processing", "document_id": document.id, "requeued": False}
                if self.requeue and self._dispatch(document.id, action):
                    redispatched.add(document.id)
                report.actions.append(action)

            if self.requeue_stale_pending:
                for document in stale:
                    minutes = _minutes_since(document.created_at, now)
                    reason = f"Pending for {minutes} minutes without being queued"
                    self._reset(db, document, reason, "requeue_stale_pending", now)
                    action = {"action": "requeue_stale_pending", "document_id": document.id, "requeued": False}
                    if self._dispatch(document.id, action):
                        redispatched.add(document.id)
                    report.actions.append(action)

            for job in reservations:
                report.actions.append(self._release_reservation(db, job, redispatched, now))

        if report.actions:
            logger.warning(f"Reconciled {len(report.actions)} stuck item(s): {[a['action'] for a in report.actions]}")
        else:
            logger.debug("No stuck documents or reservations found.")
        return report

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _reset(self, db: Session, document: Document, reason: str, stage: str, now: datetime):
        previous = document.status
        original_started = document.processing_started_at
        entry = {
            "reset_reason": reason,
            "reset_at": now.isoformat(),
            "previous_status": previous,
            "original_processing_started_at": original_started.isoformat() if original_started else None,
        }
        metadata = dict(document.processing_metadata or {})
        metadata.update(entry)
        metadata["reset_by"] = "reconciler"
        metadata["reset_history"] = list(metadata.get("reset_history") or []) + [entry]
        document.processing_metadata = metadata

        if can_transition(previous, DocumentStatus.PENDING):
            transition(document, DocumentStatus.PENDING)
        document.processing_started_at = None
        db.commit()

        self.progress.clear(document.id)
        try:
            self.conversion_log.record(document.id, "warning", stage, reason, entry, job_name=JOB_NAME)
        except Exception as exc:
            logger.warning(f"[document {document.id}] Could not write reset log entry: {exc}")
        logger.warning(f"[document {document.id}] Reset to pending: {reason}")

    def _dispatch(self, document_id: int, action: dict) -> bool:
        if self.dispatcher is None:
            return False
        try:
            action["task_id"] = self.dispatcher.dispatch(document_id)
        except Exception as exc:
            logger.error(f"[document {document_id}] Re-dispatch failed: {exc}")
            action["error"] = str(exc)
            return False
        action["requeued"] = True
        return True

    def _release_reservation(self, db: Session, job: QueueJob, redispatched: set, now: datetime) -> dict:
        action = {"action": "release_reservation", "task_id": job.task_id, "document_id": job.document_id}
        if job.document_id in redispatched:
            # A fresh unit already exists for this document
            db.delete(job)
            db.commit()
            action["action"] = "delete_reservation"
            logger.warning(f"[{job.task_id}] Dropped stuck reservation for re-dispatched document {job.document_id}")
            return action

        reserved_minutes = _minutes_since(job.reserved_at, now)
        job.reserved_at = None
        job.available_at = now
        db.commit()
        action["requeued"] = False
        if self.requeue and self.dispatcher is not None:
            try:
                self.dispatcher.redeliver(job.task_id, job.document_id)
                action["requeued"] = True
            except Exception as exc:
                logger.error(f"[{job.task_id}] Redelivery failed: {exc}")
                action["error"] = str(exc)
        logger.warning(f"[{job.task_id}] Released reservation held for {reserved_minutes} minutes")
        return action
