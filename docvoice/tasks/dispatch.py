import logging
import uuid
from datetime import timedelta

from docvoice.config import settings
from docvoice.database import SessionLocal
from docvoice.utils import queue_ledger
from docvoice.utils.clock import utcnow

logger = logging.getLogger(__name__)

JOB_NAME = "ProcessDocument"


class CeleryDispatcher:
    """Publishes conversion work units and keeps the queue ledger in step."""

    def __init__(self, session_factory=SessionLocal, queue_name: str | None = None, task=None):
        self.session_factory = session_factory
        self.queue_name = queue_name or settings.conversion_queue
        self._task = task

    @property
    def task(self):
        if self._task is None:
            from docvoice.tasks.process_document import process_document

            self._task = process_document
        return self._task

    def dispatch(self, document_id: int, countdown: int = 0) -> str:
        """Record and publish a work unit for *document_id*; returns its task id."""
        task_id = str(uuid.uuid4())
        with self.session_factory() as db:
            queue_ledger.record_dispatch(
                db,
                task_id,
                document_id,
                JOB_NAME,
                self.queue_name,
                available_at=utcnow() + timedelta(seconds=countdown),
            )
        try:
            self.task.apply_async(
                args=[document_id], task_id=task_id, countdown=countdown or None, queue=self.queue_name
            )
        except Exception:
            with self.session_factory() as db:
                queue_ledger.complete(db, task_id)
            raise
        logger.info(f"[{task_id}] Dispatched document {document_id} to {self.queue_name}")
        return task_id

    def redeliver(self, task_id: str, document_id: int) -> str:
        """Publish a stuck work unit again under its original task id."""
        self.task.apply_async(args=[document_id], task_id=task_id, queue=self.queue_name)
        logger.info(f"[{task_id}] Redelivered work unit for document {document_id}")
        return task_id
