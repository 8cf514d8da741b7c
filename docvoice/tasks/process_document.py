#!/usr/bin/env python3

import logging
from datetime import timedelta

from docvoice.celery_app import celery
from docvoice.config import settings
from docvoice.database import SessionLocal
from docvoice.tasks.dispatch import JOB_NAME
from docvoice.tasks.retry_config import ConversionTaskWithRetry
from docvoice.utils import queue_ledger
from docvoice.utils.clock import utcnow
from docvoice.utils.document_converter import (
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    DocumentConverter,
    build_default_converter,
)

logger = logging.getLogger(__name__)

_converter: DocumentConverter | None = None


def get_converter() -> DocumentConverter:
    """Converter shared by all tasks of this worker process."""
    global _converter
    if _converter is None:
        _converter = build_default_converter()
    return _converter


def set_converter(converter: DocumentConverter | None):
    global _converter
    _converter = converter


@celery.task(
    base=ConversionTaskWithRetry,
    bind=True,
    name="docvoice.tasks.process_document.process_document",
)
def process_document(self, document_id: int):
    """
    Convert one document to audio.

    Steps:
      1. Mark the work unit as reserved in the queue ledger.
      2. Run one conversion attempt.
      3. Depending on the outcome: drop the work unit (completed, abandoned),
         move it to the failed ledger (failed), or release it and schedule a
         retry with backoff (retry).
    """
    task_id = self.request.id
    queue_name = settings.conversion_queue
    logger.info(f"[{task_id}] Processing document {document_id} (retry {self.request.retries})")

    with SessionLocal() as db:
        queue_ledger.claim(db, task_id, document_id, JOB_NAME, queue_name)

    outcome = get_converter().process(document_id, prior_attempts=self.request.retries, queue_job_id=task_id)

    if outcome.will_retry:
        countdown = self.next_countdown()
        with SessionLocal() as db:
            queue_ledger.release(db, task_id, available_at=utcnow() + timedelta(seconds=countdown))
        logger.warning(f"[{task_id}] Document {document_id} attempt {outcome.attempt} failed, retrying in {countdown} s")
        raise self.retry(countdown=countdown)

    with SessionLocal() as db:
        if outcome.state == OUTCOME_FAILED:
            queue_ledger.fail(db, task_id, document_id, queue_name, outcome.message or "")
        else:
            queue_ledger.complete(db, task_id)

    if outcome.state == OUTCOME_COMPLETED:
        logger.info(f"[{task_id}] Document {document_id} converted")
    else:
        logger.warning(f"[{task_id}] Document {document_id} finished as {outcome.state}: {outcome.message}")
    return outcome.to_dict()
