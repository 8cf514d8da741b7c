"""
Periodic task that recovers documents and work units stuck in the pipeline.

Runs every ``RECONCILE_INTERVAL_MINUTES`` via Celery Beat.  See
:mod:`docvoice.utils.stuck_documents` for what counts as stuck.
"""

import logging

from docvoice.celery_app import celery
from docvoice.config import settings
from docvoice.database import SessionLocal
from docvoice.tasks.dispatch import CeleryDispatcher
from docvoice.utils.clock import utcnow
from docvoice.utils.conversion_log import ConversionLog
from docvoice.utils.progress import build_progress_store
from docvoice.utils.stuck_documents import ReconcileThresholds, StuckDocumentReconciler

logger = logging.getLogger(__name__)


def build_reconciler(dispatcher=None) -> StuckDocumentReconciler:
    return StuckDocumentReconciler(
        session_factory=SessionLocal,
        progress=build_progress_store(),
        conversion_log=ConversionLog(SessionLocal, job_name="StuckDocumentReconciler"),
        dispatcher=dispatcher or CeleryDispatcher(),
        thresholds=ReconcileThresholds.from_settings(settings),
        requeue=settings.reconcile_requeue,
        requeue_stale_pending=settings.reconcile_stale_pending,
    )


@celery.task(name="docvoice.tasks.reconcile_stuck_documents.reconcile_stuck_documents")
def reconcile_stuck_documents():
    """
    Reset stuck documents and release stuck work units.

    Returns the health report as a dict so the result shows up in the
    Celery result backend.
    """
    try:
        report = build_reconciler().reconcile()
    except Exception as e:
        logger.error(f"Error in reconcile_stuck_documents task: {e}", exc_info=True)
        return {"error": str(e), "actions": []}

    if report.actions:
        logger.warning(f"[{utcnow().isoformat()}] Reconciled {len(report.actions)} stuck item(s).")
    for warning in report.warnings:
        logger.warning(f"Queue health: {warning}")
    return report.to_dict()
