"""
Queue health API endpoints.

``GET /queue/health`` reports stuck documents, stuck work units and backlogs
without changing anything; ``POST /queue/reconcile`` also fixes them.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends

from docvoice.api.dependencies import get_reconciler
from docvoice.utils.stuck_documents import StuckDocumentReconciler

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/queue", tags=["queue"])


@router.get("/health")
def queue_health(reconciler: StuckDocumentReconciler = Depends(get_reconciler)) -> dict[str, Any]:
    return reconciler.scan().to_dict()


@router.post("/reconcile")
def reconcile_queue(reconciler: StuckDocumentReconciler = Depends(get_reconciler)) -> dict[str, Any]:
    report = reconciler.reconcile()
    logger.info(f"Manual reconcile finished with {len(report.actions)} action(s)")
    return report.to_dict()
