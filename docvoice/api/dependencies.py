"""
Collaborators injected into the API routes.

Each provider builds its object from settings; tests swap them through
``app.dependency_overrides``.
"""

from docvoice.database import SessionLocal
from docvoice.utils.blob_store import BlobStore, get_blob_store
from docvoice.utils.conversion_log import ConversionLog
from docvoice.utils.progress import ProgressStore, build_progress_store
from docvoice.utils.stuck_documents import StuckDocumentReconciler


def get_progress_store() -> ProgressStore:
    return build_progress_store()


def get_document_store() -> BlobStore:
    return get_blob_store()


def get_conversion_log() -> ConversionLog:
    return ConversionLog(SessionLocal, job_name="DocumentAdmin")


def get_dispatcher():
    from docvoice.tasks.dispatch import CeleryDispatcher

    return CeleryDispatcher()


def get_reconciler() -> StuckDocumentReconciler:
    from docvoice.tasks.reconcile_stuck_documents import build_reconciler

    return build_reconciler()
