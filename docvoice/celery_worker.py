#!/usr/bin/env python3

from celery.schedules import crontab

from docvoice.config import settings

# Import the shared Celery instance
from docvoice.celery_app import celery

# Ensure all tasks are imported before Celery starts
from docvoice.tasks.process_document import process_document  # noqa: F401
from docvoice.tasks.reconcile_stuck_documents import reconcile_stuck_documents  # noqa: F401

celery.conf.beat_schedule = {
    "reconcile-stuck-documents": {
        "task": "docvoice.tasks.reconcile_stuck_documents.reconcile_stuck_documents",
        "schedule": crontab(minute=f"*/{settings.reconcile_interval_minutes}"),
        "options": {"expires": settings.reconcile_interval_minutes * 60 - 5},  # Ensure runs don't pile up
    },
}
