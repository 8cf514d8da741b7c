# docvoice/celery_app.py

import logging

from celery import Celery
from celery.signals import task_failure

from docvoice.config import settings

logger = logging.getLogger(__name__)

celery = Celery(
    "docvoice",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery.conf.broker_connection_retry_on_startup = True

# Conversion work units go to their own queue so long TTS jobs do not starve other tasks
celery.conf.task_default_queue = settings.conversion_queue
celery.conf.task_routes = {
    "docvoice.tasks.*": {"queue": settings.conversion_queue},
}
celery.conf.task_acks_late = True
celery.conf.worker_prefetch_multiplier = 1


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, args=None, kwargs=None, traceback=None, einfo=None, **kw):
    """Log every task failure with its arguments"""
    logger.error(
        f"[{task_id or 'N/A'}] Task {sender.name if sender else 'Unknown'} failed "
        f"(args={args or []}, kwargs={kwargs or {}}): {exception}"
    )
