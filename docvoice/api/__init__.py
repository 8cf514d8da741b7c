"""
API Router module that combines all API endpoints
"""

import logging

from fastapi import APIRouter

from docvoice.api.documents import router as documents_router
from docvoice.api.logs import router as logs_router
from docvoice.api.progress import router as progress_router
from docvoice.api.queue import router as queue_router

logger = logging.getLogger(__name__)

router = APIRouter()

router.include_router(progress_router)
router.include_router(logs_router)
router.include_router(documents_router)
router.include_router(queue_router)
