#!/usr/bin/env python3
import logging

from fastapi import FastAPI

from docvoice import __version__
from docvoice.api import router as api_router
from docvoice.database import init_db

logger = logging.getLogger(__name__)

app = FastAPI(title="DocVoice", version=__version__)


@app.on_event("startup")
def on_startup():
    init_db()  # Create tables if they don't exist
    logger.info("DocVoice API started")


@app.get("/health")
def health():
    return {"status": "ok", "version": __version__}


app.include_router(api_router, prefix="/api")
