"""
Short-lived per-document progress snapshots for the admin dashboard.

Snapshots live under ``document_progress_{id}`` as JSON.  Writes are
fail-open: a cache outage must never stop a conversion, so errors are logged
and swallowed.  When no snapshot exists readers fall back to the document's
status via :meth:`ProgressStore.snapshot_for`.
"""

import json
import logging
from typing import Any, Optional

from docvoice.utils.cache import KeyValueClient
from docvoice.utils.clock import utcnow

logger = logging.getLogger(__name__)

#: Percentage written when a run fails.
ERROR_PERCENTAGE = -1

DEFAULT_TTL = 1800
DEFAULT_VISIBLE_TTL = 600

STATUS_MESSAGES = {
    "pending": "Waiting to be processed...",
    "processing": "Processing...",
    "completed": "Processing finished",
    "failed": "Processing failed",
}


def progress_key(document_id: int) -> str:
    return f"document_progress_{document_id}"


def completed_flag_key(document_id: int) -> str:
    return f"{progress_key(document_id)}_completed"


class ProgressStore:
    def __init__(
        self,
        client: KeyValueClient,
        ttl: int = DEFAULT_TTL,
        visible_ttl: int = DEFAULT_VISIBLE_TTL,
        key_prefix: str = "",
    ):
        self.client = client
        self.ttl = ttl
        self.visible_ttl = visible_ttl
        self.key_prefix = key_prefix

    def _key(self, document_id: int) -> str:
        return f"{self.key_prefix}{progress_key(document_id)}"

    def _flag_key(self, document_id: int) -> str:
        return f"{self.key_prefix}{completed_flag_key(document_id)}"

    def update(
        self,
        document_id: int,
        percentage: int,
        message: str,
        stage: str,
        job_id: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        """Overwrite the snapshot for *document_id*; returns it, or ``None`` on cache error."""
        snapshot = {
            "document_id": document_id,
            "percentage": int(percentage),
            "message": message,
            "stage": stage,
            "updated_at": utcnow().isoformat(),
            "job_id": job_id,
        }
        try:
            self.client.setex(self._key(document_id), self.ttl, json.dumps(snapshot))
        except Exception as exc:
            logger.warning(f"[document {document_id}] Failed to update progress ({stage}): {exc}")
            return None
        return snapshot

    def get(self, document_id: int) -> Optional[dict[str, Any]]:
        try:
            raw = self.client.get(self._key(document_id))
        except Exception as exc:
            logger.debug(f"Progress read failed for document {document_id}: {exc}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding unreadable progress snapshot for document {document_id}")
            return None

    def mark_finished(self, document_id: int) -> None:
        """Keep the final snapshot visible for the short window, then let it expire."""
        try:
            self.client.expire(self._key(document_id), self.visible_ttl)
            self.client.setex(self._flag_key(document_id), self.visible_ttl, "1")
        except Exception as exc:
            logger.warning(f"[document {document_id}] Failed to shorten progress TTL: {exc}")

    def clear(self, document_id: int) -> None:
        try:
            self.client.delete(self._key(document_id), self._flag_key(document_id))
        except Exception as exc:
            logger.warning(f"[document {document_id}] Failed to clear progress: {exc}")

    def snapshot_for(self, document) -> dict[str, Any]:
        """Return the live snapshot or a coarse one derived from ``document.status``."""
        snapshot = self.get(document.id)
        if snapshot is not None:
            snapshot["found"] = True
            snapshot.setdefault("status", document.status)
            snapshot["document_title"] = document.title
            return snapshot
        return {
            "document_id": document.id,
            "document_title": document.title,
            "status": document.status,
            "percentage": 100 if document.status == "completed" else 0,
            "message": STATUS_MESSAGES.get(document.status, "Unknown status"),
            "stage": document.status,
            "updated_at": document.updated_at.isoformat() if document.updated_at else None,
            "found": False,
        }


def build_progress_store() -> ProgressStore:
    """Progress store on the configured Redis instance."""
    from docvoice.config import settings
    from docvoice.utils.cache import create_cache_client

    return ProgressStore(
        create_cache_client(settings.redis_url),
        ttl=settings.progress_ttl_seconds,
        visible_ttl=settings.progress_visible_seconds,
        key_prefix=settings.cache_key_prefix,
    )
