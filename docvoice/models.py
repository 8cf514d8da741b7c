# docvoice/models.py
#!/usr/bin/env python3

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, LargeBinary, String, Text, event, select

from docvoice.database import Base
from docvoice.utils.clock import utcnow
from docvoice.utils.filename_utils import get_unique_slug, slugify

DOCUMENT_TYPES = ("publication", "brs")


class Document(Base):
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String(36), unique=True, index=True, nullable=False, default=lambda: str(uuid.uuid4()))

    title = Column(String, nullable=False)
    slug = Column(String, unique=True, index=True, nullable=False)
    type = Column(String(32), nullable=False, default="publication")  # "publication" / "brs"
    year = Column(Integer)
    indicator_id = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)

    # Source artifact, addressed by key in the "documents" blob namespace
    file_name = Column(String)
    file_mime_type = Column(String)
    file_size = Column(Integer)
    file_path = Column(String, nullable=True)
    # Legacy inline upload, only read when file_path is empty
    file_content = Column(LargeBinary, nullable=True)

    # Derived artifacts
    cover_path = Column(String, nullable=True)
    cover_mime_type = Column(String, nullable=True)
    extracted_text = Column(Text, nullable=True)
    mp3_path = Column(String, nullable=True)
    mp3_checksum = Column(String(64), nullable=True)
    flac_path = Column(String, nullable=True)
    flac_checksum = Column(String(64), nullable=True)
    audio_size = Column(Integer, nullable=True)
    audio_duration = Column(Integer, nullable=True)  # seconds

    # "pending" / "processing" / "completed" / "failed"
    status = Column(String(16), nullable=False, default="pending", index=True)
    processing_started_at = Column(DateTime, nullable=True)
    processing_completed_at = Column(DateTime, nullable=True)
    processing_metadata = Column(JSON, nullable=True)

    download_count = Column(Integer, nullable=False, default=0)
    play_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(Integer, nullable=True)

    # Soft deletion tombstone
    deleted_at = Column(DateTime, nullable=True, index=True)
    deleted_by = Column(Integer, nullable=True)
    deleted_reason = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Document id={self.id} status={self.status!r} title={self.title!r}>"

    def audio_paths(self) -> dict:
        """Return the stored audio keys by format."""
        paths = {}
        if self.mp3_path:
            paths["mp3"] = self.mp3_path
        if self.flac_path:
            paths["flac"] = self.flac_path
        return paths

    def has_audio(self) -> bool:
        return bool(self.audio_paths()) and self.audio_duration is not None

    def has_cover(self) -> bool:
        return bool(self.cover_path)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def audio_duration_formatted(self) -> str:
        if not self.audio_duration:
            return "00:00"
        minutes, seconds = divmod(int(self.audio_duration), 60)
        return f"{minutes:02d}:{seconds:02d}"

    def file_size_formatted(self) -> str:
        if not self.file_size:
            return "0 B"
        size = float(self.file_size)
        units = ["B", "KB", "MB", "GB"]
        i = 0
        while size >= 1024 and i < len(units) - 1:
            size /= 1024
            i += 1
        return f"{round(size, 2):g} {units[i]}"


@event.listens_for(Document, "before_insert")
def _assign_slug(mapper, connection, target):
    if target.slug:
        return
    base = slugify(f"{target.title}-{target.year}" if target.year else target.title)
    taken = connection.execute(
        select(Document.__table__.c.slug).where(Document.__table__.c.slug.like(f"{base}%"))
    ).scalars()
    target.slug = get_unique_slug(base, taken)


class DocumentConversionLog(Base):
    """Append-only audit trail of pipeline stage events.

    ``document_id`` deliberately carries no foreign key: entries must outlive
    hard-deleted documents and record lookups for ids that never existed.
    """

    __tablename__ = "document_conversion_logs"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=True)
    job_name = Column(String, nullable=False)
    stage = Column(String, nullable=False)  # e.g. "extracting_text", "tts_processing"
    status = Column(String(16), nullable=False)  # "info" / "success" / "warning" / "error"
    message = Column(Text, nullable=True)
    meta = Column(JSON, nullable=True)
    queue_job_id = Column(String, nullable=True)
    queue_name = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class QueueJob(Base):
    """A dispatched conversion work unit that has not finished yet."""

    __tablename__ = "queue_jobs"

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(String, unique=True, index=True, nullable=False)
    document_id = Column(Integer, nullable=False, index=True)
    job_name = Column(String, nullable=False)
    queue_name = Column(String, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    reserved_at = Column(DateTime, nullable=True)
    available_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class FailedQueueJob(Base):
    __tablename__ = "failed_queue_jobs"

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(String, index=True, nullable=False)
    document_id = Column(Integer, nullable=True, index=True)
    queue_name = Column(String, nullable=True)
    exception = Column(Text, nullable=True)
    failed_at = Column(DateTime, nullable=False, default=utcnow)
