#!/usr/bin/env python3
"""
Document → audio conversion orchestrator.

:class:`DocumentConverter` runs one attempt for one document:

  1. initializing     (0 %)   claim the document for this attempt
  2. extracting_text  (5-10)  extract and persist the text
  3. preparing_tts    (15-20) sanitize, check text bounds
  4. tts_processing   (25-84) chunked synthesis, progress per chunk
  5. generating_cover (85)    best-effort first-page cover for PDFs
  6. saving_data      (90-95) store audio artifacts, checksums, duration
  7. completed        (100)

Every stage writes a progress snapshot and a conversion log entry.  Failures
are caught once, classified by :class:`~docvoice.utils.errors.ErrorKind`, and
routed through :func:`~docvoice.utils.errors.decide_retry`.  The caller gets
a :class:`ConversionOutcome` back; scheduling the retry is the Celery task's
job, not this module's.
"""

import io
import logging
import os
import socket
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from docvoice.models import Document
from docvoice.utils.blob_store import BlobNotFoundError, BlobStore
from docvoice.utils.clock import utcnow
from docvoice.utils.conversion_log import ConversionLog
from docvoice.utils.cover import COVER_MIME_TYPE, COVER_SOURCE_MIME_TYPES
from docvoice.utils.document_state import (
    DocumentStatus,
    can_transition,
    claim_for_processing,
    is_owned,
    merge_metadata,
    transition,
)
from docvoice.utils.errors import (
    PROTECTED_SOURCE_SOLUTIONS,
    TERMINAL_KINDS,
    ConversionError,
    DocumentValidationError,
    ErrorKind,
    ExtractionError,
    PersistenceError,
    RetryDecision,
    TTSError,
    UnprocessableTextError,
    decide_retry,
    error_kind_of,
)
from docvoice.utils.file_operations import hash_bytes
from docvoice.utils.progress import ERROR_PERCENTAGE, ProgressStore
from docvoice.utils.text_extraction import ExtractionMode, TextExtractor, classify_extraction_failure
from docvoice.utils.text_to_speech import (
    CHUNK_COMPLETED,
    CHUNK_FAILED,
    SpeechSynthesizer,
    SynthesisResult,
    sanitize_text_for_speech,
)

logger = logging.getLogger(__name__)

#: Audio formats that have a column on :class:`Document`.
AUDIO_FORMATS = ("mp3", "flac")

TTS_START_PERCENT = 25
TTS_END_PERCENT = 84

OUTCOME_COMPLETED = "completed"
OUTCOME_RETRY = "retry"
OUTCOME_FAILED = "failed"
OUTCOME_ABANDONED = "abandoned"


@dataclass
class ConversionOutcome:
    document_id: int
    state: str
    attempt: int
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    will_retry: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state == OUTCOME_COMPLETED

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "state": self.state,
            "attempt": self.attempt,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "will_retry": self.will_retry,
        }


@dataclass
class _Run:
    """State of one attempt."""

    document_id: int
    attempt: int
    started_at: datetime
    queue_job_id: Optional[str] = None
    last_percent: int = 0
    text_length: int = 0


class DocumentConverter:
    def __init__(
        self,
        session_factory,
        extractor: TextExtractor,
        synthesizer: SpeechSynthesizer,
        blob_store: BlobStore,
        progress: ProgressStore,
        conversion_log: ConversionLog,
        cover_generator: Optional[Callable[[bytes], Optional[bytes]]] = None,
        max_attempts: int = 3,
        ownership_window: timedelta = timedelta(minutes=5),
        min_text_length: int = 10,
        max_text_length: int = 500_000,
        queue_name: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        worker_name: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.extractor = extractor
        self.synthesizer = synthesizer
        self.blob_store = blob_store
        self.progress = progress
        self.conversion_log = conversion_log
        self.cover_generator = cover_generator
        self.max_attempts = max_attempts
        self.ownership_window = ownership_window
        self.min_text_length = min_text_length
        self.max_text_length = max_text_length
        self.queue_name = queue_name
        self.clock = clock
        self.worker_name = worker_name or socket.gethostname()
        self._extract = self._resolve_extraction(extractor)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process(self, document_id: int, prior_attempts: int = 0, queue_job_id: Optional[str] = None) -> ConversionOutcome:
        """Run one conversion attempt for *document_id*."""
        attempt = prior_attempts + 1
        with self.session_factory() as db:
            document = db.get(Document, document_id)
            if document is None:
                return self._abandon_missing(document_id, attempt, queue_job_id)

            try:
                self._validate(document)
            except DocumentValidationError as exc:
                logger.warning(f"[document {document_id}] Not processing: {exc.message}")
                return ConversionOutcome(document_id, OUTCOME_ABANDONED, attempt, ErrorKind.VALIDATION, exc.message)

            run = _Run(document_id=document_id, attempt=attempt, started_at=self.clock(), queue_job_id=queue_job_id)
            claimed = claim_for_processing(
                db,
                document_id,
                self.ownership_window,
                self._attempt_metadata(run),
                now=run.started_at,
            )
            if not claimed:
                message = "Document was claimed by another attempt"
                logger.warning(f"[document {document_id}] Not processing: {message}")
                return ConversionOutcome(document_id, OUTCOME_ABANDONED, attempt, ErrorKind.VALIDATION, message)

            logger.info(f"[document {document_id}] Starting conversion, attempt {attempt}/{self.max_attempts}")
            self._progress(run, 0, "Initializing document processing...", "initializing")
            self._log(
                run,
                "info",
                "initializing",
                f"Processing started (attempt {attempt}/{self.max_attempts})",
                {"attempt": attempt, "max_attempts": self.max_attempts, "title": document.title},
            )

            try:
                self._run_pipeline(db, document, run)
            except Exception as exc:
                return self._handle_failure(db, run, exc)

        return ConversionOutcome(document_id, OUTCOME_COMPLETED, attempt, message="Processing completed")

    def mark_permanently_failed(self, document_id: int, error: str, total_attempts: int) -> None:
        """
        Record that the queue gave up on *document_id*.

        Called from the task's failure hook, so it must never raise.
        """
        try:
            with self.session_factory() as db:
                document = db.get(Document, document_id)
                if document is None:
                    logger.warning(f"[document {document_id}] Cannot mark as failed: document not found")
                    return
                if document.status == DocumentStatus.COMPLETED.value:
                    logger.info(f"[document {document_id}] Ignoring late failure report, document is completed")
                    return
                now = self.clock()
                self._settle(document, DocumentStatus.FAILED)
                merge_metadata(
                    document,
                    error=error,
                    error_kind=(document.processing_metadata or {}).get("error_kind", ErrorKind.UNEXPECTED.value),
                    failed_at=now.isoformat(),
                    final_status="failed",
                    will_retry=False,
                    all_attempts_exhausted=True,
                    total_attempts=total_attempts,
                )
                db.commit()

            self.progress.update(document_id, ERROR_PERCENTAGE, f"Failed after {total_attempts} attempts", "failed")
            self.progress.mark_finished(document_id)
            self.conversion_log.record(
                document_id,
                "error",
                "failed_permanently",
                f"Job failed after {total_attempts} attempts: {error}",
                {"error": error, "total_attempts": total_attempts, "all_attempts_exhausted": True},
            )
            logger.error(f"[document {document_id}] Marked as permanently failed after {total_attempts} attempts")
        except Exception as exc:
            logger.error(f"[document {document_id}] Failed to record permanent failure: {exc}", exc_info=True)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run_pipeline(self, db, document: Document, run: _Run):
        text = self._extract_stage(db, document, run)
        speech_text = self._prepare_stage(run, text)
        result = self._tts_stage(db, document, run, speech_text)
        self._cover_stage(db, document, run)
        self._save_stage(db, document, run, result)
        self._complete_stage(db, document, run)

    def _extract_stage(self, db, document: Document, run: _Run) -> str:
        self._progress(run, 5, "Extracting text from document...", "extracting_text")
        self._log(run, "info", "extracting_text", "Starting text extraction", {"mime_type": document.file_mime_type})

        try:
            text = self._extract(document)
        except ConversionError:
            raise
        except Exception as exc:
            raise classify_extraction_failure(exc) from exc

        if not text or not text.strip():
            raise ExtractionError("No text could be extracted from the document")

        document.extracted_text = text
        db.commit()
        run.text_length = len(text)

        self._progress(run, 10, f"Extracted {len(text)} characters", "extracting_text")
        self._log(run, "success", "extracting_text", "Text extracted", {"text_length": len(text)})
        return text

    def _prepare_stage(self, run: _Run, text: str) -> str:
        self._progress(run, 15, "Preparing text for speech...", "preparing_tts")
        speech_text = sanitize_text_for_speech(text)

        if not speech_text:
            raise UnprocessableTextError("Text is empty after cleanup")
        if len(speech_text) < self.min_text_length:
            raise UnprocessableTextError(
                f"Text is too short for speech conversion ({len(speech_text)} < {self.min_text_length} characters)"
            )
        if len(speech_text) > self.max_text_length:
            raise UnprocessableTextError(
                f"Text is too long for speech conversion ({len(speech_text)} > {self.max_text_length} characters)"
            )

        self._progress(run, 20, "Text ready for speech conversion", "preparing_tts")
        self._log(run, "info", "preparing_tts", "Text prepared", {"text_length": len(speech_text)})
        return speech_text

    def _tts_stage(self, db, document: Document, run: _Run, text: str) -> SynthesisResult:
        self._progress(run, TTS_START_PERCENT, "Starting text-to-speech conversion...", "tts_starting")
        self._log(run, "info", "tts_starting", "Starting text-to-speech conversion", {"text_length": len(text)})

        def on_chunk_progress(chunk_index: int, total_chunks: int, chunk_status: str):
            try:
                self._chunk_progress(db, document, run, chunk_index, total_chunks, chunk_status)
            except Exception as exc:
                logger.warning(f"[document {run.document_id}] Chunk progress update failed: {exc}")

        try:
            result = self.synthesizer.convert_with_progress(text, on_chunk_progress=on_chunk_progress)
        except ConversionError:
            raise
        except Exception as exc:
            raise TTSError(f"Text-to-speech conversion failed: {exc}", cause=exc) from exc

        playable = [fmt for fmt in (result.formats if result else []) if fmt in AUDIO_FORMATS]
        if not playable:
            raise TTSError("Text-to-speech produced no playable audio")
        if result.duration_seconds is None:
            raise TTSError("Text-to-speech produced audio without a duration")

        self._log(
            run,
            "success",
            "tts_processing",
            "Text-to-speech conversion finished",
            {"formats": playable, "duration": result.duration_seconds, "failed_chunks": result.failed_chunks},
        )
        return result

    def _chunk_progress(self, db, document: Document, run: _Run, index: int, total: int, status: str):
        done = index + 1 if status in (CHUNK_COMPLETED, CHUNK_FAILED) else index
        span = TTS_END_PERCENT - TTS_START_PERCENT
        percent = TTS_START_PERCENT + (span * done) // max(total, 1)
        message = f"Converting chunk {index + 1} of {total} ({status})"
        self._progress(run, min(percent, TTS_END_PERCENT), message, "tts_processing")

        try:
            merge_metadata(
                document,
                current_chunk=index + 1,
                total_chunks=total,
                chunk_status=status,
                last_update=self.clock().isoformat(),
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.warning(f"[document {run.document_id}] Could not store chunk metadata: {exc}")

        level = "warning" if status == CHUNK_FAILED else "info"
        self._log(run, level, "tts_processing", message, {"chunk": index + 1, "total_chunks": total, "chunk_status": status})

    def _cover_stage(self, db, document: Document, run: _Run):
        if self.cover_generator is None or document.cover_path:
            return
        mime_type = (document.file_mime_type or "").split(";")[0].strip().lower()
        if mime_type not in COVER_SOURCE_MIME_TYPES:
            return

        self._progress(run, 85, "Generating cover image...", "generating_cover")
        try:
            png = self.cover_generator(self._source_bytes(document))
            if not png:
                return
            key = f"covers/{document.uuid}.png"
            self.blob_store.put(key, png)
            document.cover_path = key
            document.cover_mime_type = COVER_MIME_TYPE
            db.commit()
            self._log(run, "success", "generating_cover", "Cover generated", {"cover_path": key})
        except Exception as exc:
            db.rollback()
            logger.warning(f"[document {run.document_id}] Cover generation failed: {exc}")
            self._log(run, "warning", "generating_cover", f"Cover generation failed: {exc}", {"error": str(exc)})

    def _save_stage(self, db, document: Document, run: _Run, result: SynthesisResult):
        self._progress(run, 90, "Saving audio files...", "saving_data")
        try:
            total_size = 0
            stored = {}
            for fmt in AUDIO_FORMATS:
                data = result.audio.get(fmt)
                if not data:
                    continue
                key = f"audio/{document.uuid}.{fmt}"
                self.blob_store.put(key, data)
                setattr(document, f"{fmt}_path", key)
                setattr(document, f"{fmt}_checksum", hash_bytes(data))
                total_size += len(data)
                stored[fmt] = key

            now = self.clock()
            document.audio_size = total_size
            document.audio_duration = int(round(result.duration_seconds))
            merge_metadata(
                document,
                processed_at=now.isoformat(),
                processing_time_seconds=round((now - run.started_at).total_seconds(), 2),
                final_attempt=run.attempt,
                audio_formats=list(stored),
                audio_size=total_size,
                text_length=run.text_length,
                completion_status="success",
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            raise PersistenceError(f"Failed to save audio data: {exc}", cause=exc) from exc

        self._progress(run, 95, "Audio files saved", "saving_data")
        self._log(run, "success", "saving_data", "Audio saved", {"audio": stored, "audio_size": total_size})

    def _complete_stage(self, db, document: Document, run: _Run):
        try:
            transition(document, DocumentStatus.COMPLETED)
            document.processing_completed_at = self.clock()
            db.commit()
        except Exception as exc:
            db.rollback()
            raise PersistenceError(f"Failed to mark document completed: {exc}", cause=exc) from exc

        self._progress(run, 100, "Processing completed", "completed")
        self.progress.mark_finished(run.document_id)
        self._log(
            run,
            "success",
            "completed",
            "Document processed successfully",
            {"duration": document.audio_duration, "audio_formats": list(document.audio_paths())},
        )
        logger.info(f"[document {run.document_id}] Conversion completed on attempt {run.attempt}")

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _abandon_missing(self, document_id: int, attempt: int, queue_job_id: Optional[str]) -> ConversionOutcome:
        message = f"Document {document_id} not found"
        logger.warning(f"[document {document_id}] {message}, abandoning job")
        self.progress.clear(document_id)
        try:
            self.conversion_log.record(
                document_id,
                "error",
                "document_not_found",
                message,
                {"attempt": attempt},
                queue_job_id=queue_job_id,
                queue_name=self.queue_name,
            )
        except Exception as exc:
            logger.warning(f"[document {document_id}] Could not write conversion log: {exc}")
        return ConversionOutcome(document_id, OUTCOME_ABANDONED, attempt, ErrorKind.NOT_FOUND, message)

    def _handle_failure(self, db, run: _Run, exc: BaseException) -> ConversionOutcome:
        kind = error_kind_of(exc)
        message = exc.message if isinstance(exc, ConversionError) else str(exc) or exc.__class__.__name__
        decision = decide_retry(kind, run.attempt, self.max_attempts)
        if kind is ErrorKind.UNEXPECTED:
            logger.error(f"[document {run.document_id}] Unexpected error: {message}", exc_info=exc)
        else:
            logger.error(f"[document {run.document_id}] {kind.value} error on attempt {run.attempt}: {message}")

        db.rollback()
        document = db.get(Document, run.document_id)
        if document is None:
            logger.warning(f"[document {run.document_id}] Document disappeared during processing")
            self.progress.clear(run.document_id)
            return ConversionOutcome(run.document_id, OUTCOME_ABANDONED, run.attempt, ErrorKind.NOT_FOUND, message)

        now = self.clock()
        failure = {
            "error": message,
            "error_kind": kind.value,
            "failed_at": now.isoformat(),
            "failed_attempt": run.attempt,
            "processing_time_seconds": round((now - run.started_at).total_seconds(), 2),
        }

        if decision is RetryDecision.RETRY:
            self._settle(document, DocumentStatus.PENDING)
            document.processing_started_at = None
            merge_metadata(document, **failure, will_retry=True, next_attempt=run.attempt + 1)
            db.commit()

            self._progress(run, ERROR_PERCENTAGE, f"Error: {message}", "failed", force=True)
            self._log(
                run,
                "warning",
                "retry_scheduled",
                f"Attempt {run.attempt}/{self.max_attempts} failed, retry scheduled: {message}",
                {**failure, "max_attempts": self.max_attempts, "next_attempt": run.attempt + 1},
            )
            return ConversionOutcome(run.document_id, OUTCOME_RETRY, run.attempt, kind, message, will_retry=True)

        exhausted = kind not in TERMINAL_KINDS and run.attempt >= self.max_attempts
        self._settle(document, DocumentStatus.FAILED)
        extra = {}
        if kind is ErrorKind.PROTECTED_SOURCE:
            extra = {
                "error_type": "pdf_protected",
                "error_message": message,
                "user_action_required": True,
                "suggested_solutions": list(PROTECTED_SOURCE_SOLUTIONS),
            }
        merge_metadata(
            document,
            **failure,
            **extra,
            final_status="failed",
            will_retry=False,
            all_attempts_exhausted=exhausted,
        )
        db.commit()

        self._progress(run, ERROR_PERCENTAGE, f"Error: {message}", "failed", force=True)
        self.progress.mark_finished(run.document_id)
        self._log(
            run,
            "error",
            "failed_permanently",
            f"Processing failed permanently: {message}",
            {**failure, **extra, "max_attempts": self.max_attempts, "all_attempts_exhausted": exhausted},
        )
        return ConversionOutcome(run.document_id, OUTCOME_FAILED, run.attempt, kind, message)

    def _settle(self, document: Document, target: DocumentStatus):
        if document.status == target.value:
            return
        if can_transition(document.status, target):
            transition(document, target)
        else:
            # The reconciler or an admin moved the document mid-run
            logger.warning(f"[document {document.id}] Forcing {document.status} -> {target.value} after failure")
            document.status = target.value

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate(self, document: Document):
        if not document.file_path and not document.file_content:
            raise DocumentValidationError(f"Document {document.id} has no source file")
        if document.status == DocumentStatus.COMPLETED.value:
            raise DocumentValidationError(f"Document {document.id} is already completed")
        if document.status == DocumentStatus.FAILED.value:
            raise DocumentValidationError(f"Document {document.id} has failed, reprocess required")
        if document.deleted_at is not None:
            raise DocumentValidationError(f"Document {document.id} is deleted")
        if is_owned(document, self.ownership_window, now=self.clock()):
            raise DocumentValidationError(
                f"Document {document.id} is already being processed since {document.processing_started_at}"
            )

    def _attempt_metadata(self, run: _Run) -> dict:
        return {
            "attempt": run.attempt,
            "max_attempts": self.max_attempts,
            "started_at": run.started_at.isoformat(),
            "process_id": os.getpid(),
            "worker": self.worker_name,
            "queue_name": self.queue_name,
            "queue_job_id": run.queue_job_id,
        }

    def _progress(self, run: _Run, percent: int, message: str, stage: str, force: bool = False):
        if not force:
            percent = max(percent, run.last_percent)
            run.last_percent = percent
        self.progress.update(run.document_id, percent, message, stage, job_id=run.queue_job_id)

    def _log(self, run: _Run, status: str, stage: str, message: str, meta: Optional[dict] = None):
        meta = dict(meta or {})
        meta.setdefault("attempt", run.attempt)
        try:
            self.conversion_log.record(
                run.document_id,
                status,
                stage,
                message,
                meta,
                queue_job_id=run.queue_job_id,
                queue_name=self.queue_name,
            )
        except Exception as exc:
            logger.warning(f"[document {run.document_id}] Could not write conversion log ({stage}): {exc}")

    # Source access --------------------------------------------------------

    def _resolve_extraction(self, extractor: TextExtractor) -> Callable[[Document], str]:
        mode = getattr(extractor, "mode", None)
        if mode is ExtractionMode.PATH:
            return self._extract_from_path
        if mode is ExtractionMode.STREAM:
            return self._extract_from_stream
        if mode is ExtractionMode.BYTES:
            return self._extract_from_bytes
        raise TypeError(f"{type(extractor).__name__} does not declare an extraction mode")

    def _source_bytes(self, document: Document) -> bytes:
        if document.file_path:
            try:
                return self.blob_store.get(document.file_path)
            except BlobNotFoundError:
                if not document.file_content:
                    raise ExtractionError(f"Source file {document.file_path} not found in storage")
                logger.warning(f"[document {document.id}] Source blob missing, using inline content")
        if document.file_content:
            return bytes(document.file_content)
        raise ExtractionError(f"Document {document.id} has no readable source")

    def _extract_from_path(self, document: Document) -> str:
        if document.file_path:
            local = self.blob_store.local_path(document.file_path)
            if local:
                return self.extractor.extract_from_path(local, document.file_mime_type)

        suffix = os.path.splitext(document.file_name or "")[1]
        fd, tmp_path = tempfile.mkstemp(prefix="source-", suffix=suffix)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(self._source_bytes(document))
            return self.extractor.extract_from_path(tmp_path, document.file_mime_type)
        finally:
            os.unlink(tmp_path)

    def _extract_from_stream(self, document: Document) -> str:
        if document.file_path:
            try:
                with self.blob_store.open(document.file_path) as stream:
                    return self.extractor.extract_from_stream(stream, document.file_mime_type)
            except BlobNotFoundError:
                if not document.file_content:
                    raise ExtractionError(f"Source file {document.file_path} not found in storage")
        return self.extractor.extract_from_stream(io.BytesIO(self._source_bytes(document)), document.file_mime_type)

    def _extract_from_bytes(self, document: Document) -> str:
        return self.extractor.extract(self._source_bytes(document), document.file_mime_type)


def build_default_converter() -> DocumentConverter:
    """Wire a converter from application settings."""
    from docvoice.config import settings
    from docvoice.database import SessionLocal
    from docvoice.utils.blob_store import get_blob_store
    from docvoice.utils.cover import generate_pdf_cover
    from docvoice.utils.progress import build_progress_store
    from docvoice.utils.text_extraction import PyMuPDFTextExtractor
    from docvoice.utils.text_to_speech import GeminiSpeechSynthesizer

    return DocumentConverter(
        session_factory=SessionLocal,
        extractor=PyMuPDFTextExtractor(),
        synthesizer=GeminiSpeechSynthesizer.from_settings(settings),
        blob_store=get_blob_store(),
        progress=build_progress_store(),
        conversion_log=ConversionLog(SessionLocal),
        cover_generator=generate_pdf_cover,
        max_attempts=settings.conversion_max_attempts,
        ownership_window=timedelta(minutes=settings.ownership_window_minutes),
        min_text_length=settings.tts_min_text_length,
        max_text_length=settings.tts_max_text_length,
        queue_name=settings.conversion_queue,
    )
