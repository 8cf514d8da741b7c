"""
Test doubles shared by the test modules.
"""

from datetime import datetime

from docvoice.utils.progress import ProgressStore
from docvoice.utils.text_extraction import BytesTextExtractor
from docvoice.utils.text_to_speech import CHUNK_COMPLETED, CHUNK_PROCESSING, SpeechSynthesizer, SynthesisResult


class FakeClock:
    """Controllable replacement for ``utcnow``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class StubExtractor(BytesTextExtractor):
    """Returns a fixed text, or raises a given exception."""

    def __init__(self, text: str = "Hello world", error: Exception | None = None):
        self.text = text
        self.error = error
        self.calls = []

    def extract(self, data: bytes, mime_type: str) -> str:
        self.calls.append((data, mime_type))
        if self.error is not None:
            raise self.error
        return self.text


class StubSynthesizer(SpeechSynthesizer):
    """Reports progress for a fixed number of chunks and returns canned audio."""

    def __init__(self, duration: float | None = 5, chunks: int = 2, audio=None, error: Exception | None = None):
        self.duration = duration
        self.chunks = chunks
        self.audio = audio if audio is not None else {"mp3": b"ID3-fake-mp3", "flac": b"fLaC-fake"}
        self.error = error
        self.calls = []

    def convert_with_progress(self, text, on_chunk_progress=None):
        self.calls.append(text)
        for index in range(self.chunks):
            if on_chunk_progress is not None:
                on_chunk_progress(index, self.chunks, CHUNK_PROCESSING)
                on_chunk_progress(index, self.chunks, CHUNK_COMPLETED)
        if self.error is not None:
            raise self.error
        return SynthesisResult(audio=dict(self.audio), duration_seconds=self.duration, total_chunks=self.chunks)


class RecordingProgressStore(ProgressStore):
    """Progress store that also keeps every snapshot it wrote."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.history = []

    def update(self, document_id, percentage, message, stage, job_id=None):
        snapshot = super().update(document_id, percentage, message, stage, job_id=job_id)
        if snapshot is not None:
            self.history.append(snapshot)
        return snapshot

