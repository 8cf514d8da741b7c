#!/usr/bin/env python3
"""Text-to-speech contract and the Gemini TTS implementation.

:class:`SpeechSynthesizer` is what the converter depends on: it takes the
full text plus a per-chunk progress callback and returns encoded audio by
format with the total duration.

:class:`GeminiSpeechSynthesizer` splits text into sentence-aligned chunks of
roughly 500 characters, calls the Gemini ``generateContent`` endpoint once per
chunk (rotating API keys on HTTP 429), converts the returned 24 kHz PCM into
WAV segments and joins them into MP3 (and optionally FLAC) with ffmpeg.
A failure budget stops the run early when the API is clearly unhealthy:

* 3 consecutive failed chunks, or
* ``min(5, ceil(30 %))`` failed chunks in total.

Failed chunks below that budget are skipped.
"""

import base64
import logging
import math
import os
import re
import shutil
import subprocess
import tempfile
import time
import unicodedata
import wave
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional

import requests

from docvoice.utils.errors import TTSError

logger = logging.getLogger(__name__)

#: ``on_chunk_progress(chunk_index, total_chunks, chunk_status)``
ChunkProgressCallback = Callable[[int, int, str], None]

CHUNK_PROCESSING = "processing"
CHUNK_COMPLETED = "completed"
CHUNK_FAILED = "failed"

DEFAULT_MAX_CHUNK_LENGTH = 500
PCM_SAMPLE_RATE = 24000


@dataclass
class SynthesisResult:
    audio: dict[str, bytes] = field(default_factory=dict)
    duration_seconds: Optional[float] = None
    total_chunks: int = 0
    failed_chunks: int = 0

    @property
    def formats(self) -> list[str]:
        return [fmt for fmt, data in self.audio.items() if data]


class SpeechSynthesizer(ABC):
    @abstractmethod
    def convert_with_progress(
        self, text: str, on_chunk_progress: Optional[ChunkProgressCallback] = None
    ) -> SynthesisResult: ...


def sanitize_text_for_speech(text: str) -> str:
    """Strip symbols a voice cannot read, collapse whitespace and runaway repeats."""
    text = "".join(ch if ch.isalnum() or ch.isspace() or _is_punctuation(ch) else " " for ch in text or "")
    text = re.sub(r"\s+", " ", text)
    text = re.sub(r"([.!?])\s*([.!?])", r"\1 ", text)
    text = re.sub(r"(.)\1{10,}", r"\1\1\1", text)
    return text.strip()


def _is_punctuation(ch: str) -> bool:
    return unicodedata.category(ch).startswith("P")


def split_text_for_tts(text: str, max_chunk_length: int = DEFAULT_MAX_CHUNK_LENGTH) -> list[str]:
    """Split text into chunks of at most ``max_chunk_length`` characters.

    Sentences are kept whole where possible; sentences longer than the limit
    are split on clause punctuation, and clauses longer than the limit on
    word boundaries.
    """
    sentences = [s for s in re.split(r"(?<=[.!?])\s+", text.strip()) if s]
    chunks: list[str] = []
    current = ""

    def flush():
        nonlocal current
        if current.strip():
            chunks.append(current.strip())
        current = ""

    for sentence in sentences:
        for piece in _bounded_pieces(sentence, max_chunk_length):
            candidate = f"{current} {piece}" if current else piece
            if len(candidate) <= max_chunk_length:
                current = candidate
            else:
                flush()
                current = piece
    flush()
    return chunks


def _bounded_pieces(sentence: str, limit: int) -> list[str]:
    if len(sentence) <= limit:
        return [sentence]
    pieces = []
    for clause in re.split(r"(?<=[,;:])\s*", sentence):
        if not clause:
            continue
        if len(clause) <= limit:
            pieces.append(clause)
            continue
        words, line = clause.split(" "), ""
        for word in words:
            while len(word) > limit:
                if line:
                    pieces.append(line)
                    line = ""
                pieces.append(word[:limit])
                word = word[limit:]
            candidate = f"{line} {word}" if line else word
            if len(candidate) <= limit:
                line = candidate
            else:
                pieces.append(line)
                line = word
        if line:
            pieces.append(line)
    return pieces


class GeminiSpeechSynthesizer(SpeechSynthesizer):
    max_consecutive_failures = 3

    def __init__(
        self,
        api_keys: list[str],
        tts_url: str,
        voice: str = "Kore",
        max_chunk_length: int = DEFAULT_MAX_CHUNK_LENGTH,
        chunk_timeout: int = 120,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        generate_flac: bool = True,
        requests_per_key: int = 3,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not api_keys:
            raise ValueError("GeminiSpeechSynthesizer needs at least one API key")
        self.api_keys = api_keys
        self.tts_url = tts_url
        self.voice = voice
        self.max_chunk_length = max_chunk_length
        self.chunk_timeout = chunk_timeout
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.generate_flac = generate_flac
        self.requests_per_key = requests_per_key
        self.session = session or requests.Session()
        self.sleep = sleep
        self.current_key_index = 0

    @classmethod
    def from_settings(cls, settings) -> "GeminiSpeechSynthesizer":
        keys = [k.strip() for k in settings.gemini_api_keys.split(",") if k.strip()]
        return cls(
            api_keys=keys,
            tts_url=settings.gemini_tts_url,
            voice=settings.gemini_voice,
            max_chunk_length=settings.tts_chunk_size,
            chunk_timeout=settings.tts_chunk_timeout,
            ffmpeg_path=settings.ffmpeg_path,
            ffprobe_path=settings.ffprobe_path,
            generate_flac=settings.tts_generate_flac,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def convert_with_progress(
        self, text: str, on_chunk_progress: Optional[ChunkProgressCallback] = None
    ) -> SynthesisResult:
        clean = sanitize_text_for_speech(text)
        if not clean:
            raise TTSError("Text is empty after sanitizing")

        chunks = split_text_for_tts(clean, self.max_chunk_length)
        total = len(chunks)
        max_failed = min(5, math.ceil(total * 0.3))
        logger.info(f"Synthesizing {len(clean)} characters in {total} chunk(s)")

        def notify(index: int, status: str):
            if on_chunk_progress is not None:
                on_chunk_progress(index, total, status)

        workdir = tempfile.mkdtemp(prefix="tts-")
        try:
            segments: list[str] = []
            failed = consecutive = 0
            for index, chunk in enumerate(chunks):
                notify(index, CHUNK_PROCESSING)
                try:
                    pcm = self._synthesize_chunk(chunk, index)
                    segments.append(self._write_wav(pcm, os.path.join(workdir, f"chunk_{index:05d}.wav")))
                except Exception as exc:
                    failed += 1
                    consecutive += 1
                    logger.error(f"Chunk {index + 1}/{total} failed: {exc}")
                    notify(index, CHUNK_FAILED)
                    if consecutive >= self.max_consecutive_failures:
                        raise TTSError(f"Too many consecutive chunk failures ({consecutive})") from exc
                    if failed >= max_failed:
                        raise TTSError(f"Too many failed chunks ({failed}/{total})") from exc
                    continue
                consecutive = 0
                notify(index, CHUNK_COMPLETED)
                self.sleep(self._adaptive_delay(consecutive, failed))

            if not segments:
                raise TTSError("All TTS chunks failed")

            mp3_path = self._combine_to_mp3(segments, os.path.join(workdir, "combined.mp3"))
            audio = {"mp3": _read(mp3_path)}
            if self.generate_flac:
                try:
                    audio["flac"] = _read(self._transcode(mp3_path, os.path.join(workdir, "combined.flac"), "flac"))
                except Exception as exc:
                    logger.warning(f"FLAC conversion failed, continuing with MP3 only: {exc}")

            return SynthesisResult(
                audio=audio,
                duration_seconds=self._probe_duration(mp3_path),
                total_chunks=total,
                failed_chunks=failed,
            )
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _switch_api_key(self):
        old = self.current_key_index
        self.current_key_index = (self.current_key_index + 1) % len(self.api_keys)
        logger.warning(f"Switching TTS API key {old} -> {self.current_key_index}")

    @staticmethod
    def _adaptive_delay(consecutive_failures: int, total_failures: int) -> float:
        """Pause between chunks in seconds; grows with recent failures."""
        millis = 200 + min(consecutive_failures * 500, 2000) + min(total_failures * 100, 1000)
        return millis / 1000

    def _synthesize_chunk(self, text: str, index: int) -> bytes:
        """Return raw 16-bit PCM for one chunk, retrying across keys."""
        max_attempts = min(len(self.api_keys) * self.requests_per_key, 15)
        payload = {
            "contents": [{"role": "user", "parts": [{"text": text}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {"voiceConfig": {"prebuiltVoiceConfig": {"voiceName": self.voice}}},
            },
        }
        last_error = None
        for attempt in range(max_attempts):
            try:
                response = self.session.post(
                    self.tts_url,
                    params={"key": self.api_keys[self.current_key_index]},
                    json=payload,
                    timeout=(30, self.chunk_timeout),
                )
            except requests.RequestException as exc:
                last_error = f"Connection error: {exc}"
                self.sleep(min(attempt + 2, 10))
            else:
                if response.status_code == 200:
                    return self._decode_audio(response.json(), index)
                last_error = f"HTTP {response.status_code}: {response.text[:500]}"
                if response.status_code == 429:
                    self._switch_api_key()
                    self.sleep(min(attempt + 1, 5))
                    continue
                if response.status_code == 400:
                    raise TTSError(f"Bad request for chunk {index}: {text[:100]}")
                self.sleep(5 if response.status_code >= 500 else min(2**attempt, 8))

            if (attempt + 1) % self.requests_per_key == 0:
                self._switch_api_key()

        raise TTSError(f"Chunk {index} failed after {max_attempts} attempts. Last error: {last_error}")

    @staticmethod
    def _decode_audio(data: dict, index: int) -> bytes:
        try:
            inline = data["candidates"][0]["content"]["parts"][0]["inlineData"]
        except (KeyError, IndexError, TypeError) as exc:
            raise TTSError(f"Invalid response structure for chunk {index}") from exc
        content = inline.get("data")
        if not content:
            raise TTSError(f"Empty audio content for chunk {index}")
        return base64.b64decode(content)

    @staticmethod
    def _write_wav(pcm: bytes, path: str) -> str:
        with wave.open(path, "wb") as wav:
            wav.setnchannels(1)
            wav.setsampwidth(2)
            wav.setframerate(PCM_SAMPLE_RATE)
            wav.writeframes(pcm)
        return path

    def _run_ffmpeg(self, args: list[str]):
        try:
            subprocess.run([self.ffmpeg_path, "-y", *args], check=True, capture_output=True)
        except subprocess.CalledProcessError as e:
            raise TTSError(f"ffmpeg failed: {e.stderr.decode(errors='replace')[-500:]}") from e
        except OSError as e:
            raise TTSError(f"ffmpeg not available at {self.ffmpeg_path}: {e}") from e

    def _combine_to_mp3(self, segments: list[str], output: str) -> str:
        list_file = os.path.join(os.path.dirname(output), "segments.txt")
        with open(list_file, "w") as f:
            for segment in segments:
                f.write(f"file '{segment}'\n")
        self._run_ffmpeg(
            ["-f", "concat", "-safe", "0", "-i", list_file, "-codec:a", "libmp3lame", "-b:a", "128k", output]
        )
        return output

    def _transcode(self, source: str, output: str, codec: str) -> str:
        self._run_ffmpeg(["-i", source, "-codec:a", codec, output])
        return output

    def _probe_duration(self, path: str) -> float:
        try:
            out = subprocess.run(
                [
                    self.ffprobe_path,
                    "-v",
                    "quiet",
                    "-show_entries",
                    "format=duration",
                    "-of",
                    "default=noprint_wrappers=1:nokey=1",
                    path,
                ],
                check=True,
                capture_output=True,
                text=True,
            ).stdout
            return float(out.strip())
        except (subprocess.SubprocessError, OSError, ValueError) as exc:
            logger.warning(f"Could not probe audio duration, assuming 0: {exc}")
            return 0.0


def _read(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()
