"""Text extraction contract and the PyMuPDF-backed default implementation.

An extractor declares up front how it wants to receive the source: as a file
path, as a binary stream, or as raw bytes.  The converter reads that
declaration once and hands every document over in the matching shape.
"""

import logging
import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import BinaryIO

import fitz  # PyMuPDF

from docvoice.utils.errors import ConversionError, ExtractionError, ProtectedSourceError

logger = logging.getLogger(__name__)

#: Stopgap for engines that only report encryption through their message text.
_PROTECTED_PATTERN = re.compile(r"secured|password|protected|encrypted", re.IGNORECASE)

#: MIME types PyMuPDF can open as documents.
PYMUPDF_MIME_TYPES = {
    "application/pdf": "pdf",
    "application/epub+zip": "epub",
    "application/vnd.ms-xpsdocument": "xps",
    "application/oxps": "xps",
}


class ExtractionMode(str, Enum):
    PATH = "path"
    STREAM = "stream"
    BYTES = "bytes"


class TextExtractor(ABC):
    mode: ExtractionMode


class PathTextExtractor(TextExtractor):
    mode = ExtractionMode.PATH

    @abstractmethod
    def extract_from_path(self, path: str, mime_type: str) -> str: ...


class StreamTextExtractor(TextExtractor):
    mode = ExtractionMode.STREAM

    @abstractmethod
    def extract_from_stream(self, stream: BinaryIO, mime_type: str) -> str: ...


class BytesTextExtractor(TextExtractor):
    mode = ExtractionMode.BYTES

    @abstractmethod
    def extract(self, data: bytes, mime_type: str) -> str: ...


def classify_extraction_failure(exc: BaseException) -> ConversionError:
    """Map an arbitrary extractor exception onto the pipeline taxonomy."""
    if isinstance(exc, ConversionError):
        return exc
    message = str(exc)
    if _PROTECTED_PATTERN.search(message):
        return ProtectedSourceError(message, cause=exc)
    return ExtractionError(f"Text extraction failed: {message}", cause=exc)


class PyMuPDFTextExtractor(PathTextExtractor):
    """Extracts text page by page with PyMuPDF; ``text/*`` files are read as-is."""

    def extract_from_path(self, path: str, mime_type: str) -> str:
        mime_type = (mime_type or "").split(";")[0].strip().lower()
        if mime_type.startswith("text/"):
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                return f.read()

        filetype = PYMUPDF_MIME_TYPES.get(mime_type)
        if filetype is None:
            raise ExtractionError(f"Unsupported file type for text extraction: {mime_type or 'unknown'}")

        try:
            doc = fitz.open(path, filetype=filetype)
        except Exception as exc:
            raise classify_extraction_failure(exc) from exc

        try:
            if doc.needs_pass or doc.is_encrypted:
                raise ProtectedSourceError(f"Document {path} is encrypted and requires a password")
            pages = [page.get_text("text") for page in doc]
        finally:
            doc.close()

        logger.debug(f"Extracted {len(pages)} page(s) from {path}")
        return "\n".join(pages).strip()
