"""
Error taxonomy for the conversion pipeline and the retry policy built on it.

Each stage raises a :class:`ConversionError` subclass carrying an
:class:`ErrorKind`.  Whether a failed attempt is retried is decided by
:func:`decide_retry` from the kind and the attempt counters alone, never from
the text of an exception message.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    PROTECTED_SOURCE = "protected_source"
    EXTRACTION = "extraction"
    UNPROCESSABLE_TEXT = "unprocessable_text"
    TTS = "tts"
    PERSISTENCE = "persistence"
    UNEXPECTED = "unexpected"


class RetryDecision(str, Enum):
    ABANDON = "abandon"
    RETRY = "retry"
    FAIL_PERMANENTLY = "fail_permanently"


#: Kinds that mean the caller asked for something impossible; nothing is written.
ABANDON_KINDS = frozenset({ErrorKind.NOT_FOUND, ErrorKind.VALIDATION})

#: Kinds that another attempt cannot fix.
TERMINAL_KINDS = frozenset({ErrorKind.PROTECTED_SOURCE, ErrorKind.UNPROCESSABLE_TEXT})

#: Remediations offered to the uploader when the source is encrypted.
PROTECTED_SOURCE_SOLUTIONS = [
    "remove_pdf_protection",
    "convert_to_word",
    "print_to_unprotected_pdf",
    "contact_admin",
]


class ConversionError(Exception):
    """Base class for failures raised inside the conversion pipeline."""

    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class DocumentNotFoundError(ConversionError):
    kind = ErrorKind.NOT_FOUND


class DocumentValidationError(ConversionError):
    kind = ErrorKind.VALIDATION


class ProtectedSourceError(ConversionError):
    """The source file is password protected or encrypted."""

    kind = ErrorKind.PROTECTED_SOURCE


class ExtractionError(ConversionError):
    kind = ErrorKind.EXTRACTION


class UnprocessableTextError(ConversionError):
    """Extracted text is outside the bounds the speech engine accepts."""

    kind = ErrorKind.UNPROCESSABLE_TEXT


class TTSError(ConversionError):
    kind = ErrorKind.TTS


class PersistenceError(ConversionError):
    kind = ErrorKind.PERSISTENCE


def error_kind_of(exc: BaseException) -> ErrorKind:
    """Return the taxonomy kind of *exc*; untyped exceptions are ``UNEXPECTED``."""
    if isinstance(exc, ConversionError):
        return exc.kind
    return ErrorKind.UNEXPECTED


def decide_retry(kind: ErrorKind, current_attempt: int, max_attempts: int) -> RetryDecision:
    """Decide what happens to a document after a failed attempt.

    Args:
        kind: Classification of the failure.
        current_attempt: 1-based number of the attempt that just failed.
        max_attempts: Attempt cap for the document.

    Returns:
        ``ABANDON`` for caller errors, ``FAIL_PERMANENTLY`` for terminal kinds or
        once the cap is reached, ``RETRY`` otherwise.

    Examples::

        >>> decide_retry(ErrorKind.TTS, 1, 3)
        <RetryDecision.RETRY: 'retry'>
        >>> decide_retry(ErrorKind.TTS, 3, 3)
        <RetryDecision.FAIL_PERMANENTLY: 'fail_permanently'>
        >>> decide_retry(ErrorKind.PROTECTED_SOURCE, 1, 3)
        <RetryDecision.FAIL_PERMANENTLY: 'fail_permanently'>
    """
    if kind in ABANDON_KINDS:
        return RetryDecision.ABANDON
    if kind in TERMINAL_KINDS:
        return RetryDecision.FAIL_PERMANENTLY
    if current_attempt >= max_attempts:
        return RetryDecision.FAIL_PERMANENTLY
    return RetryDecision.RETRY


def describe_failure(metadata: Optional[dict]) -> Optional[str]:
    """Build the message an admin sees for a failed or retrying document."""
    if not metadata or not metadata.get("error"):
        return None
    if metadata.get("error_type") == "pdf_protected":
        solutions = ", ".join(s.replace("_", " ") for s in metadata.get("suggested_solutions", []))
        return (
            "The PDF is password protected and needs manual action before it can be converted. "
            f"Suggested fixes: {solutions}."
        )
    if metadata.get("will_retry"):
        return f"Processing failed, will retry: {metadata['error']}"
    return f"Processing failed permanently: {metadata['error']}"
