"""
Tests for docvoice/utils/errors.py
"""

import pytest

from docvoice.utils.errors import (
    ErrorKind,
    ExtractionError,
    ProtectedSourceError,
    RetryDecision,
    TTSError,
    UnprocessableTextError,
    decide_retry,
    describe_failure,
    error_kind_of,
)


@pytest.mark.unit
class TestDecideRetry:
    @pytest.mark.parametrize("kind", [ErrorKind.NOT_FOUND, ErrorKind.VALIDATION])
    def test_caller_errors_are_abandoned(self, kind):
        assert decide_retry(kind, 1, 3) == RetryDecision.ABANDON

    @pytest.mark.parametrize("kind", [ErrorKind.PROTECTED_SOURCE, ErrorKind.UNPROCESSABLE_TEXT])
    def test_terminal_kinds_fail_on_first_attempt(self, kind):
        assert decide_retry(kind, 1, 3) == RetryDecision.FAIL_PERMANENTLY

    @pytest.mark.parametrize(
        "kind", [ErrorKind.EXTRACTION, ErrorKind.TTS, ErrorKind.PERSISTENCE, ErrorKind.UNEXPECTED]
    )
    def test_transient_kinds_retry_until_cap(self, kind):
        assert decide_retry(kind, 1, 3) == RetryDecision.RETRY
        assert decide_retry(kind, 2, 3) == RetryDecision.RETRY
        assert decide_retry(kind, 3, 3) == RetryDecision.FAIL_PERMANENTLY

    def test_single_attempt_budget(self):
        assert decide_retry(ErrorKind.TTS, 1, 1) == RetryDecision.FAIL_PERMANENTLY


@pytest.mark.unit
def test_error_kind_of():
    assert error_kind_of(ProtectedSourceError("locked")) == ErrorKind.PROTECTED_SOURCE
    assert error_kind_of(UnprocessableTextError("short")) == ErrorKind.UNPROCESSABLE_TEXT
    assert error_kind_of(TTSError("quota")) == ErrorKind.TTS
    # The message never changes the classification
    assert error_kind_of(RuntimeError("PDF is password protected")) == ErrorKind.UNEXPECTED


@pytest.mark.unit
def test_conversion_error_keeps_cause():
    cause = OSError("disk")
    error = ExtractionError("could not read", cause=cause)
    assert error.message == "could not read"
    assert error.cause is cause
    assert str(error) == "could not read"


@pytest.mark.unit
class TestDescribeFailure:
    def test_no_error(self):
        assert describe_failure(None) is None
        assert describe_failure({"attempt": 1}) is None

    def test_retrying(self):
        assert describe_failure({"error": "timeout", "will_retry": True}) == "Processing failed, will retry: timeout"

    def test_permanent(self):
        message = describe_failure({"error": "timeout", "will_retry": False})
        assert message == "Processing failed permanently: timeout"

    def test_protected_source_lists_solutions(self):
        message = describe_failure(
            {
                "error": "encrypted",
                "error_type": "pdf_protected",
                "suggested_solutions": ["remove_pdf_protection", "contact_admin"],
            }
        )
        assert "password protected" in message
        assert "remove pdf protection, contact admin" in message
