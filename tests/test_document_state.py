"""
Tests for docvoice/utils/document_state.py
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from docvoice.models import Document
from docvoice.utils.clock import utcnow
from docvoice.utils.document_state import (
    DocumentStatus,
    InvalidTransitionError,
    can_transition,
    check_invariants,
    claim_for_processing,
    hard_delete,
    merge_metadata,
    new_document,
    request_reprocess,
    restore,
    soft_delete,
    transition,
)

WINDOW = timedelta(minutes=5)


@pytest.mark.unit
class TestTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "processing"),
            ("processing", "completed"),
            ("processing", "pending"),
            ("processing", "failed"),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "completed"),
            ("pending", "failed"),
            ("completed", "processing"),
            ("failed", "processing"),
            ("failed", "pending"),
            ("completed", "pending"),
        ],
    )
    def test_rejected(self, current, target):
        assert not can_transition(current, target)

    def test_reprocess_reopens_terminal_states(self):
        assert can_transition("failed", "pending", reprocess=True)
        assert can_transition("completed", "pending", reprocess=True)
        assert not can_transition("pending", "completed", reprocess=True)

    def test_transition_raises_for_invalid_move(self):
        document = Document(id=1, status="completed")
        with pytest.raises(InvalidTransitionError):
            transition(document, DocumentStatus.PROCESSING)
        assert document.status == "completed"

    def test_transition_sets_plain_string_status(self):
        document = Document(id=1, status="pending")
        transition(document, DocumentStatus.PROCESSING)
        assert document.status == "processing"


@pytest.mark.unit
def test_merge_metadata_assigns_new_dict():
    original = {"attempt": 1}
    document = Document(processing_metadata=original)

    merged = merge_metadata(document, error="boom")

    assert merged == {"attempt": 1, "error": "boom"}
    assert document.processing_metadata is not original
    assert original == {"attempt": 1}


@pytest.mark.unit
@pytest.mark.requires_db
class TestClaimForProcessing:
    def test_claims_pending_document(self, make_document, db_session):
        document = make_document()
        now = utcnow()

        assert claim_for_processing(db_session, document.id, WINDOW, {"attempt": 1}, now=now)

        db_session.refresh(document)
        assert document.status == "processing"
        assert document.processing_started_at == now
        assert document.processing_metadata["attempt"] == 1

    def test_second_claim_inside_window_fails(self, make_document, db_session):
        document = make_document()
        now = utcnow()

        assert claim_for_processing(db_session, document.id, WINDOW, {}, now=now)
        assert not claim_for_processing(db_session, document.id, WINDOW, {}, now=now + timedelta(minutes=1))

    def test_stale_owner_can_be_replaced(self, make_document, db_session):
        document = make_document()
        now = utcnow()

        claim_for_processing(db_session, document.id, WINDOW, {}, now=now)
        later = now + timedelta(minutes=6)

        assert claim_for_processing(db_session, document.id, WINDOW, {}, now=later)
        db_session.refresh(document)
        assert document.processing_started_at == later

    def test_completed_and_deleted_documents_cannot_be_claimed(self, make_document, db_session):
        completed = make_document(status="completed")
        deleted = make_document(title="Deleted", deleted_at=utcnow())

        assert not claim_for_processing(db_session, completed.id, WINDOW, {})
        assert not claim_for_processing(db_session, deleted.id, WINDOW, {})

    def test_missing_document(self, db_session):
        assert not claim_for_processing(db_session, 404, WINDOW, {})


@pytest.mark.unit
@pytest.mark.requires_db
class TestAdminActions:
    def test_request_reprocess_clears_derived_data(self, make_document, db_session):
        document = make_document(
            status="completed",
            extracted_text="text",
            mp3_path="audio/a.mp3",
            mp3_checksum="abc",
            flac_path="audio/a.flac",
            audio_duration=12,
            audio_size=100,
            cover_path="covers/a.png",
            processing_metadata={"completion_status": "success"},
        )

        request_reprocess(db_session, document, actor=7)

        assert document.status == "pending"
        assert document.extracted_text is None
        assert document.audio_paths() == {}
        assert document.audio_duration is None
        assert document.mp3_checksum is None
        assert document.cover_path == "covers/a.png"
        assert document.processing_metadata["previous_status"] == "completed"
        assert document.processing_metadata["reprocess_requested_by"] == 7
        assert "completion_status" not in document.processing_metadata

    def test_request_reprocess_rejects_pending(self, make_document, db_session):
        document = make_document()
        with pytest.raises(InvalidTransitionError):
            request_reprocess(db_session, document)

    def test_soft_delete_and_restore(self, make_document, db_session):
        document = make_document()

        soft_delete(db_session, document, actor=3, reason="duplicate")
        assert document.is_deleted
        assert document.deleted_by == 3
        assert document.deleted_reason == "duplicate"

        restore(db_session, document)
        assert not document.is_deleted
        assert document.deleted_reason is None

    def test_hard_delete_requires_soft_delete(self, make_document, db_session, blob_store):
        document = make_document()
        with pytest.raises(InvalidTransitionError):
            hard_delete(db_session, document, blob_store)
        assert db_session.get(Document, document.id) is not None

    def test_hard_delete_removes_row_and_blobs(self, make_document, db_session, blob_store, conversion_log):
        document = make_document()
        blob_store.put("audio/x.mp3", b"mp3")
        document.mp3_path = "audio/x.mp3"
        document_id = document.id
        source_key = document.file_path
        soft_delete(db_session, document)

        removed = hard_delete(db_session, document, blob_store, conversion_log=conversion_log, actor=1)

        assert set(removed) == {source_key, "audio/x.mp3"}
        assert not blob_store.exists("audio/x.mp3")
        assert db_session.get(Document, document_id) is None
        entries = conversion_log.entries_for(document_id)
        assert [e.stage for e in entries] == ["hard_deleted"]
        assert entries[0].user_id == 1

    def test_hard_delete_survives_blob_errors(self, make_document, db_session):
        document = make_document()
        document_id = document.id
        soft_delete(db_session, document)
        store = MagicMock()
        store.delete.side_effect = OSError("permission denied")

        assert hard_delete(db_session, document, store) == []
        assert db_session.get(Document, document_id) is None


@pytest.mark.unit
@pytest.mark.requires_db
class TestNewDocument:
    def test_stores_source_and_creates_pending_document(self, db_session, blob_store):
        document = new_document(
            db_session,
            blob_store,
            title="Budget Statement",
            year=2024,
            data=b"%PDF-1.4",
            file_name="../../Budget 2024?.PDF",
            mime_type="application/pdf",
        )

        assert document.status == "pending"
        assert document.slug == "budget-statement-2024"
        assert document.file_name == "Budget 2024_.PDF"
        assert document.file_path == f"sources/{document.uuid}.pdf"
        assert blob_store.get(document.file_path) == b"%PDF-1.4"
        assert document.file_size == 8

    def test_rejects_unknown_type_and_empty_file(self, db_session, blob_store):
        with pytest.raises(ValueError):
            new_document(db_session, blob_store, title="X", data=b"x", file_name="x.pdf", mime_type="application/pdf", type="memo")
        with pytest.raises(ValueError):
            new_document(db_session, blob_store, title="X", data=b"", file_name="x.pdf", mime_type="application/pdf")


@pytest.mark.unit
class TestCheckInvariants:
    def test_completed_without_artifacts(self):
        problems = check_invariants(Document(status="completed", processing_metadata={}))
        assert len(problems) == 3

    def test_completed_document_is_consistent(self):
        document = Document(status="completed", extracted_text="x", mp3_path="audio/a.mp3", audio_duration=1)
        assert check_invariants(document) == []

    def test_failed_without_error(self):
        problems = check_invariants(Document(status="failed", processing_metadata={}))
        assert "failed document has no error description" in problems
        assert "failed document has no retry decision flag" in problems

    def test_failed_with_error_and_flags(self):
        document = Document(status="failed", processing_metadata={"error": "x", "final_status": "failed", "will_retry": False})
        assert check_invariants(document) == []
