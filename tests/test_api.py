"""
Tests for the HTTP API in docvoice/api/
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from docvoice.api.dependencies import (
    get_conversion_log,
    get_dispatcher,
    get_document_store,
    get_progress_store,
    get_reconciler,
)
from docvoice.database import get_db
from docvoice.main import app
from docvoice.models import Document
from docvoice.utils.clock import utcnow
from docvoice.utils.stuck_documents import StuckDocumentReconciler


@pytest.fixture
def dispatcher():
    mock = MagicMock()
    mock.dispatch.return_value = "task-123"
    return mock


@pytest.fixture
def client(session_factory, progress_store, conversion_log, blob_store, dispatcher):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_progress_store] = lambda: progress_store
    app.dependency_overrides[get_conversion_log] = lambda: conversion_log
    app.dependency_overrides[get_document_store] = lambda: blob_store
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_reconciler] = lambda: StuckDocumentReconciler(
        session_factory, progress_store, conversion_log, dispatcher=dispatcher
    )
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.mark.integration
def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.integration
@pytest.mark.requires_db
class TestUpload:
    def test_upload_creates_pending_document_and_dispatches(self, client, dispatcher, blob_store, session_factory):
        response = client.post(
            "/api/documents",
            files={"file": ("Budget 2024.pdf", b"%PDF-1.4 data", "application/pdf")},
            data={"title": "Budget Statement", "year": "2024", "user_id": "5"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["slug"] == "budget-statement-2024"
        assert body["task_id"] == "task-123"
        dispatcher.dispatch.assert_called_once_with(body["id"])
        with session_factory() as db:
            document = db.get(Document, body["id"])
            assert document.created_by == 5
            assert blob_store.get(document.file_path) == b"%PDF-1.4 data"

    def test_upload_rejects_unknown_type(self, client, dispatcher):
        response = client.post(
            "/api/documents",
            files={"file": ("a.pdf", b"%PDF", "application/pdf")},
            data={"title": "A", "type": "memo"},
        )

        assert response.status_code == 422
        dispatcher.dispatch.assert_not_called()

    def test_upload_requires_title(self, client):
        response = client.post("/api/documents", files={"file": ("a.pdf", b"%PDF", "application/pdf")})
        assert response.status_code == 422


@pytest.mark.integration
@pytest.mark.requires_db
class TestDocumentAdmin:
    def test_get_document_includes_invariant_check(self, client, make_document):
        document = make_document(status="completed")

        response = client.get(f"/api/documents/{document.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert "completed document has no audio artifact" in body["invariant_violations"]

    def test_get_missing_document(self, client):
        assert client.get("/api/documents/999").status_code == 404

    def test_reprocess_failed_document(self, client, make_document, dispatcher, progress_store, conversion_log):
        document = make_document(status="failed", processing_metadata={"error": "quota", "will_retry": False})
        progress_store.update(document.id, -1, "Processing failed", "failed")

        response = client.post(f"/api/documents/{document.id}/reprocess", params={"user_id": 2})

        assert response.status_code == 200
        assert response.json() == {"document_id": document.id, "status": "pending", "task_id": "task-123"}
        assert progress_store.get(document.id) is None
        entries = conversion_log.entries_for(document.id)
        assert entries[-1].stage == "reprocess_requested"
        assert entries[-1].user_id == 2

    def test_reprocess_pending_document_conflicts(self, client, make_document, dispatcher):
        document = make_document()

        response = client.post(f"/api/documents/{document.id}/reprocess")

        assert response.status_code == 409
        dispatcher.dispatch.assert_not_called()

    def test_soft_delete_restore_purge(self, client, make_document, blob_store, conversion_log):
        document = make_document()
        source_key = document.file_path

        assert client.delete(f"/api/documents/{document.id}/purge").status_code == 409

        response = client.delete(f"/api/documents/{document.id}", params={"reason": "duplicate"})
        assert response.status_code == 200
        assert client.get(f"/api/documents/{document.id}/progress").status_code == 404

        assert client.post(f"/api/documents/{document.id}/restore").status_code == 200
        assert client.post(f"/api/documents/{document.id}/restore").status_code == 409

        client.delete(f"/api/documents/{document.id}")
        response = client.delete(f"/api/documents/{document.id}/purge")
        assert response.status_code == 200
        assert response.json()["deleted_keys"] == [source_key]
        assert not blob_store.exists(source_key)
        assert client.get(f"/api/documents/{document.id}").status_code == 404

        stages = [e.stage for e in conversion_log.entries_for(document.id)]
        assert stages == ["soft_deleted", "restored", "soft_deleted", "hard_deleted"]


@pytest.mark.integration
@pytest.mark.requires_db
class TestProgressEndpoints:
    def test_live_snapshot(self, client, make_document, progress_store):
        document = make_document(status="processing", processing_started_at=utcnow())
        progress_store.update(document.id, 55, "Converting chunk 3 of 5", "tts_processing")

        body = client.get(f"/api/documents/{document.id}/progress").json()

        assert body["percentage"] == 55
        assert body["found"] is True
        assert body["status"] == "processing"
        assert body["error"] is None

    def test_fallback_and_error_message(self, client, make_document):
        document = make_document(status="failed", processing_metadata={"error": "quota", "will_retry": False})

        body = client.get(f"/api/documents/{document.id}/progress").json()

        assert body["found"] is False
        assert body["percentage"] == 0
        assert body["error"] == "Processing failed permanently: quota"

    def test_active_list_and_stats(self, client, make_document):
        make_document(title="Waiting")
        make_document(title="Busy", status="processing", processing_started_at=utcnow())
        make_document(title="Done", status="completed", audio_duration=90, audio_size=2048)
        make_document(title="Gone", status="completed", audio_duration=10, deleted_at=utcnow())

        active = client.get("/api/progress").json()
        stats = client.get("/api/progress/stats").json()

        assert sorted(item["document_title"] for item in active) == ["Busy", "Waiting"]
        assert stats == {
            "total": 3,
            "pending": 1,
            "processing": 1,
            "completed": 1,
            "failed": 0,
            "total_audio_duration": 90,
            "total_audio_size": 2048,
        }


@pytest.mark.integration
@pytest.mark.requires_db
class TestLogsEndpoint:
    def test_lists_entries_oldest_first(self, client, conversion_log):
        conversion_log.record(7, "info", "initializing", "Started", queue_job_id="task-1")
        conversion_log.record(7, "success", "completed", "Done")

        body = client.get("/api/documents/7/conversion-logs").json()

        assert body["document_id"] == 7
        assert [e["stage"] for e in body["logs"]] == ["initializing", "completed"]
        assert body["logs"][0]["queue_job_id"] == "task-1"

    def test_unknown_document_returns_empty_list(self, client):
        response = client.get("/api/documents/404/conversion-logs", params={"limit": 5})
        assert response.status_code == 200
        assert response.json()["logs"] == []


@pytest.mark.integration
@pytest.mark.requires_db
class TestQueueEndpoints:
    def test_health_is_read_only(self, client, make_document, dispatcher):
        document = make_document(status="processing", processing_started_at=utcnow() - timedelta(hours=3))

        body = client.get("/api/queue/health").json()

        assert body["healthy"] is False
        assert [d["id"] for d in body["stuck_processing"]] == [document.id]
        dispatcher.dispatch.assert_not_called()

    def test_reconcile_resets_stuck_document(self, client, make_document, dispatcher, session_factory):
        document = make_document(status="processing", processing_started_at=utcnow() - timedelta(hours=3))

        body = client.post("/api/queue/reconcile").json()

        assert body["actions"][0]["action"] == "reset_stuck_processing"
        dispatcher.dispatch.assert_called_once_with(document.id)
        with session_factory() as db:
            assert db.get(Document, document.id).status == "pending"
