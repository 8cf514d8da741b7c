"""
Tests for docvoice/utils/conversion_log.py
"""

from datetime import datetime

import pytest

from docvoice.utils.conversion_log import ConversionLog


@pytest.mark.unit
@pytest.mark.requires_db
class TestConversionLog:
    def test_record_and_read_in_order(self, conversion_log):
        conversion_log.record(1, "info", "initializing", "Starting")
        conversion_log.record(1, "success", "completed", "Done", {"duration": 12})
        conversion_log.record(2, "error", "failed_permanently", "Other document")

        entries = conversion_log.entries_for(1)

        assert [e.stage for e in entries] == ["initializing", "completed"]
        assert entries[1].meta == {"duration": 12}
        assert entries[0].job_name == "ProcessDocument"

    def test_limit(self, conversion_log):
        for i in range(5):
            conversion_log.record(1, "info", f"stage_{i}")
        assert [e.stage for e in conversion_log.entries_for(1, limit=2)] == ["stage_0", "stage_1"]

    def test_invalid_status_is_rejected(self, conversion_log):
        with pytest.raises(ValueError):
            conversion_log.record(1, "fatal", "initializing")
        assert conversion_log.entries_for(1) == []

    def test_meta_is_made_json_safe(self, conversion_log):
        conversion_log.record(1, "info", "reset", meta={"at": datetime(2025, 1, 2, 3, 4, 5)})
        assert conversion_log.entries_for(1)[0].meta == {"at": "2025-01-02T03:04:05"}

    def test_user_id_from_meta_and_overrides(self, session_factory):
        log = ConversionLog(session_factory, job_name="DocumentAdmin")

        log.record(1, "info", "restored", meta={"user_id": 9})
        log.record(1, "info", "restored", user_id=3, job_name="Other", queue_job_id="t-1", queue_name="q")

        first, second = log.entries_for(1)
        assert first.user_id == 9
        assert first.job_name == "DocumentAdmin"
        assert second.user_id == 3
        assert second.job_name == "Other"
        assert (second.queue_job_id, second.queue_name) == ("t-1", "q")

    def test_entries_survive_unknown_documents(self, conversion_log):
        conversion_log.record(999, "error", "document_not_found", "Document 999 not found")
        assert len(conversion_log.entries_for(999)) == 1
