"""
Pytest configuration and shared fixtures for DocVoice tests.
"""

import os
import tempfile

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing the package
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/1"
os.environ["WORKDIR"] = tempfile.gettempdir()
os.environ["GEMINI_API_KEYS"] = "test-key"
os.environ["STORAGE_BACKEND"] = "local"

from docvoice.database import Base  # noqa: E402
from docvoice.models import Document  # noqa: E402
from docvoice.utils.blob_store import LocalBlobStore  # noqa: E402
from docvoice.utils.cache import InMemoryKeyValue  # noqa: E402
from docvoice.utils.conversion_log import ConversionLog  # noqa: E402
from tests.helpers import RecordingProgressStore  # noqa: E402


@pytest.fixture(scope="function")
def engine():
    """Fresh in-memory database shared by every session of a test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def kv_client():
    return InMemoryKeyValue()


@pytest.fixture
def progress_store(kv_client):
    return RecordingProgressStore(kv_client)


@pytest.fixture
def conversion_log(session_factory):
    return ConversionLog(session_factory)


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path))


@pytest.fixture
def make_document(db_session, blob_store):
    """Factory that stores a source blob and inserts a Document row."""

    def _make(
        title: str = "Annual Report",
        status: str = "pending",
        source: bytes | None = b"%PDF-1.4 fake",
        mime_type: str = "application/pdf",
        document_id: int | None = None,
        **fields,
    ) -> Document:
        document = Document(
            title=title,
            year=fields.pop("year", 2024),
            status=status,
            file_name="report.pdf",
            file_mime_type=mime_type,
            **fields,
        )
        if document_id is not None:
            document.id = document_id
        db_session.add(document)
        db_session.flush()
        if source is not None and "file_path" not in fields and "file_content" not in fields:
            key = f"sources/{document.uuid}.pdf"
            blob_store.put(key, source)
            document.file_path = key
            document.file_size = len(source)
        db_session.commit()
        db_session.refresh(document)
        return document

    return _make


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual functions/methods")
    config.addinivalue_line("markers", "integration: Integration tests for API endpoints and workflows")
    config.addinivalue_line("markers", "requires_db: Tests requiring database")
