"""
Utility functions and helpers for the document conversion pipeline.
"""

# Only leaf modules here: models import from this package
from docvoice.utils.clock import utcnow
from docvoice.utils.file_operations import hash_bytes
from docvoice.utils.filename_utils import get_unique_slug, sanitize_filename, slugify

__all__ = ["hash_bytes", "utcnow", "get_unique_slug", "sanitize_filename", "slugify"]
