import logging
from typing import Optional

import fitz  # PyMuPDF

logger = logging.getLogger(__name__)

#: Source types a cover can be rendered from.
COVER_SOURCE_MIME_TYPES = {"application/pdf"}

COVER_MIME_TYPE = "image/png"


def generate_pdf_cover(data: bytes, zoom: float = 1.5) -> Optional[bytes]:
    """
    Render the first page of a PDF to PNG bytes.

    Returns None for documents without pages.
    """
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        if doc.page_count == 0:
            return None
        pixmap = doc.load_page(0).get_pixmap(matrix=fitz.Matrix(zoom, zoom))
        return pixmap.tobytes("png")
    finally:
        doc.close()
