"""Listing PDF text extraction with PyMuPDF."""

import hashlib
import logging
from pathlib import Path

import fitz  # PyMuPDF

logger = logging.getLogger(__name__)

_SCANNED_THRESHOLD = 100  # chars per page; below this the PDF is likely scanned


def compute_pdf_hash(pdf_path: str | Path) -> str:
    """SHA-256 hash of the PDF file contents (used as the document id)."""
    h = hashlib.sha256()
    with open(pdf_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def extract_pdf_text(pdf_path: str | Path) -> str:
    """Plain text of every page, separated by page markers."""
    doc = fitz.open(str(pdf_path))
    try:
        page_texts = [page.get_text().strip() for page in doc]
    finally:
        doc.close()

    total_chars = sum(len(t) for t in page_texts)
    if page_texts and total_chars / len(page_texts) < _SCANNED_THRESHOLD:
        logger.warning(
            "%s has little extractable text (%d chars) — likely scanned",
            Path(pdf_path).name,
            total_chars,
        )
    return "\n\n".join(
        f"--- Page {i + 1} ---\n{text}" for i, text in enumerate(page_texts)
    )
