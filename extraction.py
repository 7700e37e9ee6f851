"""
extraction.py - Searchable text extraction for uploaded files

Plain-text files are decoded as UTF-8; PDFs are read through the text layer
with PyMuPDF. Scanned PDFs without a text layer yield no text.
"""
import re
from pathlib import PurePath
from typing import Optional

import fitz  # PyMuPDF

from config import settings
from errors import ExtractionError
from logger import get_logger

logger = get_logger(__name__)

PLAIN_TEXT_EXTENSIONS = {"txt", "md", "csv", "json", "log"}
PDF_MIME_TYPE = "application/pdf"
MAX_PLAIN_TEXT_BYTES = 5 * 1024 * 1024

_HORIZONTAL_WHITESPACE = re.compile(r"[\t ]+")


def _extension(filename: str) -> str:
    return PurePath(filename or "").suffix.lstrip(".").lower()


def looks_plain_text(mime_type: Optional[str], filename: str) -> bool:
    if mime_type and mime_type.startswith("text/"):
        return True
    return _extension(filename) in PLAIN_TEXT_EXTENSIONS


def is_pdf(mime_type: Optional[str], filename: str) -> bool:
    return mime_type == PDF_MIME_TYPE or _extension(filename) == "pdf"


def normalize_text(raw: str, max_chars: Optional[int] = None) -> str:
    """NUL bytes become spaces, runs of spaces/tabs collapse, length is capped."""
    max_chars = max_chars or settings.get('max_text_chars', 2 * 1024 * 1024)
    cleaned = raw.replace("\x00", " ")
    cleaned = _HORIZONTAL_WHITESPACE.sub(" ", cleaned)
    return cleaned[:max_chars]


def extract_pdf_text(data: bytes) -> str:
    """Concatenated text layer of every page"""
    try:
        with fitz.open(stream=data, filetype="pdf") as pdf:
            pages = [page.get_text("text") for page in pdf]
    except Exception as e:
        raise ExtractionError(f"PDF text extraction failed: {e}") from e
    return "".join(pages).strip()


def extract_text(data: bytes, mime_type: Optional[str], filename: str) -> str:
    """
    Extract searchable text from an uploaded file.

    Args:
        data: Raw file bytes
        mime_type: MIME type reported by the client (may be empty)
        filename: Original file name, used for extension sniffing

    Returns:
        Normalized text, or "" when the file type carries no text

    Raises:
        ExtractionError: The file looked like a PDF but could not be read
    """
    if looks_plain_text(mime_type, filename):
        extracted = data[:MAX_PLAIN_TEXT_BYTES].decode("utf-8", errors="replace")
    elif is_pdf(mime_type, filename):
        extracted = extract_pdf_text(data)
    else:
        logger.debug(f"No text extractor for {filename} ({mime_type})")
        return ""

    if not extracted:
        return ""
    return normalize_text(extracted)
