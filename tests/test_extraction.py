"""
Tests for text extraction from uploaded files
"""
import fitz
import pytest

from errors import ExtractionError
from extraction import extract_pdf_text, extract_text, is_pdf, looks_plain_text, normalize_text


def make_pdf(*pages):
    """Build a PDF with one line of text per page"""
    pdf = fitz.open()
    for line in pages:
        page = pdf.new_page()
        page.insert_text((72, 72), line)
    data = pdf.tobytes()
    pdf.close()
    return data


class TestTypeDetection:

    @pytest.mark.parametrize("mime,filename", [
        ("text/plain", "anything.bin"),
        ("text/csv", "data"),
        (None, "README.md"),
        ("", "export.CSV"),
        ("application/octet-stream", "server.log"),
        (None, "payload.json"),
    ])
    def test_plain_text(self, mime, filename):
        assert looks_plain_text(mime, filename) is True

    def test_not_plain_text(self):
        assert looks_plain_text("image/png", "photo.png") is False
        assert looks_plain_text(None, "archive") is False

    def test_pdf(self):
        assert is_pdf("application/pdf", "scan") is True
        assert is_pdf(None, "Report.PDF") is True
        assert is_pdf("image/png", "photo.png") is False


class TestNormalizeText:

    def test_nul_and_horizontal_whitespace(self):
        assert normalize_text("a\x00b \t  c\nd") == "a b c\nd"

    def test_truncation(self):
        assert normalize_text("abcdef", max_chars=3) == "abc"


class TestExtractText:

    def test_plain_text_utf8(self):
        assert extract_text("café  crème".encode("utf-8"), "text/plain", "menu.txt") == "café crème"

    def test_invalid_utf8_replaced(self):
        assert extract_text(b"ok \xff", "text/plain", "a.txt") == "ok �"

    def test_unknown_type_yields_no_text(self):
        assert extract_text(b"\x00\x01", "application/zip", "bundle.zip") == ""

    def test_empty_plain_text(self):
        assert extract_text(b"", "text/plain", "empty.txt") == ""

    def test_pdf_text_layer(self):
        data = make_pdf("Invoice net 30", "Second page")

        extracted = extract_text(data, "application/pdf", "invoice.pdf")

        assert "Invoice net 30" in extracted
        assert "Second page" in extracted
        assert extracted.index("Invoice") < extracted.index("Second")

    def test_pdf_detected_by_extension(self):
        data = make_pdf("by extension")
        assert "by extension" in extract_text(data, None, "upload.pdf")

    def test_pdf_without_text(self):
        assert extract_pdf_text(make_pdf("")) == ""

    def test_corrupt_pdf(self):
        with pytest.raises(ExtractionError):
            extract_pdf_text(b"this is not a pdf document")
