"""
Tests for upload format routing.
"""

import pytest

from bankrecon.models.enums import FileFormat
from bankrecon.pipeline.errors import OversizedFile, UnsupportedFormat
from bankrecon.pipeline.format_router import declared_format, detect_format, max_upload_bytes, sniff_format


class TestDetectFormat:

    def test_pdf_magic(self):
        assert detect_format(b"%PDF-1.7\n...", "statement.pdf") == FileFormat.PDF

    def test_xml_declaration(self, camt_xml):
        assert detect_format(camt_xml, "izvod.xml") == FileFormat.XML

    def test_csv_semicolon(self):
        data = "Datum;Iznos;Opis\n15.01.2025;-120,00;Najam\n".encode("utf-8")
        assert detect_format(data, "export.csv") == FileFormat.CSV

    def test_content_wins_over_extension(self):
        assert detect_format(b"%PDF-1.4 renamed", "statement.csv") == FileFormat.PDF

    def test_single_column_csv_by_extension(self):
        assert detect_format(b"amount\n10.00\n", "one.csv") == FileFormat.CSV

    def test_no_name_uses_content(self, camt_xml):
        assert detect_format(camt_xml) == FileFormat.XML

    def test_empty_rejected(self):
        with pytest.raises(UnsupportedFormat):
            detect_format(b"", "empty.csv")
        with pytest.raises(UnsupportedFormat):
            detect_format(b"   \n", "blank.csv")

    def test_unknown_extension_rejected(self):
        with pytest.raises(UnsupportedFormat):
            detect_format(b"a,b\n1,2\n", "sheet.xlsx")

    def test_binary_rejected(self):
        with pytest.raises(UnsupportedFormat):
            detect_format(b"\x00\x01\x02\x03binary", "blob.pdf")

    def test_oversized_checked_first(self):
        with pytest.raises(OversizedFile) as exc_info:
            detect_format(b"%PDF-" + b"0" * max_upload_bytes(), "big.pdf")
        assert exc_info.value.limit_bytes == max_upload_bytes()


class TestHelpers:

    def test_declared_from_extension(self):
        assert declared_format("a.PDF") == FileFormat.PDF
        assert declared_format("a.txt") is None

    def test_declared_from_mime(self):
        assert declared_format(None, "text/csv; charset=utf-8") == FileFormat.CSV

    def test_sniff_inconclusive(self):
        assert sniff_format(b"just words") is None
