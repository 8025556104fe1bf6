"""
Format router: decide XML / PDF / CSV for an upload before any parsing happens.

Order of checks: size, emptiness, content sniffing, declared extension.
Content wins over a contradicting extension, so a renamed file is still routed correctly.
"""

from pathlib import Path
from typing import Optional

import structlog

from bankrecon.config import settings
from bankrecon.models.enums import FileFormat
from bankrecon.pipeline.errors import OversizedFile, UnsupportedFormat

logger = structlog.get_logger(__name__)

PDF_MAGIC = b"%PDF-"
XML_MARKERS = (b"<?xml", b"<document")
CSV_DELIMITERS = (",", ";", "\t", "|")
SNIFF_BYTES = 4096

MIME_HINTS = {
    "application/pdf": FileFormat.PDF,
    "application/xml": FileFormat.XML,
    "text/xml": FileFormat.XML,
    "text/csv": FileFormat.CSV,
    "application/vnd.ms-excel": FileFormat.CSV,
}


def max_upload_bytes() -> int:
    return settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024


def allowed_extensions() -> set[str]:
    return {e.strip().lower().lstrip(".") for e in settings.ALLOWED_EXTENSIONS.split(",") if e.strip()}


def check_size(size_bytes: int) -> None:
    limit = max_upload_bytes()
    if size_bytes > limit:
        raise OversizedFile(size_bytes, limit)


def declared_format(file_name: Optional[str], content_type: Optional[str] = None) -> Optional[FileFormat]:
    """Format implied by the extension (or MIME type when there is no extension)."""
    if file_name:
        ext = Path(file_name).suffix.lower().lstrip(".")
        if ext:
            if ext not in allowed_extensions():
                return None
            try:
                return FileFormat(ext.upper())
            except ValueError:
                return None
    if content_type:
        return MIME_HINTS.get(content_type.split(";")[0].strip().lower())
    return None


def _decode_head(head: bytes) -> Optional[str]:
    if b"\x00" in head:
        return None
    for encoding in ("utf-8-sig", "cp1250"):
        try:
            return head.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def sniff_format(data: bytes) -> Optional[FileFormat]:
    """Identify the format from content alone. None when inconclusive."""
    head = data[:SNIFF_BYTES]
    if PDF_MAGIC in head[:1024]:
        return FileFormat.PDF

    stripped = head.lstrip(b"\xef\xbb\xbf \t\r\n")
    lowered = stripped[:64].lower()
    if any(lowered.startswith(marker) for marker in XML_MARKERS):
        return FileFormat.XML
    if lowered.startswith(b"<") and b"bktocstmr" in head.lower():
        return FileFormat.XML

    text = _decode_head(head)
    if text is None:
        return None
    lines = [line for line in text.splitlines() if line.strip()]
    if lines and any(d in lines[0] for d in CSV_DELIMITERS):
        return FileFormat.CSV
    return None


def _looks_like_text(data: bytes) -> bool:
    return _decode_head(data[:SNIFF_BYTES]) is not None


def detect_format(
    data: bytes,
    file_name: Optional[str] = None,
    content_type: Optional[str] = None,
) -> FileFormat:
    """
    Route an upload to a tier.

    Raises:
        OversizedFile: above MAX_UPLOAD_SIZE_MB (checked first)
        UnsupportedFormat: empty, binary of unknown type, or unsupported extension
    """
    check_size(len(data))
    if not data or not data.strip():
        raise UnsupportedFormat("Empty file uploaded")

    ext = Path(file_name).suffix.lower().lstrip(".") if file_name else ""
    if ext and ext not in allowed_extensions():
        raise UnsupportedFormat(
            f"Unsupported file extension .{ext}. Allowed: {settings.ALLOWED_EXTENSIONS}"
        )

    declared = declared_format(file_name, content_type)
    sniffed = sniff_format(data)

    if sniffed in (FileFormat.PDF, FileFormat.XML):
        fmt = sniffed
    elif sniffed == FileFormat.CSV:
        fmt = FileFormat.CSV
    elif declared == FileFormat.CSV and _looks_like_text(data):
        # Single-column CSV has no delimiter on the header line
        fmt = FileFormat.CSV
    else:
        raise UnsupportedFormat(
            f"Unsupported file: {file_name or 'upload'}. Allowed: {settings.ALLOWED_EXTENSIONS}"
        )

    if declared is not None and declared != fmt:
        logger.warning(
            "format_extension_mismatch",
            file_name=file_name,
            declared=declared.value,
            detected=fmt.value,
        )

    return fmt
