"""
pdfplumber text layer reader.
Feeds the text tier: one raw text string per page, never raises for a single bad page.
"""

import io
from typing import Union

import pdfplumber
import structlog

from bankrecon.pipeline.errors import MalformedStatement

logger = structlog.get_logger(__name__)

PdfSource = Union[str, bytes]


def _open(source: PdfSource):
    if isinstance(source, bytes):
        return pdfplumber.open(io.BytesIO(source))
    return pdfplumber.open(source)


def _words_to_text(words: list[dict], y_tolerance: float = 3.0) -> str:
    """
    Degraded strategy: cluster words into lines by their top coordinate.
    Words within y_tolerance points of each other are on the same line.
    """
    if not words:
        return ""

    sorted_words = sorted(words, key=lambda w: (w["top"], w["x0"]))
    lines: list[list[dict]] = [[sorted_words[0]]]
    current_top = sorted_words[0]["top"]

    for word in sorted_words[1:]:
        if abs(word["top"] - current_top) <= y_tolerance:
            lines[-1].append(word)
        else:
            lines.append([word])
            current_top = word["top"]

    return "\n".join(
        " ".join(w["text"] for w in sorted(line, key=lambda w: w["x0"]))
        for line in lines
    )


def extract_page_text(page) -> str:
    """extract_text, then word clustering, then empty string."""
    page_number = page.page_number
    try:
        text = page.extract_text() or ""
        if text.strip():
            return text
    except Exception as e:
        logger.warning("pdf_text_layer_failed", page=page_number, error=str(e))

    try:
        words = page.extract_words(x_tolerance=3, y_tolerance=3, keep_blank_chars=False)
        return _words_to_text(words)
    except Exception as e:
        logger.warning("pdf_word_fallback_failed", page=page_number, error=str(e))
        return ""


def extract_page_texts(source: PdfSource) -> list[str]:
    """
    Return the raw text of every page, in order.
    An unreadable document raises MalformedStatement; unreadable pages yield "".
    """
    try:
        pdf = _open(source)
    except Exception as e:
        raise MalformedStatement(f"PDF could not be opened: {e}") from e

    with pdf:
        texts = [extract_page_text(page) for page in pdf.pages]

    logger.debug(
        "pdf_text_extracted",
        page_count=len(texts),
        empty_pages=sum(1 for t in texts if not t.strip()),
    )
    return texts


def has_text_layer(text: str, min_words: int = 10) -> bool:
    """Check if a page's text is worth sending to the text model."""
    tokens = text.split()
    if len(tokens) < min_words:
        return False
    alpha = sum(1 for t in tokens[:50] if any(c.isalpha() for c in t))
    return alpha / min(len(tokens), 50) > 0.3
