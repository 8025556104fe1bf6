"""
PDF page rendering for the vision tier.
Renders exactly one page to PNG bytes, on demand, so pages that verify at the text
tier are never rasterised.
"""

import io
from typing import Optional

from pdf2image import convert_from_bytes
import structlog

from bankrecon.config import settings

logger = structlog.get_logger(__name__)


class RenderError(RuntimeError):
    pass


def render_page_png(
    pdf_bytes: bytes,
    page_number: int,
    dpi: Optional[int] = None,
) -> bytes:
    """
    Render a single 1-based page of a PDF to PNG bytes.
    Raises RenderError if poppler cannot rasterise the page.
    """
    dpi = dpi or settings.RENDER_DPI
    try:
        images = convert_from_bytes(
            pdf_bytes,
            dpi=dpi,
            fmt="png",
            first_page=page_number,
            last_page=page_number,
            poppler_path=settings.POPPLER_PATH,
        )
    except Exception as e:
        logger.error("pdf_render_failed", page=page_number, error=str(e))
        raise RenderError(f"Failed to render page {page_number}: {e}") from e

    if not images:
        raise RenderError(f"Page {page_number} produced no image")

    buffer = io.BytesIO()
    images[0].save(buffer, "PNG")
    png = buffer.getvalue()

    logger.debug(
        "pdf_page_rendered",
        page=page_number,
        dpi=dpi,
        width=images[0].width,
        height=images[0].height,
        size_bytes=len(png),
    )
    return png
