"""
Rasterizes exam and marking scheme PDFs into base64 PNG pages for full-document requests.
"""
from __future__ import annotations

import asyncio
import base64
from contextlib import closing

import fitz

from .config import PDF_RENDER_ZOOM
from .observability import get_logger

logger = get_logger(__name__)


def render_pdf_pages(pdf_bytes: bytes, *, zoom: float = PDF_RENDER_ZOOM) -> list[str]:
    """Returns one base64 PNG per page, in page order."""
    if not pdf_bytes:
        return []
    matrix = fitz.Matrix(float(zoom), float(zoom))
    pages: list[str] = []
    with closing(fitz.open(stream=pdf_bytes, filetype="pdf")) as pdf_doc:
        for pdf_page in pdf_doc:
            pixmap = pdf_page.get_pixmap(matrix=matrix)
            pages.append(base64.b64encode(pixmap.tobytes("png")).decode("ascii"))
    return pages


async def render_pdf_pages_async(pdf_bytes: bytes, *, zoom: float = PDF_RENDER_ZOOM) -> list[str]:
    return await asyncio.to_thread(render_pdf_pages, pdf_bytes, zoom=zoom)


def count_pdf_pages(pdf_bytes: bytes) -> int:
    if not pdf_bytes:
        return 0
    with closing(fitz.open(stream=pdf_bytes, filetype="pdf")) as pdf_doc:
        return pdf_doc.page_count


async def count_pdf_pages_async(pdf_bytes: bytes) -> int:
    return await asyncio.to_thread(count_pdf_pages, pdf_bytes)
