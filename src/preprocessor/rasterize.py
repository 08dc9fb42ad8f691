"""PDF page rendering and native text-layer extraction for multi-page sources."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

import pymupdf

from agents.errors import InvalidSource
from schemas.enums import CoordinateOrigin
from schemas.homework import OCRBlock, OCRResult

logger = logging.getLogger(__name__)

# PyMuPDF block type for text (1 is image)
TEXT_BLOCK = 0


@dataclass
class PageSource:
    """One rendered PDF page ready for analysis."""
    page_number: int
    image_bytes: bytes
    width: int
    height: int
    text_layer: Optional[OCRResult] = None

    @property
    def has_text(self) -> bool:
        return self.text_layer is not None and not self.text_layer.is_empty


def estimate_tokens(width: int, height: int) -> int:
    """
    Estimate Claude token usage for an image.

    Formula from Anthropic docs: tokens = (width * height) / 750
    """
    return (width * height) // 750


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def text_layer_blocks(page: "pymupdf.Page") -> OCRResult:
    """
    Read a page's embedded text as top-origin OCR blocks.

    PyMuPDF reports block rectangles with the origin at the top-left corner,
    so positions only need dividing by the page height.
    """
    height = page.rect.height or 1.0
    blocks = []
    for x0, y0, x1, y1, text, _block_no, block_type in page.get_text("blocks"):
        text = text.strip()
        if block_type != TEXT_BLOCK or not text:
            continue
        blocks.append(OCRBlock(text=text, start_y=_clamp(y0 / height), end_y=_clamp(y1 / height)))
    return OCRResult(
        full_text="\n".join(b.text for b in blocks),
        blocks=blocks,
        origin=CoordinateOrigin.TOP,
    )


def render_pdf_pages(
    pdf_path: Path,
    pages: Optional[Iterable[int]] = None,
    max_longest_edge: int = 1568,
) -> List[PageSource]:
    """
    Render PDF pages to PNG bytes with their native text layer.

    Never upscales - pages smaller than max_longest_edge are rendered at
    their original resolution.

    Args:
        pdf_path: Path to input PDF file
        pages: 1-indexed page numbers to render (default: all)
        max_longest_edge: Maximum pixels on longest edge (default: 1568,
            Claude's recommended max before auto-resize)

    Returns:
        PageSource per requested page, in page order

    Raises:
        InvalidSource: If the PDF is missing or a page number is out of range
    """
    pdf_path = Path(pdf_path)
    if not pdf_path.exists():
        raise InvalidSource(f"PDF not found: {pdf_path}")

    doc = pymupdf.open(pdf_path)
    results: List[PageSource] = []

    try:
        selected = sorted(set(pages)) if pages is not None else list(range(1, len(doc) + 1))
        for page_num in selected:
            if page_num < 1 or page_num > len(doc):
                raise InvalidSource(f"Page {page_num} out of range (PDF has {len(doc)} pages)")
            page = doc[page_num - 1]

            # Calculate zoom factor - never upscale
            longest = max(page.rect.width, page.rect.height)
            zoom = min(max_longest_edge / longest, 1.0)
            pix = page.get_pixmap(matrix=pymupdf.Matrix(zoom, zoom), alpha=False)

            source = PageSource(
                page_number=page_num,
                image_bytes=pix.tobytes("png"),
                width=pix.width,
                height=pix.height,
                text_layer=text_layer_blocks(page),
            )
            logger.debug(
                f"Rendered page {page_num}: {pix.width}x{pix.height} "
                f"(~{estimate_tokens(pix.width, pix.height)} tokens), "
                f"{len(source.text_layer.blocks)} text blocks"
            )
            results.append(source)
    finally:
        # Always close document to free memory
        doc.close()

    return results
