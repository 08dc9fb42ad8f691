"""Preprocessor - PDF page rendering and text-layer extraction for homework sources."""

from .rasterize import PageSource, estimate_tokens, render_pdf_pages, text_layer_blocks

__all__ = ["PageSource", "estimate_tokens", "render_pdf_pages", "text_layer_blocks"]
