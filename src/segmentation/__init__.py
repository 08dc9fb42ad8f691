"""Segmentation - Coordinate conventions and gap-based page partitioning.

Public API:
    segment_page: Split a page's OCR blocks into contiguous segments
    crop_rect: Map a normalized vertical range to a pixel rectangle
    to_top_origin: Convert OCR output to the canonical top-origin convention
"""

from .coordinates import (
    CropRect,
    crop_image,
    crop_rect,
    decode_image,
    encode_png,
    flip_y,
    load_ocr_result,
    to_top_origin,
)
from .segmenter import merge_small_segments, segment_page, split_on_gaps, whole_page_segment

__all__ = [
    "CropRect",
    "crop_image",
    "crop_rect",
    "decode_image",
    "encode_png",
    "flip_y",
    "load_ocr_result",
    "to_top_origin",
    "merge_small_segments",
    "segment_page",
    "split_on_gaps",
    "whole_page_segment",
]
