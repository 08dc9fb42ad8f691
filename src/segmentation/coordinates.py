"""Normalized vertical coordinates and pixel crop rectangles.

Convention used everywhere downstream of OCR loading: y is a fraction of
page height in [0.0, 1.0] with 0.0 at the TOP of the page. OCR engines that
report a bottom origin (Vision-style bounding boxes, PDF text space) are
converted exactly once by ``to_top_origin`` when their output is loaded.
"""
import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import cv2
import numpy as np
from pydantic import ValidationError

from agents.errors import InvalidSource
from schemas.enums import CoordinateOrigin
from schemas.homework import OCRBlock, OCRResult

logger = logging.getLogger(__name__)

DEFAULT_CROP_PADDING = 0.02


@dataclass(frozen=True)
class CropRect:
    """Pixel rectangle; always full image width."""
    x: int
    y: int
    width: int
    height: int

    @property
    def bottom(self) -> int:
        return self.y + self.height


def crop_rect(
    start_y: float,
    end_y: float,
    image_height: int,
    image_width: int,
    padding: float = DEFAULT_CROP_PADDING,
) -> CropRect:
    """Convert a normalized vertical range to a padded pixel rectangle.

    Args:
        start_y: Normalized start (either edge; order does not matter)
        end_y: Normalized end
        image_height: Image height in pixels
        image_width: Image width in pixels
        padding: Extra margin as a fraction of image height, added on both sides

    Returns:
        CropRect within [0, image_height] x [0, image_width] with height >= 0

    Raises:
        ValueError: If padding or image dimensions are negative
    """
    if padding < 0:
        raise ValueError(f"padding must be >= 0, got {padding}")
    if image_height < 0 or image_width < 0:
        raise ValueError(f"Invalid image size {image_width}x{image_height}")

    top = min(start_y, end_y)
    bottom = max(start_y, end_y)
    pad_px = padding * image_height

    top_px = math.floor(top * image_height - pad_px)
    bottom_px = math.ceil(bottom * image_height + pad_px)
    top_px = min(max(top_px, 0), image_height)
    bottom_px = min(max(bottom_px, top_px), image_height)

    return CropRect(x=0, y=top_px, width=image_width, height=bottom_px - top_px)


def flip_y(y: float) -> float:
    """Mirror a normalized y between bottom-origin and top-origin."""
    return 1.0 - y


def _flip_block(block: OCRBlock) -> OCRBlock:
    # Edges swap roles: the old top edge becomes the new bottom edge
    return OCRBlock(text=block.text, start_y=flip_y(block.end_y), end_y=flip_y(block.start_y))


def to_top_origin(result: OCRResult) -> OCRResult:
    """Return ``result`` in the canonical top-origin convention.

    This is the only place a vertical flip happens in the pipeline.
    """
    if result.origin == CoordinateOrigin.TOP:
        return result
    logger.debug(f"Flipping {len(result.blocks)} OCR blocks from bottom origin")
    return OCRResult(
        full_text=result.full_text,
        blocks=[_flip_block(block) for block in result.blocks],
        origin=CoordinateOrigin.TOP,
    )


def load_ocr_result(path: Union[str, Path]) -> OCRResult:
    """Load an OCR JSON file (``{fullText, blocks, origin}``) in top-origin form.

    Raises:
        InvalidSource: If the file is missing or does not match the OCR schema
    """
    path = Path(path)
    if not path.exists():
        raise InvalidSource(f"OCR file not found: {path}")
    text = path.read_text()
    try:
        data = json.loads(text)
        if isinstance(data, list):
            data = {"blocks": data}
        result = OCRResult.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as e:
        raise InvalidSource(f"Invalid OCR file {path}: {e}", text) from e

    result = to_top_origin(result)
    if not result.full_text and result.blocks:
        result = result.model_copy(update={"full_text": "\n".join(b.text for b in result.blocks)})
    return result


def decode_image(data: bytes) -> np.ndarray:
    """Decode PNG/JPEG bytes into a BGR array.

    Raises:
        InvalidSource: If the bytes are not a readable image
    """
    buffer = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
    if img is None:
        raise InvalidSource("Image data could not be decoded")
    return img


def encode_png(img: np.ndarray) -> bytes:
    ok, encoded = cv2.imencode(".png", img)
    if not ok:
        raise InvalidSource("Image could not be encoded as PNG")
    return encoded.tobytes()


def crop_image(
    img: np.ndarray,
    start_y: float,
    end_y: float,
    padding: float = DEFAULT_CROP_PADDING,
) -> np.ndarray:
    """Crop a full-width horizontal band out of an image array."""
    height, width = img.shape[:2]
    rect = crop_rect(start_y, end_y, height, width, padding)
    return img[rect.y:rect.bottom, rect.x:rect.x + rect.width].copy()

