"""Gap-based page segmentation.

Blocks are grouped wherever the vertical whitespace between consecutive
blocks exceeds ``gap_threshold``. Group boundaries are placed at the midpoint
of each gap, the first segment is extended to the top of the page and the
last to the bottom, so segments are contiguous and cover the whole page.
Undersized segments are then merged into their taller neighbor.
"""
import logging
from typing import List, Sequence

from schemas.homework import ImageSegment, OCRBlock

logger = logging.getLogger(__name__)

DEFAULT_GAP_THRESHOLD = 0.05
DEFAULT_MIN_SEGMENT_HEIGHT = 0.03


def sort_blocks(blocks: Sequence[OCRBlock]) -> List[OCRBlock]:
    """Top-to-bottom order; stable for blocks sharing a position."""
    return sorted(blocks, key=lambda b: (b.start_y, b.end_y))


def split_on_gaps(blocks: Sequence[OCRBlock], gap_threshold: float = DEFAULT_GAP_THRESHOLD) -> List[List[OCRBlock]]:
    """
    Group sorted blocks, cutting wherever a vertical gap exceeds the threshold.

    The gap is measured from the lowest edge seen so far in the current
    group, so a tall block never produces a false cut beneath a short one.

    Args:
        blocks: OCR blocks in any order
        gap_threshold: Minimum normalized gap (exclusive) that starts a new group

    Returns:
        List of non-empty block groups in top-to-bottom order
    """
    groups: List[List[OCRBlock]] = []
    group_end = 0.0
    for block in sort_blocks(blocks):
        if groups and block.start_y - group_end > gap_threshold:
            groups.append([block])
            group_end = block.end_y
        elif groups:
            groups[-1].append(block)
            group_end = max(group_end, block.end_y)
        else:
            groups.append([block])
            group_end = block.end_y
    return groups


def _segments_from_groups(groups: List[List[OCRBlock]]) -> List[ImageSegment]:
    segments = []
    start = 0.0
    for i, group in enumerate(groups):
        if i == len(groups) - 1:
            end = 1.0
        else:
            group_end = max(b.end_y for b in group)
            next_start = groups[i + 1][0].start_y
            end = (group_end + next_start) / 2
        segments.append(ImageSegment(index=i, start_y=start, end_y=end, ocr_blocks=group))
        start = end
    return segments


def _merge_pair(upper: ImageSegment, lower: ImageSegment) -> ImageSegment:
    return ImageSegment(
        index=upper.index,
        start_y=min(upper.start_y, lower.start_y),
        end_y=max(upper.end_y, lower.end_y),
        ocr_blocks=[*upper.ocr_blocks, *lower.ocr_blocks],
    )


def _reindex(segments: List[ImageSegment]) -> List[ImageSegment]:
    return [s.model_copy(update={"index": i}) for i, s in enumerate(segments)]


def merge_small_segments(
    segments: Sequence[ImageSegment],
    min_segment_height: float = DEFAULT_MIN_SEGMENT_HEIGHT,
) -> List[ImageSegment]:
    """
    Merge segments shorter than ``min_segment_height`` into a neighbor.

    The first undersized segment (scanning top to bottom) is merged into the
    taller of its neighbors, ties going to the segment below. Repeats until no
    segment is undersized or only one remains.

    Returns:
        New list of segments, re-indexed from 0
    """
    merged = list(segments)
    while len(merged) > 1:
        small = next((i for i, s in enumerate(merged) if s.height < min_segment_height), None)
        if small is None:
            break

        if small == 0:
            target = 1
        elif small == len(merged) - 1:
            target = small - 1
        else:
            above, below = merged[small - 1], merged[small + 1]
            target = small - 1 if above.height > below.height else small + 1

        upper, lower = sorted((small, target))
        logger.debug(
            f"Merging segment {small} (height {merged[small].height:.3f}) into segment {target}"
        )
        merged[upper:lower + 1] = [_merge_pair(merged[upper], merged[lower])]

    return _reindex(merged)


def segment_page(
    blocks: Sequence[OCRBlock],
    gap_threshold: float = DEFAULT_GAP_THRESHOLD,
    min_segment_height: float = DEFAULT_MIN_SEGMENT_HEIGHT,
) -> List[ImageSegment]:
    """
    Partition one page's OCR blocks into contiguous image segments.

    Args:
        blocks: Page OCR blocks, top-origin normalized
        gap_threshold: Whitespace fraction that separates two segments
        min_segment_height: Segments shorter than this are merged away

    Returns:
        Ordered segments; empty when there are no blocks

    Raises:
        ValueError: If a threshold is negative
    """
    if gap_threshold < 0 or min_segment_height < 0:
        raise ValueError("Segmentation thresholds must be >= 0")
    if not blocks:
        return []

    groups = split_on_gaps(blocks, gap_threshold)
    segments = merge_small_segments(_segments_from_groups(groups), min_segment_height)
    logger.info(f"Segmented {len(blocks)} blocks into {len(segments)} segments ({len(groups)} before merge)")
    return segments


def whole_page_segment(blocks: Sequence[OCRBlock]) -> ImageSegment:
    """A single segment spanning the full page, for page-scoped extraction."""
    return ImageSegment(index=0, start_y=0.0, end_y=1.0, ocr_blocks=sort_blocks(blocks))
