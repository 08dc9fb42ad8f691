"""Tests for gap-based page segmentation."""
import random

import pytest
from schemas.homework import ImageSegment, OCRBlock
from segmentation.segmenter import (
    merge_small_segments, segment_page, split_on_gaps, whole_page_segment,
)


def blocks_at(*ys):
    return [OCRBlock(text=f"line at {y}", y=y) for y in ys]


def assert_covers_page(segments):
    assert segments[0].start_y == 0.0
    assert segments[-1].end_y == 1.0
    for upper, lower in zip(segments, segments[1:]):
        assert upper.end_y == lower.start_y
    assert [s.index for s in segments] == list(range(len(segments)))


class TestSplitOnGaps:
    def test_groups_close_blocks(self):
        groups = split_on_gaps(blocks_at(0.05, 0.07, 0.30, 0.32), 0.05)
        assert [[b.y for b in g] for g in groups] == [[0.05, 0.07], [0.30, 0.32]]

    def test_gap_equal_to_threshold_does_not_split(self):
        groups = split_on_gaps(blocks_at(0.1, 0.15), 0.05 + 1e-9)
        assert len(groups) == 1

    def test_gap_measured_from_tallest_block(self):
        tall = OCRBlock(text="figure", start_y=0.1, end_y=0.5)
        short = OCRBlock(text="caption", start_y=0.12, end_y=0.14)
        below = OCRBlock(text="under figure", start_y=0.52, end_y=0.54)
        groups = split_on_gaps([short, tall, below], 0.05)
        assert len(groups) == 1

    def test_input_order_does_not_matter(self):
        blocks = blocks_at(0.05, 0.07, 0.30, 0.32, 0.8)
        shuffled = list(blocks)
        random.Random(7).shuffle(shuffled)
        assert split_on_gaps(shuffled, 0.05) == split_on_gaps(blocks, 0.05)


class TestSegmentPage:
    def test_two_groups_split_at_gap_midpoint(self):
        segments = segment_page(blocks_at(0.05, 0.07, 0.30, 0.32), 0.05, 0.03)
        assert len(segments) == 2
        assert segments[0].start_y == 0.0
        assert segments[0].end_y == pytest.approx(0.185)
        assert segments[1].start_y == pytest.approx(0.185)
        assert segments[1].end_y == 1.0
        assert [b.y for b in segments[0].ocr_blocks] == [0.05, 0.07]
        assert [b.y for b in segments[1].ocr_blocks] == [0.30, 0.32]

    def test_five_groups(self, five_block_page):
        segments = segment_page(five_block_page.blocks)
        assert len(segments) == 5
        assert [s.end_y for s in segments[:-1]] == pytest.approx([0.15, 0.35, 0.55, 0.75])
        assert_covers_page(segments)

    def test_no_blocks(self):
        assert segment_page([]) == []

    def test_single_block_covers_page(self):
        segments = segment_page(blocks_at(0.4))
        assert len(segments) == 1
        assert (segments[0].start_y, segments[0].end_y) == (0.0, 1.0)

    def test_all_blocks_close_together(self):
        segments = segment_page(blocks_at(0.1, 0.12, 0.14, 0.16, 0.18))
        assert len(segments) == 1
        assert len(segments[0].ocr_blocks) == 5

    def test_every_block_in_exactly_one_segment(self):
        blocks = blocks_at(0.02, 0.03, 0.2, 0.21, 0.5, 0.9, 0.93)
        segments = segment_page(blocks, 0.05, 0.03)
        assigned = [b for s in segments for b in s.ocr_blocks]
        assert sorted(b.y for b in assigned) == sorted(b.y for b in blocks)
        assert_covers_page(segments)

    def test_deterministic(self):
        blocks = blocks_at(0.05, 0.3, 0.31, 0.6, 0.95)
        assert segment_page(blocks) == segment_page(list(reversed(blocks)))

    def test_negative_threshold_rejected(self):
        with pytest.raises(ValueError):
            segment_page(blocks_at(0.1), gap_threshold=-0.1)
        with pytest.raises(ValueError):
            segment_page(blocks_at(0.1), min_segment_height=-0.1)

    def test_zero_threshold_splits_every_separated_block(self):
        segments = segment_page(blocks_at(0.1, 0.3, 0.5), 0.0, 0.0)
        assert len(segments) == 3


class TestMergeSmallSegments:
    def _segments(self, *edges):
        return [
            ImageSegment(index=i, start_y=start, end_y=end, ocr_blocks=blocks_at((start + end) / 2))
            for i, (start, end) in enumerate(zip(edges, edges[1:]))
        ]

    def test_small_middle_segment_joins_taller_neighbor(self):
        merged = merge_small_segments(self._segments(0.0, 0.3, 0.32, 1.0), 0.03)
        assert len(merged) == 2
        assert (merged[0].start_y, merged[0].end_y) == (0.0, 0.3)
        assert (merged[1].start_y, merged[1].end_y) == (0.3, 1.0)
        assert len(merged[1].ocr_blocks) == 2

    def test_tie_goes_to_segment_below(self):
        merged = merge_small_segments(self._segments(0.0, 0.25, 0.265625, 0.515625, 1.0), 0.03)
        assert [(s.start_y, s.end_y) for s in merged][:2] == [(0.0, 0.25), (0.25, 0.515625)]

    def test_small_first_segment_merges_down(self):
        merged = merge_small_segments(self._segments(0.0, 0.01, 1.0), 0.03)
        assert len(merged) == 1
        assert (merged[0].start_y, merged[0].end_y) == (0.0, 1.0)

    def test_small_last_segment_merges_up(self):
        merged = merge_small_segments(self._segments(0.0, 0.99, 1.0), 0.03)
        assert len(merged) == 1

    def test_result_is_reindexed(self):
        merged = merge_small_segments(self._segments(0.0, 0.01, 0.5, 0.51, 1.0), 0.03)
        assert [s.index for s in merged] == list(range(len(merged)))
        assert all(s.height >= 0.03 for s in merged)

    def test_single_small_segment_kept(self):
        merged = merge_small_segments(self._segments(0.0, 0.01), 0.03)
        assert len(merged) == 1


class TestWholePageSegment:
    def test_spans_page(self):
        segment = whole_page_segment(blocks_at(0.8, 0.2))
        assert (segment.index, segment.start_y, segment.end_y) == (0, 0.0, 1.0)
        assert [b.y for b in segment.ocr_blocks] == [0.2, 0.8]
