"""Tests for merging segment outputs and recording page results."""
from datetime import datetime, timezone

import pytest
from agents.aggregator import (
    deduplicate_units, merge_segment_outputs, ocr_only_result, record_page_result, renumber_exercises,
    sort_units,
)
from schemas.archive import PageAnalysis, PageAnalysisArchive
from schemas.enums import AnalysisMethod, InputType, UnitKind
from schemas.homework import AgentResult, AnalysisResult, ExtractionUnit, OCRBlock, OCRResult


def exercise(number, start_y, segment_index=0, content=None, input_type=InputType.TEXT):
    return ExtractionUnit(
        kind=UnitKind.EXERCISE,
        number=number,
        content=content if content is not None else f"Exercise {number}",
        start_y=start_y,
        end_y=min(start_y + 0.05, 1.0),
        segment_index=segment_index,
        input_type=input_type,
    )


def lesson(topic, start_y, segment_index=0):
    return ExtractionUnit(
        kind=UnitKind.LESSON, topic=topic, content=f"About {topic}", start_y=start_y, end_y=start_y + 0.05,
        segment_index=segment_index,
    )


class TestSortAndDedup:
    def test_sort_by_start_then_segment_then_order(self):
        units = [exercise("c", 0.5, 1), exercise("a", 0.2, 0), exercise("b", 0.5, 0), exercise("d", 0.5, 1)]
        ordered = sort_units(enumerate(units))
        assert [u.number for u in ordered] == ["a", "b", "c", "d"]

    def test_duplicates_dropped_keeping_first(self):
        first = exercise("2", 0.3, 0, "Solve  x + 1 = 3")
        repeat = exercise("2", 0.31, 1, "solve x + 1 = 3")
        other = exercise("2", 0.4, 1, "Different text")
        assert deduplicate_units([first, repeat, other]) == [first, other]

    def test_lessons_deduplicated_by_topic(self):
        units = [lesson("Fractions", 0.1, 0), lesson("Fractions", 0.12, 1), lesson("Decimals", 0.3, 1)]
        assert [u.topic for u in deduplicate_units(units)] == ["Fractions", "Decimals"]

    def test_unlabeled_empty_units_kept_apart(self):
        top = exercise(None, 0.1, 0, "")
        bottom = exercise(None, 0.6, 2, "")
        same_place = exercise(None, 0.6, 2, "")
        assert deduplicate_units([top, bottom, same_place]) == [top, bottom]


class TestRenumber:
    def test_unique_numbers_kept(self):
        units = [exercise("3", 0.1), exercise("7b", 0.2)]
        assert renumber_exercises(units) == units

    def test_missing_number_triggers_renumber(self):
        units = [exercise("3", 0.1), exercise(None, 0.2)]
        assert [u.number for u in renumber_exercises(units)] == ["1", "2"]

    def test_duplicate_number_triggers_renumber(self):
        units = [exercise("1", 0.1), exercise("1", 0.2, content="Other"), exercise("2", 0.3)]
        assert [u.number for u in renumber_exercises(units)] == ["1", "2", "3"]


class TestMergeSegmentOutputs:
    def _outputs(self):
        return [
            AgentResult(segment_index=0, lessons=[lesson("Fractions", 0.02)], exercises=[exercise("1", 0.1)]),
            AgentResult(segment_index=1, exercises=[exercise("3", 0.6, 1), exercise("2", 0.4, 1)]),
            AgentResult(segment_index=2, exercises=[exercise("4", 0.8, 2)]),
        ]

    def test_merged_in_vertical_order(self):
        result = merge_segment_outputs(self._outputs())
        assert [u.number for u in result.exercises] == ["1", "2", "3", "4"]
        assert [u.topic for u in result.lessons] == ["Fractions"]

    def test_completion_order_irrelevant(self):
        outputs = self._outputs()
        assert merge_segment_outputs(reversed(outputs)) == merge_segment_outputs(outputs)
        assert merge_segment_outputs([outputs[1], outputs[2], outputs[0]]) == merge_segment_outputs(outputs)

    def test_overlapping_segments_deduplicated(self):
        outputs = self._outputs()
        outputs.append(AgentResult(segment_index=3, exercises=[exercise("4", 0.8, 3)]))
        result = merge_segment_outputs(outputs)
        assert [u.number for u in result.exercises] == ["1", "2", "3", "4"]
        assert result.exercises[-1].segment_index == 2

    def test_empty(self):
        assert merge_segment_outputs([]).is_empty


class TestOcrOnlyResult:
    def test_whole_page_exercise(self):
        result = ocr_only_result(OCRResult(blocks=[OCRBlock(text="Name:", y=0.1), OCRBlock(text="1) 2+2", y=0.3)]))
        (unit,) = result.exercises
        assert unit.content == "Name:\n1) 2+2"
        assert unit.answer_type.value == "text"
        assert result.lessons == []


class TestRecordPageResult:
    @pytest.fixture
    def archive(self):
        archive = PageAnalysisArchive(source_id="workbook")
        for page in range(1, 5):
            record_page_result(
                archive, page, AnalysisResult(exercises=[exercise("1", 0.1 * page)]), AnalysisMethod.SEGMENTED
            )
            archive.set_answer(page, exercise("1", 0.1 * page).answer_key, f"answer {page}".encode())
        return archive

    def test_reanalysis_replaces_only_that_page(self, archive):
        before = {page: archive.get_analysis(page) for page in (1, 3, 4)}
        new_result = AnalysisResult(exercises=[exercise("1", 0.5), exercise("2", 0.7)])
        record_page_result(archive, 2, new_result, AnalysisMethod.AGENTIC)

        assert archive.analyzed_pages == [1, 2, 3, 4]
        assert archive.get_analysis(2).analysis_result == new_result
        assert archive.get_analysis(2).analysis_method == AnalysisMethod.AGENTIC
        assert archive.get_analysis(2).exercise_answers == {}
        for page, analysis in before.items():
            assert archive.get_analysis(page) is analysis
            assert archive.get_answer(page, exercise("1", 0.1 * page).answer_key) == f"answer {page}".encode()

    def test_carry_over_keeps_matching_answers(self, archive):
        key = exercise("1", 0.2).answer_key
        result = AnalysisResult(exercises=[exercise("1", 0.2), exercise("2", 0.6)])
        record_page_result(archive, 2, result, AnalysisMethod.SEGMENTED, carry_over_answers=True)
        assert archive.get_answer(2, key) == b"answer 2"

    def test_carry_over_drops_stale_answers(self, archive):
        result = AnalysisResult(exercises=[exercise("1", 0.25)])
        analysis = record_page_result(archive, 2, result, AnalysisMethod.SEGMENTED, carry_over_answers=True)
        assert analysis.exercise_answers == {}

    def test_new_page_added(self, archive):
        stamp = datetime(2026, 1, 5, tzinfo=timezone.utc)
        analysis = record_page_result(
            archive, 7, AnalysisResult(), AnalysisMethod.OCR_ONLY, analyzed_at=stamp
        )
        assert isinstance(analysis, PageAnalysis)
        assert analysis.analyzed_at == stamp
        assert archive.analyzed_pages == [1, 2, 3, 4, 7]
