"""Result aggregator - merge per-segment agent output into one AnalysisResult.

Ordering never depends on which segment finished first: outputs are keyed
by segment index and units sorted by (startY, segment index, position in
the agent's answer).
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from schemas.archive import PageAnalysis, PageAnalysisArchive
from schemas.enums import FALLBACK_SUBJECT, AnalysisMethod, InputType, UnitKind
from schemas.homework import AgentResult, AnalysisResult, ExtractionUnit, OCRResult

logger = logging.getLogger(__name__)


def _normalized_text(text: str) -> str:
    return " ".join(text.lower().split())


def sort_units(indexed: Iterable[Tuple[int, ExtractionUnit]]) -> List[ExtractionUnit]:
    """Sort (order, unit) pairs by startY, then segment index, then order."""
    ordered = sorted(indexed, key=lambda pair: (pair[1].start_y, pair[1].segment_index, pair[0]))
    return [unit for _, unit in ordered]


def deduplicate_units(units: List[ExtractionUnit]) -> List[ExtractionUnit]:
    """
    Drop units repeating an earlier unit's number (or topic) and content.

    Neighboring segments see the same whole-page text, so a model
    occasionally extracts one exercise twice. The first occurrence wins.
    """
    seen = set()
    unique = []
    for unit in units:
        label = unit.number if unit.kind == UnitKind.EXERCISE else unit.topic
        content = _normalized_text(unit.content)
        key = (label, content)
        if not label and not content:
            # Nothing to compare (e.g. image-only items): only identical placement is a repeat
            key = (label, content, unit.segment_index, unit.start_y, unit.end_y)
        if key in seen:
            logger.debug(f"Dropping duplicate {unit.kind.value} {label!r} from segment {unit.segment_index}")
            continue
        seen.add(key)
        unique.append(unit)
    return unique


def renumber_exercises(exercises: List[ExtractionUnit]) -> List[ExtractionUnit]:
    """
    Number exercises 1..n in order, but only when numbers are missing or repeated.

    Model-assigned numbers are kept untouched when they are already unique.
    """
    numbers = [unit.number for unit in exercises]
    if all(n is not None for n in numbers) and len(set(numbers)) == len(numbers):
        return exercises

    logger.info(f"Renumbering {len(exercises)} exercises (missing or duplicate numbers)")
    return [unit.model_copy(update={"number": str(i)}) for i, unit in enumerate(exercises, 1)]


def merge_segment_outputs(outputs: Iterable[AgentResult]) -> AnalysisResult:
    """
    Combine successful agent outputs into a single ordered result.

    Args:
        outputs: Agent results in any completion order

    Returns:
        AnalysisResult with both lists sorted by startY and unique exercise numbers
    """
    ordered = sorted(outputs, key=lambda r: r.segment_index)
    lessons: List[ExtractionUnit] = []
    exercises: List[ExtractionUnit] = []
    for output in ordered:
        lessons.extend(output.lessons)
        exercises.extend(output.exercises)

    merged_lessons = deduplicate_units(sort_units(enumerate(lessons)))
    merged_exercises = renumber_exercises(deduplicate_units(sort_units(enumerate(exercises))))
    result = AnalysisResult(lessons=merged_lessons, exercises=merged_exercises)
    logger.info(f"Aggregated {len(ordered)} agent outputs: {result.summary()}")
    return result


def ocr_only_result(ocr: OCRResult, additional_context: Optional[str] = None) -> AnalysisResult:
    """Single whole-page exercise holding the OCR text, used when no model is available."""
    text = ocr.full_text or "\n".join(block.text for block in ocr.blocks)
    if additional_context:
        text = f"{additional_context}\n\n{text}"
    exercise = ExtractionUnit(
        kind=UnitKind.EXERCISE,
        number="1",
        content=text,
        subject=FALLBACK_SUBJECT,
        input_type=InputType.TEXT,
        start_y=0.0,
        end_y=1.0,
    )
    return AnalysisResult(exercises=[exercise])


def record_page_result(
    archive: PageAnalysisArchive,
    page_number: int,
    result: AnalysisResult,
    method: AnalysisMethod,
    carry_over_answers: bool = False,
    analyzed_at: Optional[datetime] = None,
) -> PageAnalysis:
    """
    Store one page's result, replacing only that page's entry.

    Stored answers are dropped with the old entry unless ``carry_over_answers``
    is set, in which case answers whose key still matches an exercise of the
    new result are kept.
    """
    answers = {}
    previous = archive.get_analysis(page_number)
    if carry_over_answers and previous is not None:
        keys = {unit.answer_key for unit in result.exercises}
        answers = {k: v for k, v in previous.exercise_answers.items() if k in keys}
        dropped = len(previous.exercise_answers) - len(answers)
        if dropped:
            logger.info(f"Page {page_number}: {dropped} stored answers no longer match an exercise")

    fields = {"analyzed_at": analyzed_at} if analyzed_at is not None else {}
    analysis = PageAnalysis(
        page_number=page_number,
        analysis_result=result,
        exercise_answers=answers,
        analysis_method=method,
        **fields,
    )
    archive.set_analysis(analysis)
    return analysis
