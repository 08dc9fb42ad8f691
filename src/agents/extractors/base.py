"""Common utilities for subject extraction agents."""
import asyncio
import logging
import re
from functools import wraps
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from pydantic import ValidationError

from agents.backends import Extractor
from agents.errors import HomeworkAnalysisError, ResponseParseError
from agents.parsing import parse_json_object
from config import PipelineConfig
from schemas.enums import ContentType, InputType, UnitKind
from schemas.homework import AgentResult, ExtractionContext, ExtractionUnit, InputConfig

logger = logging.getLogger(__name__)

T = TypeVar('T')

INSTRUCTIONS_DIR = Path(__file__).parent.parent / "instructions"

# "2a", "2.b", "2(c)", "2 d" -> parent "2"
SUBPART_PATTERN = re.compile(r"^(\d+)\s*[.\-]?\s*\(?([a-zA-Z])\)?$")


def retry_with_backoff(
    max_retries: int = 1,
    base_delay: float = 2.0,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator for exponential backoff retry of async calls.

    Only errors marked ``retryable`` are retried; everything else propagates
    on the first failure.

    Args:
        max_retries: Retry attempts after the first call
        base_delay: Seconds before the first retry, doubled each time

    Returns:
        Decorated coroutine function with retry logic
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except HomeworkAnalysisError as e:
                    if not e.retryable or attempt >= max_retries:
                        raise
                    wait_time = base_delay * (2 ** attempt)
                    attempt += 1
                    logger.warning(f"{func.__name__} attempt {attempt} failed: {e}. Retrying in {wait_time}s...")
                    await asyncio.sleep(wait_time)
        return wrapper
    return decorator


def load_instructions(instructions_dir: Path, *filenames: str) -> str:
    """
    Load and concatenate instruction files.

    Args:
        instructions_dir: Base directory for instructions
        filenames: Instruction file names to load

    Returns:
        Concatenated instruction text

    Raises:
        FileNotFoundError: If instruction file missing
    """
    parts = []
    for filename in filenames:
        filepath = instructions_dir / filename
        if not filepath.exists():
            raise FileNotFoundError(f"Instruction file not found: {filepath}")
        parts.append(filepath.read_text())
    return "\n\n---\n\n".join(parts)


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def resolve_position(item: Dict[str, Any], bounds: Tuple[float, float]) -> Tuple[float, float]:
    """
    Read a unit's ``position`` and keep it inside the producing segment.

    Missing or malformed positions inherit the segment bounds; reversed
    edges are swapped.
    """
    low, high = bounds
    position = item.get("position") if isinstance(item.get("position"), dict) else item
    start = _as_float(position.get("startY"))
    end = _as_float(position.get("endY"))
    if start is None and end is None:
        return low, high
    if start is None:
        start = low
    if end is None:
        end = high
    if start > end:
        start, end = end, start
    start = min(max(start, low), high)
    end = min(max(end, low), high)
    return start, end


def coerce_input_type(value: Any, default: InputType) -> InputType:
    if isinstance(value, str):
        try:
            return InputType(value.strip().lower())
        except ValueError:
            logger.debug(f"Unknown input type {value!r}, using {default.value}")
    return default


def coerce_content_type(value: Any) -> ContentType:
    if isinstance(value, str):
        normalized = value.strip().lower().replace(" ", "_")
        for content_type in ContentType:
            if content_type.value == normalized:
                return content_type
    return ContentType.EXERCISES


def first_text(item: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_input_config(value: Any) -> Optional[InputConfig]:
    """Validate an item's inputConfig; an unusable one becomes null, not a failed unit."""
    if not isinstance(value, dict):
        return None
    config = dict(value)
    options = config.get("options")
    if isinstance(options, list):
        config["options"] = [str(option) for option in options if option is not None]
    try:
        return InputConfig.model_validate(config)
    except ValidationError as e:
        logger.warning(f"Ignoring invalid inputConfig: {e.error_count()} errors")
        return None


def merge_subparts(units: List[ExtractionUnit]) -> List[ExtractionUnit]:
    """
    Collapse multi-part exercises ("2a", "2b", ...) into one unit numbered "2".

    The merged unit keeps the first part's fields, joins contents in
    vertical order and spans the full range of all parts. A plain "2"
    stem returned next to its parts is folded in too.
    """
    parents: Dict[str, List[int]] = {}
    has_parts = set()
    for i, unit in enumerate(units):
        if unit.number is None:
            continue
        match = SUBPART_PATTERN.match(unit.number)
        if match:
            parents.setdefault(match.group(1), []).append(i)
            has_parts.add(match.group(1))
        else:
            parents.setdefault(unit.number, []).append(i)

    merged: List[ExtractionUnit] = []
    consumed = set()
    for i, unit in enumerate(units):
        if i in consumed:
            continue
        match = SUBPART_PATTERN.match(unit.number) if unit.number else None
        parent = match.group(1) if match else unit.number
        if parent not in has_parts:
            merged.append(unit)
            continue

        group = sorted((units[j] for j in parents[parent]), key=lambda u: u.start_y)
        consumed.update(parents[parent])
        logger.debug(f"Merging {len(group)} parts into exercise {parent}")
        merged.append(group[0].model_copy(update={
            "number": parent,
            "content": "\n".join(u.content for u in group if u.content),
            "start_y": min(u.start_y for u in group),
            "end_y": max(u.end_y for u in group),
        }))
    return merged


class SubjectAgent:
    """
    Base extraction strategy: one prompt, one model call, one schema.

    Subclasses set ``name``, ``instruction_files`` and the default input
    type, and override the item hooks to read subject-specific fields.
    """
    name = "generic_agent"
    instruction_files: Tuple[str, ...] = ("common.md",)
    default_input_type = InputType.CANVAS
    subject_label: Optional[str] = None

    def __init__(self, extractor: Extractor, config: PipelineConfig, instructions_dir: Path = INSTRUCTIONS_DIR):
        self.extractor = extractor
        self.config = config
        self.instructions_dir = instructions_dir
        self._instructions: Optional[str] = None

    @property
    def instructions(self) -> str:
        if self._instructions is None:
            self._instructions = load_instructions(self.instructions_dir, *self.instruction_files)
        return self._instructions

    def build_prompt(self, context: ExtractionContext) -> str:
        sections = [self.instructions]
        if context.additional_context:
            sections.append(f"Assignment Description:\n{context.additional_context}")
        if context.routing is not None:
            routing = context.routing
            sections.append(
                f"Page classification: subject={routing.subject_detail or routing.subject.value}, "
                f"grade level={routing.grade_level.value}, content type={routing.content_type.value}"
            )
        sections.append(f"Full page text (context only, do not extract outside your range):\n{context.page_text}")
        segment = context.segment
        if segment is not None and context.segment_count > 1:
            sections.append(
                f"You are analyzing segment {segment.index + 1} of {context.segment_count}, "
                f"covering Y {segment.start_y:.3f} to {segment.end_y:.3f}. "
                "Extract only the lessons and exercises that appear in this range. "
                "Use the full page text to keep exercise numbering consistent."
            )
        return "\n\n".join(sections)

    async def run(self, context: ExtractionContext, image_bytes: Optional[bytes] = None) -> AgentResult:
        """Invoke the backend for one context and return validated units."""
        prompt = self.build_prompt(context)
        logger.debug(f"{self.name}: prompt {len(prompt)} chars")
        raw = await self.extractor.extract(prompt, image_bytes, context, self.config.max_tokens)
        data = parse_json_object(raw)
        try:
            return self.to_result(data, context)
        except ValidationError as e:
            raise ResponseParseError(f"{self.name} response did not match schema: {e}", raw) from e

    def bounds(self, context: ExtractionContext) -> Tuple[float, float]:
        if context.segment is None:
            return 0.0, 1.0
        return context.segment.start_y, context.segment.end_y

    def to_result(self, data: Dict[str, Any], context: ExtractionContext) -> AgentResult:
        lessons = [self.lesson_unit(item, context) for item in self.lesson_items(data) if isinstance(item, dict)]
        page = self.page_fields(data, context)
        exercises = [
            self.exercise_unit(item, context, page) for item in self.exercise_items(data) if isinstance(item, dict)
        ]
        return AgentResult(
            segment_index=context.segment.index if context.segment is not None else 0,
            type=coerce_content_type(data.get("type")),
            subject=first_text(data, "subject") or self.subject_label,
            lessons=lessons,
            exercises=merge_subparts(exercises),
        )

    def lesson_items(self, data: Dict[str, Any]) -> List[Any]:
        return data.get("lessons") or []

    def exercise_items(self, data: Dict[str, Any]) -> List[Any]:
        return data.get("exercises") or []

    def _unit(self, kind: UnitKind, item: Dict[str, Any], context: ExtractionContext, **fields: Any) -> ExtractionUnit:
        start_y, end_y = resolve_position(item, self.bounds(context))
        return ExtractionUnit(
            kind=kind,
            start_y=start_y,
            end_y=end_y,
            segment_index=context.segment.index if context.segment is not None else 0,
            **fields,
        )

    def lesson_unit(self, item: Dict[str, Any], context: ExtractionContext) -> ExtractionUnit:
        return self._unit(
            UnitKind.LESSON,
            item,
            context,
            topic=first_text(item, "topic", "title"),
            content=first_text(item, "content", "fullContent", "text") or "",
            subject=first_text(item, "subject") or self.subject_label,
        )

    def exercise_unit(
        self, item: Dict[str, Any], context: ExtractionContext, page: Optional[Dict[str, Any]] = None
    ) -> ExtractionUnit:
        return self._unit(
            UnitKind.EXERCISE,
            item,
            context,
            number=item.get("exerciseNumber", item.get("number")),
            content=first_text(item, "content", "fullContent", "questionText") or "",
            topic=first_text(item, "topic"),
            subject=first_text(item, "subject") or self.subject_label,
            input_type=coerce_input_type(item.get("inputType"), self.default_input_type),
            difficulty=first_text(item, "difficulty"),
            input_config=parse_input_config(item.get("inputConfig")),
            **self.extra_fields(item, page or {}),
        )

    def page_fields(self, data: Dict[str, Any], context: ExtractionContext) -> Dict[str, Any]:
        """Page-level defaults shared by every exercise of one response."""
        return {}

    def extra_fields(self, item: Dict[str, Any], page: Dict[str, Any]) -> Dict[str, Any]:
        """Subject-specific unit fields read from one exercise item."""
        return {}
