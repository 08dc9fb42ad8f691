"""Pydantic models for OCR input, page segments and extracted homework units.

All vertical positions are normalized to [0.0, 1.0] with 0.0 at the top of
the page. Sources using a bottom origin are converted once at load time by
``segmentation.coordinates.to_top_origin``.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .enums import (
    AnalysisMethod, AnswerType, CANVAS_INPUT_TYPES, ContentType, CoordinateOrigin,
    ErrorKind, InputType, UnitKind,
)
from .routing import RoutingInfo


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OCRBlock(CamelModel):
    """One recognized text block. Accepts ``{text, y}`` or ``{text, startY, endY}``."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    text: str = Field(description="Recognized text")
    start_y: float = Field(ge=0.0, le=1.0, description="Normalized top edge of the block")
    end_y: float = Field(ge=0.0, le=1.0, description="Normalized bottom edge of the block")

    @model_validator(mode="before")
    @classmethod
    def _normalize_position(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "y" in data:
            y = data.pop("y")
            data.setdefault("startY", y)
            data.setdefault("endY", y)
        start_key = "startY" if "startY" in data else "start_y"
        end_key = "endY" if "endY" in data else "end_y"
        start, end = data.get(start_key), data.get(end_key)
        if isinstance(start, (int, float)) and isinstance(end, (int, float)) and start > end:
            data[start_key], data[end_key] = end, start
        return data

    @property
    def y(self) -> float:
        return self.start_y

    @property
    def height(self) -> float:
        return self.end_y - self.start_y


class OCRResult(CamelModel):
    """Output of the OCR collaborator for one page."""
    full_text: str = Field(default="", description="Full recognized page text")
    blocks: List[OCRBlock] = Field(default_factory=list)
    origin: CoordinateOrigin = Field(
        default=CoordinateOrigin.TOP,
        description="Where y = 0.0 sits in the source coordinate system",
    )

    @property
    def is_empty(self) -> bool:
        return not self.blocks and not self.full_text.strip()


class ImageSegment(CamelModel):
    """A contiguous vertical slice of a page with its OCR blocks."""
    index: int = Field(ge=0, description="0-based position of the segment on the page")
    start_y: float = Field(ge=0.0, le=1.0)
    end_y: float = Field(ge=0.0, le=1.0)
    ocr_blocks: List[OCRBlock] = Field(default_factory=list)

    @property
    def height(self) -> float:
        return self.end_y - self.start_y

    @property
    def text(self) -> str:
        return "\n".join(block.text for block in self.ocr_blocks)


class InputConfig(CamelModel):
    """Subject-specific answer configuration. Absent settings stay null."""
    placeholder: Optional[str] = None
    options: Optional[List[str]] = None
    min_words: Optional[int] = None
    max_words: Optional[int] = None
    diagram_type: Optional[str] = None
    canvas_type: Optional[str] = None
    requires_units: Optional[bool] = None
    expected_units: Optional[str] = None


class ExtractionUnit(CamelModel):
    """A lesson or exercise extracted from a page."""
    kind: UnitKind = Field(description="Lesson or exercise")
    number: Optional[str] = Field(default=None, alias="exerciseNumber")
    content: str = Field(default="", description="Full text content of the unit")
    topic: Optional[str] = None
    subject: Optional[str] = None
    input_type: Optional[InputType] = None
    start_y: float = Field(ge=0.0, le=1.0)
    end_y: float = Field(ge=0.0, le=1.0)
    segment_index: int = Field(default=0, ge=0, description="Segment that produced this unit")

    # Subject-specific fields; always present, null when the agent has nothing
    question_latex: Optional[str] = None
    science_branch: Optional[str] = None
    language: Optional[str] = None
    difficulty: Optional[str] = None
    input_config: Optional[InputConfig] = None

    @field_validator("number", mode="before")
    @classmethod
    def _number_as_string(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @model_validator(mode="after")
    def _order_edges(self) -> "ExtractionUnit":
        if self.start_y > self.end_y:
            self.start_y, self.end_y = self.end_y, self.start_y
        return self

    @property
    def answer_type(self) -> AnswerType:
        if self.input_type in CANVAS_INPUT_TYPES:
            return AnswerType.CANVAS
        if self.input_type == InputType.INLINE:
            return AnswerType.INLINE
        return AnswerType.TEXT

    @property
    def answer_key(self) -> str:
        return answer_key(self.number or "", self.start_y, self.answer_type)


def answer_key(number: str, start_y: float, answer_type: AnswerType) -> str:
    """Composite key joining an exercise to its stored answer."""
    kind = answer_type.value if isinstance(answer_type, AnswerType) else answer_type
    return f"{number}_{start_y}_{kind}"


class AnalysisResult(CamelModel):
    """Ordered lessons and exercises for one page."""
    lessons: List[ExtractionUnit] = Field(default_factory=list)
    exercises: List[ExtractionUnit] = Field(default_factory=list)

    @property
    def units(self) -> List[ExtractionUnit]:
        return [*self.lessons, *self.exercises]

    @property
    def is_empty(self) -> bool:
        return not self.lessons and not self.exercises

    def summary(self) -> str:
        return f"{len(self.lessons)} lessons, {len(self.exercises)} exercises"


class AgentResult(CamelModel):
    """Parsed, validated output of one agent invocation."""
    segment_index: int = Field(default=0, ge=0)
    type: ContentType = ContentType.EXERCISES
    subject: Optional[str] = None
    lessons: List[ExtractionUnit] = Field(default_factory=list)
    exercises: List[ExtractionUnit] = Field(default_factory=list)


class SegmentFailure(CamelModel):
    """A segment whose extraction failed and was skipped."""
    segment_index: int
    kind: ErrorKind
    message: str
    raw_excerpt: Optional[str] = None


class AnalysisMetadata(CamelModel):
    """Run details reported alongside an AnalysisResult."""
    method: AnalysisMethod
    service_used: str = Field(description="Backend that served the extraction calls")
    model: Optional[str] = None
    agents_invoked: List[str] = Field(default_factory=list)
    routing: Optional[RoutingInfo] = None
    segment_count: int = 0
    failures: List[SegmentFailure] = Field(default_factory=list)
    timing: Dict[str, float] = Field(default_factory=dict)
    analyzed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AnalysisReport(CamelModel):
    """Terminal success payload of one page analysis run."""
    result: AnalysisResult
    metadata: AnalysisMetadata


class ExtractionContext(CamelModel):
    """Whole-page plus local context handed to every extraction call."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    page_text: str = Field(description="Full page OCR text, shared read-only by all calls")
    page_blocks: List[OCRBlock] = Field(default_factory=list)
    segment: Optional[ImageSegment] = None
    segment_count: int = 1
    routing: Optional[RoutingInfo] = None
    additional_context: Optional[str] = None

    @property
    def blocks(self) -> List[OCRBlock]:
        """Blocks in scope for this call: the segment's, or the whole page's."""
        return self.segment.ocr_blocks if self.segment is not None else self.page_blocks


class CloudAnalysisRequest(CamelModel):
    """Wire payload for a cloud extraction call."""
    image_base64: Optional[str] = None
    image_mime_type: str = "image/png"
    ocr_blocks: List[OCRBlock] = Field(default_factory=list)
