"""Shared enums used across the homework analysis schemas."""
from enum import Enum


class Subject(str, Enum):
    MATH = "math"
    SCIENCE = "science"
    LANGUAGE = "language"
    OTHER = "other"


class GradeLevel(str, Enum):
    ELEMENTARY = "elementary"
    MIDDLE_SCHOOL = "middle_school"
    HIGH_SCHOOL = "high_school"
    UNIVERSITY = "university"
    UNKNOWN = "unknown"


class ContentType(str, Enum):
    """Discriminator returned by every subject agent."""
    EXERCISES = "exercises"
    STUDY_MATERIAL = "study_material"
    HYBRID = "hybrid"


class UnitKind(str, Enum):
    LESSON = "lesson"
    EXERCISE = "exercise"


class InputType(str, Enum):
    """How the student is expected to answer an exercise."""
    TEXT_INPUT = "text_input"
    INLINE = "inline"
    MULTIPLE_CHOICE = "multiple_choice"
    TEXT_AREA = "text_area"
    MATH_CANVAS = "math_canvas"
    DRAWING_CANVAS = "drawing_canvas"
    # Legacy single-agent values
    TEXT = "text"
    CANVAS = "canvas"
    BOTH = "both"


class AnswerType(str, Enum):
    """Storage flavour of a student answer, part of the answer key."""
    CANVAS = "canvas"
    TEXT = "text"
    INLINE = "inline"


class AnalysisMethod(str, Enum):
    OCR_ONLY = "ocr_only"
    SEGMENTED = "segmented"
    AGENTIC = "agentic"


class CoordinateOrigin(str, Enum):
    """Where normalized y = 0.0 sits on the page."""
    TOP = "top"
    BOTTOM = "bottom"


class ErrorKind(str, Enum):
    INVALID_SOURCE = "invalid_source"
    MODEL_UNAVAILABLE = "model_unavailable"
    SEGMENT_EXTRACTION_FAILED = "segment_extraction_failed"
    NO_JSON_STRUCTURE = "no_json_structure"
    JSON_REPAIR_FAILED = "json_repair_failed"
    ALL_SEGMENTS_FAILED = "all_segments_failed"
    ROUTING_FAILED = "routing_failed"
    NETWORK_ERROR = "network_error"
    SAFETY_BLOCKED = "safety_blocked"
    RESPONSE_TRUNCATED = "response_truncated"
    TRANSIENT = "transient"
    CANCELLED = "cancelled"


# Input types answered on a drawing surface
CANVAS_INPUT_TYPES = (InputType.MATH_CANVAS, InputType.DRAWING_CANVAS, InputType.CANVAS)

# Subject string used by the OCR-only fallback result
FALLBACK_SUBJECT = "General"
