"""Homework analysis schemas - Pydantic models for OCR input and extraction output."""
from .archive import PageAnalysis, PageAnalysisArchive
from .enums import (
    AnalysisMethod,
    AnswerType,
    ContentType,
    CoordinateOrigin,
    ErrorKind,
    GradeLevel,
    InputType,
    Subject,
    UnitKind,
)
from .homework import (
    AgentResult,
    AnalysisMetadata,
    AnalysisReport,
    AnalysisResult,
    CloudAnalysisRequest,
    ExtractionContext,
    ExtractionUnit,
    ImageSegment,
    InputConfig,
    OCRBlock,
    OCRResult,
    SegmentFailure,
    answer_key,
)
from .routing import RoutingInfo

__all__ = [
    # Enums
    "AnalysisMethod",
    "AnswerType",
    "ContentType",
    "CoordinateOrigin",
    "ErrorKind",
    "GradeLevel",
    "InputType",
    "Subject",
    "UnitKind",
    # OCR input and segments
    "OCRBlock",
    "OCRResult",
    "ImageSegment",
    "ExtractionContext",
    "CloudAnalysisRequest",
    # Extraction output
    "InputConfig",
    "ExtractionUnit",
    "AgentResult",
    "AnalysisResult",
    "AnalysisMetadata",
    "AnalysisReport",
    "SegmentFailure",
    "RoutingInfo",
    "answer_key",
    # Archive
    "PageAnalysis",
    "PageAnalysisArchive",
]
