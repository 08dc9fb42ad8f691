"""Exception hierarchy for the homework analysis pipeline.

Every error carries an ``ErrorKind`` so callers and the progress/UI
collaborator can tell failures apart without string matching.
"""
from typing import List, Optional

from schemas.enums import ErrorKind

# Maximum characters of offending model output kept for diagnostics
RAW_EXCERPT_LIMIT = 1000


def excerpt(text: Optional[str], limit: int = RAW_EXCERPT_LIMIT) -> Optional[str]:
    if text is None:
        return None
    return text[:limit]


class HomeworkAnalysisError(Exception):
    """Base class for all pipeline errors."""
    kind: ErrorKind = ErrorKind.TRANSIENT
    retryable: bool = False

    def __init__(self, message: str, raw_text: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.raw_excerpt = excerpt(raw_text)

    def __str__(self) -> str:
        return self.message


class InvalidSource(HomeworkAnalysisError):
    """Unreadable image or a page with nothing to analyze."""
    kind = ErrorKind.INVALID_SOURCE


class ModelUnavailable(HomeworkAnalysisError):
    """Extraction backend is not usable at all (missing CLI, bad credentials)."""
    kind = ErrorKind.MODEL_UNAVAILABLE


class TransientExtractionError(HomeworkAnalysisError):
    """Backend call failed in a way that may succeed on retry."""
    kind = ErrorKind.TRANSIENT
    retryable = True


class NetworkError(TransientExtractionError):
    kind = ErrorKind.NETWORK_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None, raw_text: Optional[str] = None):
        super().__init__(message, raw_text)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        # Client errors other than timeouts and rate limits will not change on retry
        return self.status_code is None or self.status_code >= 500 or self.status_code in (408, 429)


class SafetyBlocked(HomeworkAnalysisError):
    """Model refused to answer for safety reasons."""
    kind = ErrorKind.SAFETY_BLOCKED


class ResponseTruncated(HomeworkAnalysisError):
    """Model output hit the token limit before finishing."""
    kind = ErrorKind.RESPONSE_TRUNCATED


class SegmentExtractionFailed(HomeworkAnalysisError):
    """One segment's extraction failed; recorded and skipped by the orchestrator."""
    kind = ErrorKind.SEGMENT_EXTRACTION_FAILED

    def __init__(self, segment_index: int, cause: HomeworkAnalysisError):
        super().__init__(f"Segment {segment_index} failed: {cause}", cause.raw_excerpt)
        self.segment_index = segment_index
        self.cause = cause


class ResponseParseError(HomeworkAnalysisError):
    """Model output could not be turned into the expected structure."""
    kind = ErrorKind.SEGMENT_EXTRACTION_FAILED


class NoJSONStructure(ResponseParseError):
    kind = ErrorKind.NO_JSON_STRUCTURE


class JSONRepairFailed(ResponseParseError):
    kind = ErrorKind.JSON_REPAIR_FAILED

    def __init__(self, message: str, raw_text: Optional[str] = None, original: Optional[Exception] = None):
        super().__init__(message, raw_text)
        self.original = original


class RoutingFailed(HomeworkAnalysisError):
    kind = ErrorKind.ROUTING_FAILED


class AllSegmentsFailed(HomeworkAnalysisError):
    """Every segment of a run failed; terminal for the run."""
    kind = ErrorKind.ALL_SEGMENTS_FAILED

    def __init__(self, failures: List[SegmentExtractionFailed]):
        detail = "; ".join(str(f.cause) for f in failures[:3])
        raw = next((f.raw_excerpt for f in failures if f.raw_excerpt), None)
        super().__init__(f"All {len(failures)} segments failed: {detail}", raw)
        self.failures = failures


class AnalysisCancelled(HomeworkAnalysisError):
    kind = ErrorKind.CANCELLED
