"""Timing spans for one analysis run, reported in AnalysisMetadata.timing.

Usage:
    tel = Telemetry()

    with tel.span("segmentation"):
        segments = segment_page(...)

    # concurrent segment calls report flat durations instead of nesting
    tel.record("segment_3", 4.2, parent="extraction")

    metadata.timing = tel.timings()
"""
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional


@dataclass
class Span:
    name: str
    parent: Optional[str] = None
    duration: Optional[float] = None

    @property
    def path(self) -> str:
        return f"{self.parent}/{self.name}" if self.parent else self.name


class Telemetry:
    """Collects the spans of a single run; never shared between runs."""

    def __init__(self):
        self.spans: List[Span] = []
        self._open: List[str] = []
        self._created = time.monotonic()

    @contextmanager
    def span(self, name: str) -> Iterator[Span]:
        """Time a block of sequential code, nested under any open span."""
        entry = Span(name, parent="/".join(self._open) or None)
        self.spans.append(entry)
        self._open.append(name)
        started = time.monotonic()
        try:
            yield entry
        finally:
            entry.duration = time.monotonic() - started
            self._open.pop()

    def record(self, name: str, duration: float, parent: Optional[str] = None):
        """Add a duration measured elsewhere, e.g. inside a concurrent task."""
        self.spans.append(Span(name, parent, duration))

    def total_seconds(self) -> float:
        return time.monotonic() - self._created

    def timings(self) -> Dict[str, float]:
        """Finished spans as ``path -> seconds``, plus the run ``total``."""
        result = {s.path: round(s.duration, 3) for s in self.spans if s.duration is not None}
        result["total"] = round(self.total_seconds(), 3)
        return result
