"""Pydantic models for the page-indexed analysis archive of multi-page sources."""
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .enums import AnalysisMethod
from .homework import AnalysisResult


class PageAnalysis(BaseModel):
    """Analysis of a single page plus the student's stored answers."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        ser_json_bytes="base64",
        val_json_bytes="base64",
    )

    page_number: int = Field(ge=1, description="1-indexed page number")
    analysis_result: AnalysisResult
    exercise_answers: Dict[str, bytes] = Field(
        default_factory=dict,
        description="Stored answers keyed by answer key",
    )
    analysis_method: AnalysisMethod
    analyzed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PageAnalysisArchive(BaseModel):
    """Mapping from page number to its latest analysis.

    Entries are only added or replaced one page at a time; nothing here
    removes a page.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    source_id: Optional[str] = Field(default=None, description="Caller-supplied source identifier")
    page_analyses: Dict[int, PageAnalysis] = Field(default_factory=dict)

    def set_analysis(self, analysis: PageAnalysis) -> None:
        self.page_analyses[analysis.page_number] = analysis

    def get_analysis(self, page_number: int) -> Optional[PageAnalysis]:
        return self.page_analyses.get(page_number)

    @property
    def analyzed_pages(self) -> List[int]:
        return sorted(self.page_analyses)

    def set_answer(self, page_number: int, key: str, answer: bytes) -> None:
        analysis = self.page_analyses.get(page_number)
        if analysis is None:
            raise KeyError(f"Page {page_number} has not been analyzed")
        analysis.exercise_answers[key] = answer

    def get_answer(self, page_number: int, key: str) -> Optional[bytes]:
        analysis = self.page_analyses.get(page_number)
        if analysis is None:
            return None
        return analysis.exercise_answers.get(key)
