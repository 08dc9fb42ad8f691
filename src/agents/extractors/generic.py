"""Generic agent - subject-agnostic lessons and exercises."""
from typing import Any, Dict, List

from agents.extractors.base import SubjectAgent
from schemas.enums import InputType


class GenericAgent(SubjectAgent):
    """
    Default strategy for segmented runs and routing fallback.

    Also understands the single-unit segment format
    ``{"type": "exercise" | "skip", "exercise": {...}}``.
    """
    name = "generic_agent"
    instruction_files = ("common.md", "generic.md")
    default_input_type = InputType.CANVAS

    def lesson_items(self, data: Dict[str, Any]) -> List[Any]:
        if data.get("type") == "skip":
            return []
        if data.get("type") == "lesson" and isinstance(data.get("lesson"), dict):
            return [data["lesson"]]
        return super().lesson_items(data)

    def exercise_items(self, data: Dict[str, Any]) -> List[Any]:
        if data.get("type") == "skip":
            return []
        if data.get("type") == "exercise" and isinstance(data.get("exercise"), dict):
            return [data["exercise"]]
        return super().exercise_items(data)
