"""Language agent - grammar, vocabulary, reading and writing exercises."""
from typing import Any, Dict

from agents.extractors.base import SubjectAgent, first_text
from schemas.enums import InputType
from schemas.homework import ExtractionContext


class LanguageExerciseAgent(SubjectAgent):
    name = "language_exercise_agent"
    instruction_files = ("common.md", "language.md")
    default_input_type = InputType.TEXT_INPUT
    subject_label = "language"

    def page_fields(self, data: Dict[str, Any], context: ExtractionContext) -> Dict[str, Any]:
        language = first_text(data, "language")
        if language is None and context.routing is not None:
            language = context.routing.branch
        return {"language": language}

    def extra_fields(self, item: Dict[str, Any], page: Dict[str, Any]) -> Dict[str, Any]:
        language = first_text(item, "language") or page.get("language")
        return {"language": language.lower() if language else None}
