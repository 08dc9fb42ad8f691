"""Science agent - physics, chemistry, biology and earth science exercises."""
from typing import Any, Dict

from agents.extractors.base import SubjectAgent, first_text
from schemas.enums import InputType
from schemas.homework import ExtractionContext


class ScienceExerciseAgent(SubjectAgent):
    name = "science_exercise_agent"
    instruction_files = ("common.md", "science.md")
    default_input_type = InputType.TEXT_INPUT
    subject_label = "science"

    def page_fields(self, data: Dict[str, Any], context: ExtractionContext) -> Dict[str, Any]:
        branch = first_text(data, "scienceBranch")
        if branch is None and context.routing is not None:
            branch = context.routing.branch
        return {"science_branch": branch}

    def extra_fields(self, item: Dict[str, Any], page: Dict[str, Any]) -> Dict[str, Any]:
        branch = first_text(item, "scienceBranch") or page.get("science_branch")
        return {"science_branch": branch.lower() if branch else None}
