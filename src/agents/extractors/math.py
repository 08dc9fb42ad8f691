"""Mathematics agents - exercises with LaTeX, and study material."""
from typing import Any, Dict, List, Optional

from agents.extractors.base import SubjectAgent, first_text
from schemas.enums import InputType
from schemas.homework import ExtractionContext, ExtractionUnit


def fix_latex_escapes(latex: Optional[str]) -> Optional[str]:
    """Collapse doubled backslashes left by over-escaped JSON strings."""
    if latex is None:
        return None
    return latex.replace("\\\\", "\\")


class MathExerciseAgent(SubjectAgent):
    name = "math_exercise_agent"
    instruction_files = ("common.md", "math_exercise.md")
    default_input_type = InputType.MATH_CANVAS
    subject_label = "math"

    def extra_fields(self, item: Dict[str, Any], page: Dict[str, Any]) -> Dict[str, Any]:
        return {"question_latex": fix_latex_escapes(first_text(item, "questionLatex"))}

    def exercise_unit(
        self, item: Dict[str, Any], context: ExtractionContext, page: Optional[Dict[str, Any]] = None
    ) -> ExtractionUnit:
        unit = super().exercise_unit(item, context, page)
        # LaTeX is the display form when present
        if unit.question_latex:
            unit = unit.model_copy(update={"content": unit.question_latex})
        return unit


def _bullets(title: str, values: Any) -> List[str]:
    if not isinstance(values, list) or not values:
        return []
    lines = [f"{title}:"]
    for value in values:
        if isinstance(value, dict):
            latex = value.get("latex", "")
            description = value.get("description")
            lines.append(f"- {latex} ({description})" if description else f"- {latex}")
        else:
            lines.append(f"- {value}")
    return lines


class MathStudyAgent(MathExerciseAgent):
    """Turns a lesson summary and worked examples into lesson units.

    Generated practice problems are ignored; only printed exercises are kept.
    """
    name = "math_study_agent"
    instruction_files = ("common.md", "math_study.md")

    def lesson_items(self, data: Dict[str, Any]) -> List[Any]:
        items = list(super().lesson_items(data))

        summary = data.get("summary")
        if isinstance(summary, dict):
            lines = []
            topics = summary.get("mainTopics")
            if isinstance(topics, list) and topics:
                lines.append("Main topics: " + ", ".join(str(t) for t in topics))
            lines += _bullets("Key points", summary.get("keyPoints"))
            lines += _bullets("Formulas", summary.get("formulas"))
            items.append({
                "topic": first_text(summary, "title"),
                "content": fix_latex_escapes("\n".join(lines)),
                "position": summary.get("position"),
            })

        for example in data.get("workedExamples") or []:
            if not isinstance(example, dict):
                continue
            lines = [first_text(example, "problem") or ""]
            steps = example.get("steps")
            if isinstance(steps, list):
                lines += [f"{i}. {step}" for i, step in enumerate(steps, 1)]
            items.append({
                "topic": first_text(example, "title") or "Worked example",
                "content": fix_latex_escapes("\n".join(line for line in lines if line)),
                "position": example.get("position"),
            })
        return items
