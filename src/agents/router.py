"""Subject router - classify a page and pick the agent that extracts it."""
import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from agents.backends import Extractor
from agents.errors import HomeworkAnalysisError, RoutingFailed
from agents.extractors import AGENT_CLASSES, SubjectAgent
from agents.extractors.base import INSTRUCTIONS_DIR, coerce_content_type, first_text, load_instructions
from agents.parsing import parse_json_object
from config import PipelineConfig
from schemas.enums import ContentType, GradeLevel, Subject
from schemas.routing import RoutingInfo

logger = logging.getLogger(__name__)

ROUTER_AGENT = "router_agent"
GENERIC_AGENT = "generic_agent"

# Router sees only the start of very long pages
MAX_ROUTER_TEXT = 6000

SCIENCE_BRANCHES = ("physics", "chemistry", "biology", "earth_science")
LANGUAGES = ("english", "french", "spanish", "german", "italian", "dutch")


def normalize_subject(label: Optional[str]) -> Tuple[Subject, Optional[str]]:
    """Map a router subject label like 'Science-Physics' to (family, branch)."""
    if not label:
        return Subject.OTHER, None
    family, _, branch = label.strip().lower().partition("-")
    family = family.strip()
    branch = branch.strip().replace(" ", "_") or None

    if family in ("math", "maths", "mathematics"):
        return Subject.MATH, branch
    if family == "science":
        return Subject.SCIENCE, branch
    if family in SCIENCE_BRANCHES:
        return Subject.SCIENCE, family
    if family == "language":
        return Subject.LANGUAGE, branch
    if family in LANGUAGES:
        return Subject.LANGUAGE, family
    return Subject.OTHER, branch


def normalize_grade_level(label: Optional[str]) -> GradeLevel:
    key = re.sub(r"[^a-z]", "", (label or "").lower())
    return {
        "elementary": GradeLevel.ELEMENTARY,
        "primary": GradeLevel.ELEMENTARY,
        "middleschool": GradeLevel.MIDDLE_SCHOOL,
        "highschool": GradeLevel.HIGH_SCHOOL,
        "university": GradeLevel.UNIVERSITY,
        "college": GradeLevel.UNIVERSITY,
    }.get(key, GradeLevel.UNKNOWN)


def parse_routing(data: Dict[str, Any]) -> RoutingInfo:
    """Build RoutingInfo from the router's JSON answer."""
    label = first_text(data, "subject")
    subject, branch = normalize_subject(label)
    confidence = data.get("confidence")
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
        confidence = 0.0
    return RoutingInfo(
        subject=subject,
        subject_detail=label,
        branch=branch,
        content_type=coerce_content_type(data.get("contentType")),
        grade_level=normalize_grade_level(first_text(data, "gradeLevel")),
        recommended_agent=first_text(data, "recommendedAgent"),
        confidence=min(max(float(confidence), 0.0), 1.0),
    )


def select_agent(routing: RoutingInfo) -> str:
    """
    Choose an agent name: the router's recommendation first, then the subject.

    Unknown recommendations and unrecognized subjects fall back to the
    generic agent.
    """
    recommended = (routing.recommended_agent or "").strip().lower()
    if recommended in ("math_exercise_agent", "math_study_agent", GENERIC_AGENT):
        return recommended
    if recommended.startswith("science_"):
        return "science_exercise_agent"
    if recommended.startswith("language_"):
        return "language_exercise_agent"

    if routing.subject == Subject.MATH:
        if routing.content_type == ContentType.STUDY_MATERIAL:
            return "math_study_agent"
        return "math_exercise_agent"
    if routing.subject == Subject.SCIENCE:
        return "science_exercise_agent"
    if routing.subject == Subject.LANGUAGE:
        return "language_exercise_agent"
    return GENERIC_AGENT


def build_agent(name: str, extractor: Extractor, config: PipelineConfig) -> SubjectAgent:
    agent_class = AGENT_CLASSES.get(name, AGENT_CLASSES[GENERIC_AGENT])
    return agent_class(extractor, config)


async def route_page(
    extractor: Extractor,
    config: PipelineConfig,
    page_text: str,
    additional_context: Optional[str] = None,
    instructions_dir: Path = INSTRUCTIONS_DIR,
) -> RoutingInfo:
    """
    Classify a page's subject, content type and grade level.

    Routing failures never abort a run: they are logged and the generic
    routing is returned with ``fallback=True``.

    Returns:
        RoutingInfo with ``agent_used`` set to the selected agent name
    """
    text = page_text[:MAX_ROUTER_TEXT]
    if additional_context:
        text = f"Assignment Description: {additional_context}\n\n{text}"
    prompt = f"{load_instructions(instructions_dir, 'router.md')}\n\nHomework text:\n{text}"

    try:
        raw = await extractor.extract(prompt, None, None, config.router_max_tokens)
        routing = parse_routing(parse_json_object(raw))
    except Exception as e:
        # Routing never aborts a run
        detail = e if isinstance(e, (HomeworkAnalysisError, ValidationError)) else f"{type(e).__name__}: {e}"
        failure = RoutingFailed(f"Routing failed, using {GENERIC_AGENT}: {detail}", getattr(e, "raw_excerpt", None))
        logger.warning(str(failure))
        routing = RoutingInfo.generic()

    routing.agent_used = select_agent(routing)
    logger.info(
        f"Routed page: subject={routing.subject_detail or routing.subject.value}, "
        f"content={routing.content_type.value}, grade={routing.grade_level.value}, "
        f"agent={routing.agent_used} (confidence {routing.confidence:.2f})"
    )
    return routing
