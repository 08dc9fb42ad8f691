"""Pydantic model for the subject router's page classification."""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .enums import ContentType, GradeLevel, Subject


class RoutingInfo(BaseModel):
    """Subject classification of a whole page."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    subject: Subject = Field(default=Subject.OTHER, description="Normalized subject family")
    subject_detail: Optional[str] = Field(
        default=None,
        description="Subject label as returned by the router (e.g. 'Science-Physics')",
    )
    branch: Optional[str] = Field(default=None, description="Sub-discipline, e.g. physics or english")
    content_type: ContentType = Field(default=ContentType.EXERCISES)
    grade_level: GradeLevel = Field(default=GradeLevel.UNKNOWN)
    recommended_agent: Optional[str] = Field(default=None, description="Agent name suggested by the router")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    agent_used: Optional[str] = Field(default=None, description="Agent actually selected")
    fallback: bool = Field(default=False, description="True when routing failed and the generic agent was used")

    @classmethod
    def generic(cls) -> "RoutingInfo":
        """Default routing used when classification is unavailable."""
        return cls(subject=Subject.OTHER, fallback=True)
