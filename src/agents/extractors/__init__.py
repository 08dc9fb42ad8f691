"""Subject-specialized extraction agents."""
from agents.extractors.base import SubjectAgent
from agents.extractors.generic import GenericAgent
from agents.extractors.language import LanguageExerciseAgent
from agents.extractors.math import MathExerciseAgent, MathStudyAgent
from agents.extractors.science import ScienceExerciseAgent

AGENT_CLASSES = {
    agent.name: agent
    for agent in (GenericAgent, MathExerciseAgent, MathStudyAgent, ScienceExerciseAgent, LanguageExerciseAgent)
}

__all__ = [
    "AGENT_CLASSES",
    "GenericAgent",
    "LanguageExerciseAgent",
    "MathExerciseAgent",
    "MathStudyAgent",
    "ScienceExerciseAgent",
    "SubjectAgent",
]
