from cadence.schemas.content import (
    ChosenPatterns,
    GeneratedContent,
    PersonProfile,
    Profile,
    VarietyHints,
)
from cadence.schemas.llm import CoachingEmailOutput, WelcomeEmailOutput

__all__ = [
    "ChosenPatterns",
    "GeneratedContent",
    "PersonProfile",
    "Profile",
    "VarietyHints",
    "CoachingEmailOutput",
    "WelcomeEmailOutput",
]
