import uuid

from pydantic import BaseModel, Field


class PersonProfile(BaseModel):
    """A collaborator as seen by the content generator."""

    name: str
    attributes: list[str] = Field(default_factory=list)


class Profile(BaseModel):
    """Read-only recipient profile resolved before each delivery."""

    recipient_id: uuid.UUID
    email: str
    display_name: str | None = None
    timezone: str | None = None
    ranked_attributes: list[str] = Field(default_factory=list)
    associated_people: list[PersonProfile] = Field(default_factory=list)

    @property
    def first_name(self) -> str:
        """First word of the display name, or a neutral fallback."""
        if self.display_name and self.display_name.strip():
            return self.display_name.strip().split()[0]
        return "there"


class ChosenPatterns(BaseModel):
    """Explicit content-shape tags, one per variety dimension."""

    opener: str = "default"
    collaborator: str | None = None
    subject_pattern: str = "default"
    quote_source: str = "default"


class VarietyHints(BaseModel):
    """What the generator should use this time and what to steer away from."""

    featured_collaborator: PersonProfile | None = None
    featured_attribute: str | None = None
    requested: ChosenPatterns = Field(default_factory=ChosenPatterns)
    recent_openers: list[str] = Field(default_factory=list)
    recent_collaborators: list[str] = Field(default_factory=list)
    recent_subject_patterns: list[str] = Field(default_factory=list)
    recent_quote_sources: list[str] = Field(default_factory=list)


class GeneratedContent(BaseModel):
    """Normalized output of the content generator."""

    subject_line: str
    body_sections: dict[str, str]
    chosen_patterns: ChosenPatterns = Field(default_factory=ChosenPatterns)
