from pydantic import BaseModel, Field


class CoachingEmailOutput(BaseModel):
    """
    Structured output schema for the weekly coaching email.

    Used with OpenAI's response_format for guaranteed schema compliance.
    The pattern tags are reported by the model rather than inferred from text.
    """

    subject_line: str = Field(description="Subject line, max 60 characters", max_length=200)
    pre_header: str = Field(description="Inbox preview text, max 90 characters")
    header: str = Field(description="Short heading for the email")
    personal_insight: str = Field(description="2-3 sentences on the featured strength")
    technique_name: str = Field(description="Name of this week's technique")
    technique_content: str = Field(description="One concrete action for this week")
    team_section: str = Field(description="Tip for working with the featured team member")
    quote: str = Field(description="Short quote")
    quote_author: str = Field(description="Author of the quote")
    opener_pattern: str = Field(description="Tag of the opener style actually used")
    subject_pattern: str = Field(description="Tag of the subject line pattern actually used")
    quote_source: str = Field(description="Tag of the quote source category actually used")


class WelcomeEmailOutput(BaseModel):
    """Structured output schema for the one-shot welcome email."""

    subject_line: str = Field(description="Subject line, max 60 characters", max_length=200)
    greeting: str = Field(description="Personal greeting")
    dna: str = Field(description="What the top two strengths make possible together")
    challenge_text: str = Field(description="One thing to try today")
    whats_next: str = Field(description="What the weekly emails will bring")
    cta: str = Field(description="Closing call to action")
