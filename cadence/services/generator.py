"""Content generators for coaching and welcome emails.

`OpenAIContentGenerator` asks the model for structured output that includes the
pattern tags it used. `TemplateContentGenerator` builds plain content from the
same hints without any network call and is used when no API key is configured.
"""

from typing import Protocol, TypeVar

import backoff
from httpx import HTTPStatusError
from openai import AsyncOpenAI, RateLimitError
from pydantic import BaseModel

from cadence.config import get_settings
from cadence.core.errors import ContentGenerationError
from cadence.core.logging import get_logger
from cadence.models.subscription import SeriesKind
from cadence.schemas.content import ChosenPatterns, GeneratedContent, Profile, VarietyHints
from cadence.schemas.llm import CoachingEmailOutput, WelcomeEmailOutput

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

COACHING_SYSTEM_PROMPT = """You write a short weekly coaching email for a manager.
The email is part of a 12-week series built around the manager's top strengths and
the strengths of one team member featured each week.

Rules:
- Warm, direct, practical. No fluff, no generic leadership platitudes
- Personal insight: 2-3 sentences about the featured strength in daily management
- Technique: one concrete action the manager can take this week
- Team section: one specific way to work better with the featured team member
- Use the requested opener style, subject pattern and quote source category
- Never reuse an opener style, subject pattern or quote source listed as recent
- Report the tags you actually used in opener_pattern, subject_pattern and quote_source

Output format is strictly JSON matching the schema provided."""

WELCOME_SYSTEM_PROMPT = """You write the welcome email of a 12-week strengths coaching series.
Greet the manager by first name, explain what their top two strengths make possible
together, give one thing to try today and say that the first weekly email arrives
on the next delivery day. Keep it under 200 words.

Output format is strictly JSON matching the schema provided."""

CHALLENGES = {
    "Strategic": "In your next meeting, notice how you naturally see several approaches to any problem.",
    "Achiever": "Count how many small wins you create for your team in one day.",
    "Relator": "Have one important conversation without checking your phone once.",
    "Developer": "Catch someone doing something well today and tell them what growth you see.",
    "Analytical": "Question one assumption in your next project review.",
    "Focus": "Set one clear priority for tomorrow and protect it fiercely.",
    "Responsibility": "Make one promise to yourself today and keep it completely.",
    "Communication": "Explain one complex idea using a simple story.",
    "Ideation": "Generate three wild solutions to your current challenge.",
    "Learner": "Teach someone something you learned this week.",
}


class ContentGenerator(Protocol):
    """Protocol for the external content generator."""

    async def generate(
        self,
        profile: Profile,
        delivery_index: int | None,
        hints: VarietyHints,
        series_kind: SeriesKind,
    ) -> GeneratedContent:
        """Generate subject, body sections and the pattern tags used."""
        ...


def _format_coaching_prompt(profile: Profile, delivery_index: int | None, hints: VarietyHints) -> str:
    featured = hints.featured_collaborator
    requested = hints.requested
    return f"""Write week {delivery_index} of 12.

Manager first name: {profile.first_name}
Manager strengths (ranked): {", ".join(profile.ranked_attributes) or "unknown"}
Featured strength this week: {hints.featured_attribute or "unknown"}
Featured team member: {featured.name if featured else "none"}
Team member strengths: {", ".join(featured.attributes) if featured else "unknown"}

Requested opener style: {requested.opener}
Requested subject pattern: {requested.subject_pattern}
Requested quote source: {requested.quote_source}

Recent opener styles (avoid): {", ".join(hints.recent_openers) or "none"}
Recent subject patterns (avoid): {", ".join(hints.recent_subject_patterns) or "none"}
Recent quote sources (avoid): {", ".join(hints.recent_quote_sources) or "none"}
Recently featured team members: {", ".join(hints.recent_collaborators) or "none"}
"""


class OpenAIContentGenerator:
    """Content generator backed by OpenAI structured outputs."""

    def __init__(self, client: AsyncOpenAI, model: str | None = None) -> None:
        self.client = client
        self.model = model or get_settings().llm_model

    @backoff.on_exception(
        backoff.expo,
        (RateLimitError, HTTPStatusError),
        max_tries=3,
        max_time=60,
    )
    async def _parse(self, system_prompt: str, user_prompt: str, schema: type[M]) -> M:
        response = await self.client.chat.completions.parse(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format=schema,
            temperature=0.7,
        )
        result = response.choices[0].message.parsed
        usage = response.usage
        if usage:
            logger.bind(
                schema=schema.__name__,
                total_tokens=usage.total_tokens,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
            ).debug("content_generated")
        if not isinstance(result, schema):
            raise ContentGenerationError(f"no parsed {schema.__name__} in response")
        return result

    async def generate(
        self,
        profile: Profile,
        delivery_index: int | None,
        hints: VarietyHints,
        series_kind: SeriesKind,
    ) -> GeneratedContent:
        if series_kind == SeriesKind.WELCOME:
            strengths = profile.ranked_attributes[:2]
            welcome = await self._parse(
                WELCOME_SYSTEM_PROMPT,
                f"Manager first name: {profile.first_name}\n"
                f"Top strengths: {', '.join(strengths) or 'unknown'}\n",
                WelcomeEmailOutput,
            )
            return GeneratedContent(
                subject_line=welcome.subject_line,
                body_sections={
                    "greeting": welcome.greeting,
                    "dna": welcome.dna,
                    "challenge": welcome.challenge_text,
                    "whats_next": welcome.whats_next,
                    "cta": welcome.cta,
                },
            )

        coaching = await self._parse(
            COACHING_SYSTEM_PROMPT,
            _format_coaching_prompt(profile, delivery_index, hints),
            CoachingEmailOutput,
        )
        return GeneratedContent(
            subject_line=coaching.subject_line,
            body_sections={
                "pre_header": coaching.pre_header,
                "header": coaching.header,
                "personal_insight": coaching.personal_insight,
                "technique": f"{coaching.technique_name}: {coaching.technique_content}",
                "team_section": coaching.team_section,
                "quote": f"“{coaching.quote}” — {coaching.quote_author}",
            },
            chosen_patterns=ChosenPatterns(
                opener=coaching.opener_pattern,
                collaborator=hints.featured_collaborator.name if hints.featured_collaborator else None,
                subject_pattern=coaching.subject_pattern,
                quote_source=coaching.quote_source,
            ),
        )


class TemplateContentGenerator:
    """Deterministic content built from the hints, with no external call."""

    async def generate(
        self,
        profile: Profile,
        delivery_index: int | None,
        hints: VarietyHints,
        series_kind: SeriesKind,
    ) -> GeneratedContent:
        name = profile.first_name
        strengths = profile.ranked_attributes or ["Strategic", "Achiever"]

        if series_kind == SeriesKind.WELCOME:
            first, second = strengths[0], strengths[1] if len(strengths) > 1 else strengths[0]
            return GeneratedContent(
                subject_line=f"{name}, your strengths journey starts now",
                body_sections={
                    "greeting": f"Hi {name}, welcome aboard.",
                    "dna": (
                        f"You combine {first.lower()} thinking with {second.lower()} "
                        "execution. That's a rare combination."
                    ),
                    "challenge": CHALLENGES.get(
                        first, f"Notice how your {first} strength shows up today."
                    ),
                    "whats_next": "Your first weekly coaching email arrives on the next delivery day.",
                    "cta": "Get ready to lead differently.",
                },
            )

        strength = hints.featured_attribute or strengths[0]
        member = hints.featured_collaborator
        member_name = member.name if member else "your team"
        requested = hints.requested

        subjects = {
            "action_strength": f"Put your {strength} to work this week",
            "outcome_strength": f"Better 1:1s with {strength}",
            "name_benefit": f"{name}, a sharper week ahead",
            "question": f"What would {strength} do here?",
        }
        openers = {
            "question": f"When did your {strength} last surprise you?",
            "observation": f"Your {strength} does something unusual in meetings.",
            "challenge": f"Most managers underuse {strength}. You're ready not to.",
            "discovery": f"Here's a small revelation about {strength}.",
            "direct": f"Time to upgrade how you use {strength}.",
        }

        return GeneratedContent(
            subject_line=subjects.get(requested.subject_pattern, f"Week {delivery_index}: {strength}"),
            body_sections={
                "header": f"Week {delivery_index} of 12",
                "personal_insight": openers.get(
                    requested.opener, f"This week is about {strength}."
                ),
                "technique": CHALLENGES.get(strength, f"Use {strength} deliberately once a day."),
                "team_section": f"Ask {member_name} what they need from you this week.",
            },
            chosen_patterns=requested.model_copy(
                update={"collaborator": member.name if member else None}
            ),
        )


def get_content_generator() -> ContentGenerator:
    """Build the configured generator (OpenAI when a key is set)."""
    settings = get_settings()
    if not settings.openai_api_key:
        logger.warning("openai_api_key_not_set_using_template_generator")
        return TemplateContentGenerator()
    return OpenAIContentGenerator(AsyncOpenAI(api_key=settings.openai_api_key))
