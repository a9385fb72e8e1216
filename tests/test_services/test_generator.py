"""Tests for the content generators."""

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from cadence.config import Settings
from cadence.core.errors import ContentGenerationError
from cadence.models.subscription import SeriesKind
from cadence.schemas.content import ChosenPatterns, PersonProfile, Profile, VarietyHints
from cadence.schemas.llm import CoachingEmailOutput, WelcomeEmailOutput
from cadence.services.generator import (
    OpenAIContentGenerator,
    TemplateContentGenerator,
    get_content_generator,
)

pytestmark = pytest.mark.asyncio


@pytest.fixture
def profile() -> Profile:
    return Profile(
        recipient_id=uuid.uuid4(),
        email="jane@corp.com",
        display_name="Jane Doe",
        timezone="America/New_York",
        ranked_attributes=["Strategic", "Achiever", "Relator"],
        associated_people=[PersonProfile(name="Alex", attributes=["Developer"])],
    )


@pytest.fixture
def hints() -> VarietyHints:
    return VarietyHints(
        featured_collaborator=PersonProfile(name="Alex", attributes=["Developer"]),
        featured_attribute="Achiever",
        requested=ChosenPatterns(
            opener="question",
            collaborator="Alex",
            subject_pattern="action_strength",
            quote_source="scientists_researchers",
        ),
        recent_openers=["direct"],
    )


def _client_returning(parsed) -> MagicMock:
    """OpenAI client mock whose parse call returns `parsed`."""
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.parsed = parsed
    response.usage = MagicMock(total_tokens=100, prompt_tokens=80, completion_tokens=20)

    client = MagicMock()
    client.chat.completions.parse = AsyncMock(return_value=response)
    return client


class TestOpenAIContentGenerator:
    """Tests for OpenAIContentGenerator."""

    async def test_coaching_reports_tags_used(self, profile, hints):
        parsed = CoachingEmailOutput(
            subject_line="Put your Achiever to work",
            pre_header="Small wins, counted",
            header="Week 2",
            personal_insight="You finish what you start.",
            technique_name="Win log",
            technique_content="Write down three wins every evening.",
            team_section="Ask Alex which win mattered most.",
            quote="Energy and persistence conquer all things.",
            quote_author="Benjamin Franklin",
            opener_pattern="observation",
            subject_pattern="action_strength",
            quote_source="historical_figures",
        )
        client = _client_returning(parsed)
        generator = OpenAIContentGenerator(client, model="gpt-test")

        content = await generator.generate(profile, 2, hints, SeriesKind.COACHING)

        assert content.subject_line == "Put your Achiever to work"
        assert content.body_sections["pre_header"] == "Small wins, counted"
        assert content.body_sections["technique"].startswith("Win log:")
        assert content.chosen_patterns.opener == "observation"
        assert content.chosen_patterns.quote_source == "historical_figures"
        assert content.chosen_patterns.collaborator == "Alex"

        kwargs = client.chat.completions.parse.call_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["response_format"] is CoachingEmailOutput
        user_prompt = kwargs["messages"][1]["content"]
        assert "Write week 2 of 12." in user_prompt
        assert "Recent opener styles (avoid): direct" in user_prompt

    async def test_welcome_uses_welcome_schema(self, profile):
        parsed = WelcomeEmailOutput(
            subject_line="Welcome, Jane",
            greeting="Hi Jane",
            dna="Strategy plus drive.",
            challenge_text="List three paths for one problem.",
            whats_next="Your first weekly email arrives Monday.",
            cta="Let's go.",
        )
        client = _client_returning(parsed)

        content = await OpenAIContentGenerator(client, model="gpt-test").generate(
            profile, None, VarietyHints(), SeriesKind.WELCOME
        )

        assert content.subject_line == "Welcome, Jane"
        assert set(content.body_sections) == {"greeting", "dna", "challenge", "whats_next", "cta"}
        kwargs = client.chat.completions.parse.call_args.kwargs
        assert kwargs["response_format"] is WelcomeEmailOutput
        assert "Top strengths: Strategic, Achiever" in kwargs["messages"][1]["content"]

    async def test_missing_parsed_output_fails(self, profile, hints):
        client = _client_returning(None)

        with pytest.raises(ContentGenerationError):
            await OpenAIContentGenerator(client, model="gpt-test").generate(
                profile, 1, hints, SeriesKind.COACHING
            )


    async def test_wrong_parsed_schema_fails(self, profile, hints):
        client = _client_returning(
            WelcomeEmailOutput(
                subject_line="Welcome",
                greeting="Hi",
                dna="x",
                challenge_text="y",
                whats_next="z",
                cta="go",
            )
        )

        with pytest.raises(ContentGenerationError):
            await OpenAIContentGenerator(client, model="gpt-test").generate(
                profile, 1, hints, SeriesKind.COACHING
            )


class TestTemplateContentGenerator:
    """Tests for TemplateContentGenerator."""

    async def test_coaching_follows_requested_patterns(self, profile, hints):
        content = await TemplateContentGenerator().generate(profile, 2, hints, SeriesKind.COACHING)

        assert content.subject_line == "Put your Achiever to work this week"
        assert "Alex" in content.body_sections["team_section"]
        assert content.chosen_patterns == hints.requested

    async def test_welcome_mentions_top_strengths(self, profile):
        content = await TemplateContentGenerator().generate(
            profile, None, VarietyHints(), SeriesKind.WELCOME
        )

        assert content.subject_line.startswith("Jane,")
        assert "strategic" in content.body_sections["dna"]
        assert "achiever" in content.body_sections["dna"]


class TestGetContentGenerator:
    """Tests for get_content_generator."""

    async def test_template_without_api_key(self):
        with patch("cadence.services.generator.get_settings", return_value=Settings(openai_api_key="")):
            assert isinstance(get_content_generator(), TemplateContentGenerator)

    async def test_openai_with_api_key(self):
        with patch(
            "cadence.services.generator.get_settings",
            return_value=Settings(openai_api_key="sk-test"),
        ):
            assert isinstance(get_content_generator(), OpenAIContentGenerator)
