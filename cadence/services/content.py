"""Content requester: builds generator inputs and normalizes its output.

Selection of the featured collaborator and attribute is `index mod N` over the
recipient's ranked lists, so a given delivery always features the same people.
Pattern choice walks configured candidates and skips anything still in the
subscription's variety window.
"""

import asyncio
import re
import unicodedata

from cadence.config import VarietyConfig, get_config
from cadence.core.errors import ContentGenerationError
from cadence.core.logging import get_logger
from cadence.core.retry import RetryConfig, Sleep, retry_with_backoff
from cadence.models.subscription import SeriesKind, Subscription
from cadence.schemas.content import ChosenPatterns, GeneratedContent, Profile, VarietyHints
from cadence.services.generator import ContentGenerator
from cadence.services.variety import VarietyWindows, pick_pattern

logger = get_logger(__name__)

MAX_SUBJECT_LENGTH = 150

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
# Paired emphasis (**x**, __x__, *x*, `x`) and stray markers at either end
_EMPHASIS = re.compile(r"(\*\*|__|\*|`)(\S.*?)\1")
_EDGE_MARKERS = re.compile(r"^[#>*_`\s]+|[*_`\s]+$")
_WHITESPACE = re.compile(r"\s+")


def _strip_control(text: str) -> str:
    return _CONTROL_CHARS.sub("", unicodedata.normalize("NFC", text))


def sanitize_subject(subject: str) -> str:
    """Single-line, unquoted, unformatted subject of bounded length."""
    cleaned = _WHITESPACE.sub(" ", _strip_control(subject)).strip()
    cleaned = _EMPHASIS.sub(r"\2", cleaned)
    cleaned = _EDGE_MARKERS.sub("", cleaned)
    cleaned = cleaned.strip("\"'“”‘’ ").strip()
    if len(cleaned) > MAX_SUBJECT_LENGTH:
        cleaned = cleaned[: MAX_SUBJECT_LENGTH - 1].rstrip() + "…"
    return cleaned


def sanitize_content(content: GeneratedContent) -> GeneratedContent:
    """Normalize generated content.

    Raises:
        ContentGenerationError: If nothing usable is left
    """
    subject = sanitize_subject(content.subject_line)
    sections = {
        key: _strip_control(value).strip()
        for key, value in content.body_sections.items()
        if value and _strip_control(value).strip()
    }
    if not subject or not sections:
        raise ContentGenerationError("generated content is empty after sanitizing")
    return GeneratedContent(
        subject_line=subject,
        body_sections=sections,
        chosen_patterns=content.chosen_patterns,
    )


def build_hints(
    subscription: Subscription,
    profile: Profile,
    variety: VarietyConfig | None = None,
) -> VarietyHints:
    """Inputs for the generator: featured people and requested patterns."""
    variety = variety or get_config().variety
    windows = VarietyWindows.from_subscription(subscription, size=variety.window_size)
    index = subscription.delivery_index

    featured_collaborator = None
    if profile.associated_people:
        featured_collaborator = profile.associated_people[(index - 1) % len(profile.associated_people)]

    featured_attribute = None
    if profile.ranked_attributes:
        featured_attribute = profile.ranked_attributes[(index - 1) % len(profile.ranked_attributes)]

    requested = ChosenPatterns(
        opener=pick_pattern(variety.opener_patterns, windows.openers, index),
        collaborator=featured_collaborator.name if featured_collaborator else None,
        subject_pattern=pick_pattern(variety.subject_patterns, windows.subject_patterns, index),
        quote_source=pick_pattern(variety.quote_sources, windows.quote_sources, index),
    )

    return VarietyHints(
        featured_collaborator=featured_collaborator,
        featured_attribute=featured_attribute,
        requested=requested,
        recent_openers=windows.openers,
        recent_collaborators=windows.collaborators,
        recent_subject_patterns=windows.subject_patterns,
        recent_quote_sources=windows.quote_sources,
    )


def _resolve_patterns(returned: ChosenPatterns, requested: ChosenPatterns) -> ChosenPatterns:
    """Use the generator's tags, falling back to the requested ones it left unset."""
    missing = {
        name: getattr(requested, name)
        for name in ChosenPatterns.model_fields
        if name not in returned.model_fields_set or getattr(returned, name) in (None, "")
    }
    return returned.model_copy(update=missing)


async def next_content(
    subscription: Subscription,
    profile: Profile,
    generator: ContentGenerator,
    timeout: float | None = None,
    max_attempts: int | None = None,
    backoff_base: float | None = None,
    sleep: Sleep = asyncio.sleep,
) -> GeneratedContent | None:
    """Generate the next delivery's content for a subscription.

    Coaching deliveries need at least one collaborator to feature; without one
    the delivery is skipped (returns None) before anything is generated.

    Args:
        subscription: The subscription being served
        profile: Recipient profile
        generator: Content generator
        timeout: Per-call timeout in seconds, defaults to config
        max_attempts: Generator attempts, defaults to config
        backoff_base: Base backoff delay, defaults to config
        sleep: Delay primitive, replaceable in tests

    Returns:
        Sanitized content, or None to skip this delivery

    Raises:
        ContentGenerationError: If generation fails after all attempts
    """
    delivery = get_config().delivery
    is_welcome = subscription.series_kind == SeriesKind.WELCOME

    if not is_welcome and not profile.associated_people:
        logger.bind(
            subscription_id=str(subscription.id),
            recipient_id=str(profile.recipient_id),
        ).info("delivery_skipped_no_collaborators")
        return None

    hints = VarietyHints() if is_welcome else build_hints(subscription, profile)
    delivery_index = None if is_welcome else subscription.delivery_index

    retry_config = RetryConfig(
        max_attempts=max_attempts or delivery.max_attempts,
        backoff_base=delivery.backoff_base_seconds if backoff_base is None else backoff_base,
        timeout=timeout or delivery.generation_timeout_seconds,
    )
    try:
        content = await retry_with_backoff(
            lambda: generator.generate(profile, delivery_index, hints, subscription.series_kind),
            config=retry_config,
            operation_name=f"generate:{subscription.series_kind.value}:{subscription.id}",
            sleep=sleep,
        )
    except ContentGenerationError:
        raise
    except Exception as e:
        raise ContentGenerationError(str(e) or type(e).__name__) from e

    content = sanitize_content(content)
    if not is_welcome:
        content = content.model_copy(
            update={"chosen_patterns": _resolve_patterns(content.chosen_patterns, hints.requested)}
        )
    return content
