"""Rolling-window variety tracking for generated content.

Each subscription keeps four short histories of the content "shapes" it was sent
(opener style, featured collaborator, subject pattern, quote source). New content
is steered away from anything still in the window. Windows are written back only
through the claim update, so they advance exactly when a delivery is counted.
"""

from dataclasses import dataclass, field

from cadence.models.subscription import Subscription
from cadence.schemas.content import ChosenPatterns

DEFAULT_PATTERN = "default"
WINDOW_SIZE = 4


def push_window(window: list[str], value: str | None, size: int = WINDOW_SIZE) -> list[str]:
    """Append a value and keep only the newest `size` entries (oldest dropped first)."""
    if value is None:
        return list(window)[-size:]
    return [*window, value][-size:]


def pick_pattern(
    candidates: list[str],
    recent: list[str],
    delivery_index: int,
    default: str = DEFAULT_PATTERN,
) -> str:
    """Choose a pattern not used within the recent window.

    The walk over candidates starts at `delivery_index mod len(candidates)`, so
    the choice is deterministic for a given history. Falls back to `default`
    when every candidate is still in the window.
    """
    if not candidates:
        return default

    recent_set = set(recent)
    start = delivery_index % len(candidates)
    for offset in range(len(candidates)):
        candidate = candidates[(start + offset) % len(candidates)]
        if candidate not in recent_set:
            return candidate
    return default


@dataclass
class VarietyWindows:
    """The four per-subscription rolling windows."""

    openers: list[str] = field(default_factory=list)
    collaborators: list[str] = field(default_factory=list)
    subject_patterns: list[str] = field(default_factory=list)
    quote_sources: list[str] = field(default_factory=list)
    size: int = WINDOW_SIZE

    @classmethod
    def from_subscription(cls, subscription: Subscription, size: int = WINDOW_SIZE) -> "VarietyWindows":
        return cls(
            openers=list(subscription.recent_openers or []),
            collaborators=list(subscription.recent_collaborators or []),
            subject_patterns=list(subscription.recent_subject_patterns or []),
            quote_sources=list(subscription.recent_quote_sources or []),
            size=size,
        )

    def push(self, chosen: ChosenPatterns) -> "VarietyWindows":
        """Return new windows with one delivery's patterns appended."""
        return VarietyWindows(
            openers=push_window(self.openers, chosen.opener, self.size),
            collaborators=push_window(self.collaborators, chosen.collaborator, self.size),
            subject_patterns=push_window(self.subject_patterns, chosen.subject_pattern, self.size),
            quote_sources=push_window(self.quote_sources, chosen.quote_source, self.size),
            size=self.size,
        )

    def as_column_values(self) -> dict[str, list[str]]:
        """Column values for the subscription update."""
        return {
            "recent_openers": self.openers,
            "recent_collaborators": self.collaborators,
            "recent_subject_patterns": self.subject_patterns,
            "recent_quote_sources": self.quote_sources,
        }
