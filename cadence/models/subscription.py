"""Subscription: one recipient's enrollment in one delivery series."""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, Enum, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from cadence.models.base import Base, UpdatedAtMixin


class SeriesKind(str, enum.Enum):
    """Delivery series a subscription belongs to."""

    WELCOME = "welcome"
    COACHING = "coaching"


class Subscription(Base, UpdatedAtMixin):
    """Durable record of a recipient's enrollment in one delivery series.

    Never deleted, only deactivated. Progress and scheduling fields are changed
    exclusively through the conditional updates in `cadence.services.claims`.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_due", "is_active", "series_kind", "next_eligible_time"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    recipient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("recipients.id", ondelete="RESTRICT"), index=True
    )
    series_kind: Mapped[SeriesKind] = mapped_column(
        Enum(
            SeriesKind,
            values_callable=lambda e: [x.value for x in e],
            native_enum=False,
            length=20,
        ),
    )

    # Scheduling state
    timezone: Mapped[str | None] = mapped_column(String(50))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    next_eligible_time: Mapped[datetime] = mapped_column()
    last_sent_at: Mapped[datetime | None] = mapped_column(default=None)
    # Recipient-local calendar date of last_sent_at, for same-day dedup
    last_sent_date: Mapped[date | None] = mapped_column(Date, default=None)

    # Progress
    delivery_count: Mapped[int] = mapped_column(Integer, default=0)

    # Variety windows (last 4 values each, oldest first)
    recent_openers: Mapped[list[str]] = mapped_column(JSON, default=list)
    recent_collaborators: Mapped[list[str]] = mapped_column(JSON, default=list)
    recent_subject_patterns: Mapped[list[str]] = mapped_column(JSON, default=list)
    recent_quote_sources: Mapped[list[str]] = mapped_column(JSON, default=list)

    @property
    def delivery_index(self) -> int:
        """1-based index of the next delivery in the series."""
        return self.delivery_count + 1

    def __repr__(self) -> str:
        return f"<Subscription {self.series_kind.value} {self.recipient_id} count={self.delivery_count}>"
