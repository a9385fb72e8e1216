"""Durable retry tracking for deliveries that failed in-process."""

from __future__ import annotations

import enum
import uuid

from sqlalchemy import Enum, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from cadence.models.base import Base, UpdatedAtMixin
from cadence.models.subscription import SeriesKind


class AttemptStatus(str, enum.Enum):
    """Lifecycle of a tracked delivery attempt."""

    PENDING = "pending"
    SENT = "sent"
    RETRY_SCHEDULED = "retry_scheduled"
    PERMANENTLY_FAILED = "permanently_failed"


class DeliveryAttempt(Base, UpdatedAtMixin):
    """One delivery that needed durable retry tracking.

    Successes inside the dispatch worker's own backoff loop never create one.
    Terminal at SENT or PERMANENTLY_FAILED.
    """

    __tablename__ = "delivery_attempts"
    __table_args__ = (Index("ix_delivery_attempts_status_retry", "status", "retry_count"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id", ondelete="RESTRICT"), index=True
    )
    recipient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("recipients.id", ondelete="RESTRICT"), index=True
    )

    # Content descriptor
    series_kind: Mapped[SeriesKind] = mapped_column(
        Enum(
            SeriesKind,
            values_callable=lambda e: [x.value for x in e],
            native_enum=False,
            length=20,
        ),
    )
    subject_line: Mapped[str] = mapped_column(String(500))
    delivery_index: Mapped[int | None] = mapped_column(Integer, default=None)

    # Outcome
    status: Mapped[AttemptStatus] = mapped_column(
        Enum(
            AttemptStatus,
            values_callable=lambda e: [x.value for x in e],
            native_enum=False,
            length=30,
        ),
        default=AttemptStatus.PENDING,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, default=None)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), default=None)

    def __repr__(self) -> str:
        return f"<DeliveryAttempt {self.id} {self.status.value} retries={self.retry_count}>"
