"""Daily delivery metrics snapshots."""

import uuid
from datetime import date

from sqlalchemy import JSON, Date, Integer, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from cadence.models.base import Base, TimestampMixin


class MetricsSnapshot(Base, TimestampMixin):
    """Per-process delivery counters flushed once per day.

    Several processes may flush for the same period; consumers sum the rows.
    """

    __tablename__ = "metrics_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    period_date: Mapped[date] = mapped_column(Date, index=True)
    total_attempted: Mapped[int] = mapped_column(Integer, default=0)
    succeeded: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    timezone_breakdown: Mapped[dict[str, int]] = mapped_column(JSON, default=dict)

    def __repr__(self) -> str:
        return f"<MetricsSnapshot {self.period_date} {self.succeeded}/{self.total_attempted}>"
