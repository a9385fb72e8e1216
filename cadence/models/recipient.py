"""Recipient profile tables.

Owned by the onboarding side of the product; the scheduler only reads them.
"""

from __future__ import annotations

import uuid

from sqlalchemy import JSON, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cadence.models.base import Base, TimestampMixin


class Recipient(Base, TimestampMixin):
    """A person who can be enrolled in delivery series."""

    __tablename__ = "recipients"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    display_name: Mapped[str | None] = mapped_column(String(255))
    timezone: Mapped[str] = mapped_column(String(50), default="America/New_York")
    # Top strengths, most dominant first
    ranked_attributes: Mapped[list[str]] = mapped_column(JSON, default=list)

    # Relationships
    associated_people: Mapped[list[AssociatedPerson]] = relationship(
        back_populates="recipient",
        order_by="AssociatedPerson.rank",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Recipient {self.email}>"


class AssociatedPerson(Base, TimestampMixin):
    """A collaborator (team member) of a recipient, featured in coaching content."""

    __tablename__ = "associated_people"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    recipient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("recipients.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(255))
    attributes: Mapped[list[str]] = mapped_column(JSON, default=list)
    rank: Mapped[int] = mapped_column(Integer, default=0)

    # Relationships
    recipient: Mapped[Recipient] = relationship(back_populates="associated_people")

    def __repr__(self) -> str:
        return f"<AssociatedPerson {self.name}>"
