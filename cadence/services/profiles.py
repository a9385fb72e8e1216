"""Recipient profile lookup.

The profile tables are written by onboarding; this module only reads them.
"""

import uuid
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cadence.models.recipient import Recipient
from cadence.schemas.content import PersonProfile, Profile


class ProfileStore(Protocol):
    """Protocol for resolving recipient profiles."""

    async def get_profile(self, db: AsyncSession, recipient_id: uuid.UUID) -> Profile | None:
        """Return the recipient's profile, or None if the recipient is gone."""
        ...


class DatabaseProfileStore:
    """Profile store backed by the recipients and associated_people tables."""

    async def get_profile(self, db: AsyncSession, recipient_id: uuid.UUID) -> Profile | None:
        result = await db.execute(
            select(Recipient)
            .where(Recipient.id == recipient_id)
            .options(selectinload(Recipient.associated_people))
            .execution_options(populate_existing=True)
        )
        recipient = result.scalar_one_or_none()
        if recipient is None:
            return None

        people = sorted(recipient.associated_people, key=lambda p: (p.rank, p.name))
        return Profile(
            recipient_id=recipient.id,
            email=recipient.email,
            display_name=recipient.display_name,
            timezone=recipient.timezone,
            ranked_attributes=list(recipient.ranked_attributes or []),
            associated_people=[
                PersonProfile(name=p.name, attributes=list(p.attributes or [])) for p in people
            ],
        )
