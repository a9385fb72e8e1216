"""Due-set selection: which coaching subscriptions need a delivery now."""

import uuid
from datetime import datetime

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.core.datetime_utils import utc_now
from cadence.models.subscription import SeriesKind, Subscription


async def fetch_due_batch(
    db: AsyncSession,
    batch_size: int,
    offset: int = 0,
    now: datetime | None = None,
    after_id: uuid.UUID | None = None,
) -> list[Subscription]:
    """Get up to `batch_size` subscriptions that are due for delivery.

    A subscription is due if:
    1. It is active
    2. It belongs to the recurring coaching series
    3. Its next eligible time has passed

    Rows are ordered by id so paging within a tick is stable. Claimed rows leave
    the due-set between pages, so callers walking the whole set should page with
    `after_id` (the last id of the previous batch) rather than `offset`.

    Read-only.

    Args:
        db: Database session
        batch_size: Maximum rows to return
        offset: Rows to skip
        now: Reference instant (naive UTC), defaults to now
        after_id: Only return rows with id greater than this

    Returns:
        Due subscriptions, empty when the due-set is exhausted
    """
    conditions = [
        Subscription.is_active == True,  # noqa: E712
        Subscription.series_kind == SeriesKind.COACHING,
        Subscription.next_eligible_time <= (now or utc_now()),
    ]
    if after_id is not None:
        conditions.append(Subscription.id > after_id)

    result = await db.execute(
        select(Subscription)
        .where(and_(*conditions))
        .order_by(Subscription.id)
        .offset(offset)
        .limit(batch_size)
    )
    return list(result.scalars().all())
