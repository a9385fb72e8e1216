"""Concurrency gate: conditional updates that claim and advance subscriptions.

Ticks may overlap and nothing serializes them. Instead every mutation of a
subscription's progress is a single conditional UPDATE that re-checks the
values the caller read. If another tick got there first the UPDATE matches no
row and the caller simply drops its result.

The provider call happens before the claim and cannot join the transaction, so
a crash between a send and its claim can lead to one duplicate send. The
bookkeeping itself still advances exactly once per delivery.
"""

import uuid
from datetime import date, datetime

from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.core.datetime_utils import utc_now
from cadence.core.logging import get_logger
from cadence.models.subscription import Subscription
from cadence.services.variety import VarietyWindows

logger = get_logger(__name__)


async def try_claim(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    expected_delivery_count: int,
    today: date,
    cap: int,
    now: datetime | None = None,
    next_eligible_time: datetime | None = None,
    windows: VarietyWindows | None = None,
) -> bool:
    """Atomically claim one delivery for a subscription.

    Matches only if the row still has `expected_delivery_count` and nothing was
    sent on `today` (or later). On a match it advances the count by one, stamps
    the send, deactivates the subscription when the cap is reached, moves the
    next eligible time and stores the updated variety windows.

    The caller owns the transaction and must commit.

    Args:
        db: Database session
        subscription_id: Subscription to claim
        expected_delivery_count: delivery_count the caller read before sending
        today: Recipient-local calendar date of the send
        cap: Maximum deliveries for the series
        now: Send instant (naive UTC), defaults to now
        next_eligible_time: New next_eligible_time, left unchanged if None
        windows: Variety windows including this delivery, left unchanged if None

    Returns:
        True if this caller won the claim
    """
    if expected_delivery_count >= cap:
        logger.bind(
            subscription_id=str(subscription_id),
            expected_delivery_count=expected_delivery_count,
            cap=cap,
        ).debug("claim_rejected_cap_reached")
        return False

    new_count = expected_delivery_count + 1
    values: dict = {
        "delivery_count": new_count,
        "last_sent_at": now or utc_now(),
        "last_sent_date": today,
        "is_active": new_count < cap,
    }
    if next_eligible_time is not None:
        values["next_eligible_time"] = next_eligible_time
    if windows is not None:
        values.update(windows.as_column_values())

    result = await db.execute(
        update(Subscription)
        .where(
            and_(
                Subscription.id == subscription_id,
                Subscription.delivery_count == expected_delivery_count,
                or_(
                    Subscription.last_sent_date.is_(None),
                    Subscription.last_sent_date < today,
                ),
            )
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    claimed = result.rowcount == 1
    log = logger.bind(
        subscription_id=str(subscription_id),
        expected_delivery_count=expected_delivery_count,
        today=str(today),
    )
    if claimed:
        log.bind(delivery_count=new_count, exhausted=new_count >= cap).debug("claim_won")
    else:
        log.debug("claim_lost")
    return claimed


async def defer_to_next_slot(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    expected_delivery_count: int,
    next_eligible_time: datetime,
) -> bool:
    """Move a subscription's next eligible time forward without counting a delivery.

    Used after a failed or skipped delivery so the main pass does not retry the
    same week mid-cycle. Only moves forward and only if nobody advanced the
    subscription in the meantime.

    The caller owns the transaction and must commit.

    Returns:
        True if the row was updated
    """
    result = await db.execute(
        update(Subscription)
        .where(
            and_(
                Subscription.id == subscription_id,
                Subscription.delivery_count == expected_delivery_count,
                Subscription.next_eligible_time < next_eligible_time,
            )
        )
        .values(next_eligible_time=next_eligible_time)
        .execution_options(synchronize_session=False)
    )
    deferred = result.rowcount == 1
    logger.bind(
        subscription_id=str(subscription_id),
        next_eligible_time=next_eligible_time.isoformat(),
        deferred=deferred,
    ).debug("subscription_deferred")
    return deferred
