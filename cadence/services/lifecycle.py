"""Subscription lifecycle: enrollment, weekly cadence and the delivery cap.

State machine per recurring subscription:

    Active(count=k) --send ok--> Active(count=k+1)   if k + 1 < cap
    Active(count=k) --send ok--> Exhausted           if k + 1 == cap

Exhausted is terminal. Reactivation means enrolling a new subscription.
"""

import uuid
from datetime import datetime

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.config import get_config
from cadence.core.datetime_utils import (
    is_valid_timezone,
    next_weekly_occurrence,
    parse_slot_time,
    utc_now,
)
from cadence.core.errors import InvariantViolation
from cadence.core.logging import get_logger
from cadence.models.recipient import Recipient
from cadence.models.subscription import SeriesKind, Subscription

logger = get_logger(__name__)


def compute_next_eligible_time(
    timezone: str | None,
    now: datetime | None = None,
    weekday: int | None = None,
    slot_time_local: str | None = None,
) -> datetime:
    """Next weekly delivery slot for a recipient, as naive UTC.

    Computed from the recipient's local calendar on every call, never from an
    offset cached at enrollment, so the slot keeps its local hour across
    daylight-saving transitions.

    Args:
        timezone: Recipient's IANA timezone
        now: Reference instant (naive UTC), defaults to now
        weekday: Slot day of week (0 = Monday), defaults to config
        slot_time_local: Slot time "HH:MM", defaults to config

    Returns:
        Naive UTC datetime strictly after now

    Raises:
        InvariantViolation: If the timezone is missing or unknown
    """
    if not is_valid_timezone(timezone):
        raise InvariantViolation(f"invalid timezone: {timezone!r}")

    delivery = get_config().delivery
    return next_weekly_occurrence(
        timezone,  # type: ignore[arg-type]
        weekday=delivery.slot_weekday if weekday is None else weekday,
        at=parse_slot_time(slot_time_local or delivery.slot_time_local),
        now=now,
    )


def enforce_cap(subscription: Subscription, cap: int) -> bool:
    """Deactivate a subscription that has used up its deliveries.

    One-way: never sets is_active back to True.

    Returns:
        True if the subscription is (now) exhausted
    """
    if subscription.delivery_count >= cap:
        if subscription.is_active:
            subscription.is_active = False
            logger.bind(
                subscription_id=str(subscription.id),
                delivery_count=subscription.delivery_count,
                cap=cap,
            ).info("subscription_exhausted")
        return True
    return False


async def deactivate_exhausted(db: AsyncSession, series_kind: SeriesKind, cap: int) -> int:
    """Deactivate every active subscription of a series at or over its cap.

    Repairs rows left active when the cap is lowered in configuration.

    Returns:
        Number of subscriptions deactivated
    """
    result = await db.execute(
        update(Subscription)
        .where(
            and_(
                Subscription.series_kind == series_kind,
                Subscription.is_active == True,  # noqa: E712
                Subscription.delivery_count >= cap,
            )
        )
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    deactivated = result.rowcount or 0
    if deactivated:
        logger.bind(series_kind=series_kind.value, count=deactivated).info(
            "exhausted_subscriptions_deactivated"
        )
    return deactivated


async def get_active_subscription(
    db: AsyncSession,
    recipient_id: uuid.UUID,
    series_kind: SeriesKind,
) -> Subscription | None:
    """Return the active subscription of a recipient for a series, if any."""
    result = await db.execute(
        select(Subscription)
        .where(
            and_(
                Subscription.recipient_id == recipient_id,
                Subscription.series_kind == series_kind,
                Subscription.is_active == True,  # noqa: E712
            )
        )
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def enroll(
    db: AsyncSession,
    recipient_id: uuid.UUID,
    series_kind: SeriesKind,
    timezone: str | None = None,
    now: datetime | None = None,
) -> Subscription:
    """Create an active subscription for a recipient.

    Returns the existing active subscription for the same recipient and series
    instead of creating a duplicate. The welcome series is eligible immediately;
    the coaching series starts at the next weekly slot.

    Args:
        db: Database session
        recipient_id: Recipient to enroll
        series_kind: Which series
        timezone: IANA timezone, defaults to the recipient's stored timezone
        now: Reference instant (naive UTC), defaults to now

    Returns:
        The active subscription (not committed)

    Raises:
        InvariantViolation: If the recipient is unknown or the timezone invalid
    """
    existing = await get_active_subscription(db, recipient_id, series_kind)
    if existing is not None:
        logger.bind(
            recipient_id=str(recipient_id),
            series_kind=series_kind.value,
            subscription_id=str(existing.id),
        ).debug("subscription_already_active")
        return existing

    recipient = await db.get(Recipient, recipient_id)
    if recipient is None:
        raise InvariantViolation(f"unknown recipient: {recipient_id}")

    timezone = timezone or recipient.timezone or get_config().delivery.default_timezone
    if not is_valid_timezone(timezone):
        raise InvariantViolation(f"invalid timezone: {timezone!r}")

    now = now or utc_now()
    if series_kind == SeriesKind.WELCOME:
        next_eligible_time = now
    else:
        next_eligible_time = compute_next_eligible_time(timezone, now=now)

    subscription = Subscription(
        recipient_id=recipient_id,
        series_kind=series_kind,
        timezone=timezone,
        is_active=True,
        next_eligible_time=next_eligible_time,
        delivery_count=0,
        recent_openers=[],
        recent_collaborators=[],
        recent_subject_patterns=[],
        recent_quote_sources=[],
    )
    db.add(subscription)
    await db.flush()

    logger.bind(
        recipient_id=str(recipient_id),
        series_kind=series_kind.value,
        timezone=timezone,
        next_eligible_time=next_eligible_time.isoformat(),
    ).info("subscription_enrolled")
    return subscription
