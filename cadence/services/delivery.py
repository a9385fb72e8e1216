"""Delivery pass: one tick of the weekly coaching cadence.

A tick walks the due-set in id order, one batch at a time. Each batch is
dispatched concurrently (bounded by a semaphore) and every subscription gets its
own session, so one slow or failing recipient never holds up or rolls back the
others. Store connectivity errors are the exception: they abort the tick so the
scheduler records a failed run, and the next tick resumes from the due-set.
"""

import asyncio
import enum
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cadence.config import get_config
from cadence.core.database import AsyncSessionLocal
from cadence.core.datetime_utils import is_valid_timezone, local_date, utc_now
from cadence.core.errors import ContentGenerationError
from cadence.core.logging import get_logger
from cadence.core.retry import Sleep
from cadence.models.subscription import SeriesKind, Subscription
from cadence.services.claims import defer_to_next_slot, try_claim
from cadence.services.content import next_content
from cadence.services.dispatch import record_generation_failure, send_with_retry
from cadence.services.due_set import fetch_due_batch
from cadence.services.email_service import DeliveryProvider, ResendProvider
from cadence.services.generator import ContentGenerator, get_content_generator
from cadence.services.lifecycle import (
    compute_next_eligible_time,
    deactivate_exhausted,
    enforce_cap,
    get_active_subscription,
)
from cadence.services.metrics import MetricsAggregator, get_metrics_aggregator
from cadence.services.profiles import DatabaseProfileStore, ProfileStore
from cadence.services.variety import VarietyWindows

logger = get_logger(__name__)

# Errors that mean the store itself is unreachable
STORE_ERRORS = (OperationalError, InterfaceError)


class DeliveryOutcome(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"
    CLAIM_LOST = "claim_lost"
    ERROR = "error"


@dataclass
class DeliveryServices:
    """External collaborators of a delivery pass."""

    session_factory: async_sessionmaker[AsyncSession]
    provider: DeliveryProvider
    generator: ContentGenerator
    profile_store: ProfileStore
    metrics: MetricsAggregator
    sleep: Sleep = asyncio.sleep

    @classmethod
    def default(cls) -> "DeliveryServices":
        return cls(
            session_factory=AsyncSessionLocal,
            provider=ResendProvider(),
            generator=get_content_generator(),
            profile_store=DatabaseProfileStore(),
            metrics=get_metrics_aggregator(),
        )


@dataclass
class TickResult:
    batches: int = 0
    processed: int = 0
    outcomes: dict[str, int] = field(default_factory=lambda: {o.value: 0 for o in DeliveryOutcome})

    def add(self, outcome: DeliveryOutcome) -> None:
        self.processed += 1
        self.outcomes[outcome.value] += 1

    @property
    def sent(self) -> int:
        return self.outcomes[DeliveryOutcome.SENT.value]

    @property
    def failed(self) -> int:
        return self.outcomes[DeliveryOutcome.FAILED.value]

    def as_dict(self) -> dict:
        return {"batches": self.batches, "processed": self.processed, **self.outcomes}


async def _defer(
    db: AsyncSession, subscription: Subscription, next_eligible_time: datetime | None
) -> None:
    if next_eligible_time is not None:
        await defer_to_next_slot(
            db, subscription.id, subscription.delivery_count, next_eligible_time
        )
    await db.commit()


async def _park(
    db: AsyncSession, subscription: Subscription, now: datetime, reason: str, log
) -> DeliveryOutcome:
    """Log an inconsistent subscription and move it to the next default-timezone slot.

    Keeps one bad row from failing again on every tick until it is repaired.
    """
    next_eligible_time = None
    if subscription.series_kind == SeriesKind.COACHING:
        next_eligible_time = compute_next_eligible_time(
            get_config().delivery.default_timezone, now=now
        )
    log.bind(
        error=reason,
        timezone=subscription.timezone,
        next_eligible_time=next_eligible_time.isoformat() if next_eligible_time else None,
    ).error("delivery_invariant_violation")
    await _defer(db, subscription, next_eligible_time)
    return DeliveryOutcome.ERROR


async def process_subscription(
    services: DeliveryServices,
    subscription_id: uuid.UUID,
    now: datetime | None = None,
) -> DeliveryOutcome:
    """Generate, send and claim one delivery for a subscription.

    The row is re-read in a fresh session so the claim compares against the
    latest committed progress. Failed and skipped coaching deliveries are
    deferred to the next weekly slot; a failed week is picked up by the retry
    sweeper, not by the next tick. A row with an invalid timezone or an unknown
    recipient returns ERROR and is parked at the next default-timezone slot.
    """
    now = now or utc_now()
    delivery = get_config().delivery

    async with services.session_factory() as db:
        subscription = await db.get(Subscription, subscription_id)
        if subscription is None or not subscription.is_active:
            return DeliveryOutcome.SKIPPED

        log = logger.bind(
            subscription_id=str(subscription.id),
            recipient_id=str(subscription.recipient_id),
            series_kind=subscription.series_kind.value,
            delivery_index=subscription.delivery_index,
        )

        cap = delivery.cap_for(subscription.series_kind)
        if enforce_cap(subscription, cap):
            await db.commit()
            return DeliveryOutcome.SKIPPED

        timezone = subscription.timezone
        if not is_valid_timezone(timezone):
            return await _park(
                db, subscription, now, f"subscription has invalid timezone {timezone!r}", log
            )

        is_coaching = subscription.series_kind == SeriesKind.COACHING
        today = local_date(timezone, now)
        next_eligible_time = compute_next_eligible_time(timezone, now=now) if is_coaching else None

        if subscription.last_sent_date is not None and subscription.last_sent_date >= today:
            log.bind(today=str(today)).debug("delivery_skipped_already_sent_today")
            await _defer(db, subscription, next_eligible_time)
            return DeliveryOutcome.SKIPPED

        profile = await services.profile_store.get_profile(db, subscription.recipient_id)
        if profile is None:
            return await _park(db, subscription, now, "recipient not found", log)

        try:
            content = await next_content(subscription, profile, services.generator, sleep=services.sleep)
        except ContentGenerationError as e:
            log.bind(error=str(e)).error("content_generation_failed")
            await record_generation_failure(db, subscription, str(e))
            await _defer(db, subscription, next_eligible_time)
            services.metrics.record_attempt(timezone, success=False)
            return DeliveryOutcome.FAILED

        if content is None:
            await _defer(db, subscription, next_eligible_time)
            return DeliveryOutcome.SKIPPED

        outcome = await send_with_retry(
            db, subscription, profile.email, content, services.provider, sleep=services.sleep
        )
        services.metrics.record_attempt(timezone, success=outcome.success)
        if not outcome.success:
            await _defer(db, subscription, next_eligible_time)
            return DeliveryOutcome.FAILED

        windows = None
        if is_coaching:
            windows = VarietyWindows.from_subscription(
                subscription, size=get_config().variety.window_size
            ).push(content.chosen_patterns)

        claimed = await try_claim(
            db,
            subscription.id,
            expected_delivery_count=subscription.delivery_count,
            today=today,
            cap=cap,
            now=now,
            next_eligible_time=next_eligible_time,
            windows=windows,
        )
        await db.commit()

        if not claimed:
            log.bind(message_id=outcome.provider_message_id).debug("delivery_claim_lost")
            return DeliveryOutcome.CLAIM_LOST

        log.bind(message_id=outcome.provider_message_id, timezone=timezone).info("delivery_completed")
        return DeliveryOutcome.SENT


async def _process_guarded(
    services: DeliveryServices,
    semaphore: asyncio.Semaphore,
    subscription: Subscription,
    now: datetime,
) -> DeliveryOutcome:
    async with semaphore:
        try:
            return await process_subscription(services, subscription.id, now=now)
        except STORE_ERRORS:
            raise
        except Exception as e:
            logger.bind(
                subscription_id=str(subscription.id),
                recipient_id=str(subscription.recipient_id),
                timezone=subscription.timezone,
                error=str(e),
                error_type=type(e).__name__,
            ).error("delivery_failed_unexpectedly")
            return DeliveryOutcome.ERROR


async def run_delivery_tick(
    services: DeliveryServices | None = None,
    now: datetime | None = None,
    batch_size: int | None = None,
    max_concurrency: int | None = None,
    batch_pause_seconds: float | None = None,
) -> TickResult:
    """Serve every coaching subscription that is due.

    Args:
        services: Collaborators, defaults to the production ones
        now: Tick instant (naive UTC), defaults to now
        batch_size: Rows per batch, defaults to config
        max_concurrency: Concurrent deliveries per batch, defaults to config
        batch_pause_seconds: Pause between full batches, defaults to config

    Returns:
        Per-outcome counts for the tick

    Raises:
        OperationalError/InterfaceError: If the store becomes unreachable
    """
    services = services or DeliveryServices.default()
    delivery = get_config().delivery
    now = now or utc_now()
    batch_size = batch_size or delivery.batch_size
    semaphore = asyncio.Semaphore(max_concurrency or delivery.max_concurrency)
    pause = delivery.batch_pause_seconds if batch_pause_seconds is None else batch_pause_seconds

    async with services.session_factory() as db:
        await deactivate_exhausted(db, SeriesKind.COACHING, delivery.coaching_cap)
        await db.commit()

    result = TickResult()
    after_id: uuid.UUID | None = None

    while True:
        async with services.session_factory() as db:
            batch = await fetch_due_batch(db, batch_size, now=now, after_id=after_id)
        if not batch:
            break

        result.batches += 1
        after_id = batch[-1].id
        logger.bind(batch=result.batches, size=len(batch)).debug("delivery_batch_started")

        outcomes = await asyncio.gather(
            *(_process_guarded(services, semaphore, s, now) for s in batch),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                logger.bind(error=str(outcome), processed=result.processed).error("delivery_tick_aborted")
                raise outcome
            result.add(outcome)

        if len(batch) < batch_size:
            break
        await services.sleep(pause)

    if result.processed:
        logger.bind(**result.as_dict()).info("delivery_tick_completed")
    else:
        logger.debug("delivery_tick_nothing_due")
    return result


async def send_immediate(
    recipient_id: uuid.UUID,
    series_kind: SeriesKind,
    services: DeliveryServices | None = None,
    now: datetime | None = None,
) -> bool:
    """Send the next delivery of a recipient's active subscription right away.

    Bypasses the due-set (the weekly slot is not checked) but goes through the
    same generation, dispatch and claim path, so the cap and daily dedup hold.

    Returns:
        True if a delivery was sent and counted
    """
    services = services or DeliveryServices.default()
    async with services.session_factory() as db:
        subscription = await get_active_subscription(db, recipient_id, series_kind)
        if subscription is None:
            logger.bind(recipient_id=str(recipient_id), series_kind=series_kind.value).warning(
                "send_immediate_no_active_subscription"
            )
            return False
        subscription_id = subscription.id

    outcome = await process_subscription(services, subscription_id, now=now)
    logger.bind(
        recipient_id=str(recipient_id),
        series_kind=series_kind.value,
        outcome=outcome.value,
    ).info("send_immediate_finished")
    return outcome == DeliveryOutcome.SENT
