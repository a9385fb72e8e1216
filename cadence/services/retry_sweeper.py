"""Retry sweeper: re-attempts deliveries the dispatch worker gave up on.

Runs on its own trigger, independent of the delivery tick. Each pass retries
every `retry_scheduled` attempt once, with freshly generated content for the
recorded delivery index. There is no in-process loop here; the attempt's
`retry_count` is the backoff, one step per sweep.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.config import get_config
from cadence.core.datetime_utils import is_valid_timezone, local_date, utc_now
from cadence.core.errors import ContentGenerationError, PermanentDeliveryError
from cadence.core.logging import get_logger
from cadence.models.delivery_attempt import AttemptStatus, DeliveryAttempt
from cadence.models.subscription import SeriesKind, Subscription
from cadence.services.claims import try_claim
from cadence.services.content import next_content
from cadence.services.delivery import STORE_ERRORS, DeliveryServices
from cadence.services.email_service import render_body
from cadence.services.lifecycle import compute_next_eligible_time
from cadence.services.variety import VarietyWindows

logger = get_logger(__name__)


@dataclass
class SweepResult:
    examined: int = 0
    sent: int = 0
    rescheduled: int = 0
    permanently_failed: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return {
            "examined": self.examined,
            "sent": self.sent,
            "rescheduled": self.rescheduled,
            "permanently_failed": self.permanently_failed,
            "errors": self.errors,
        }


async def get_pending_retries(db: AsyncSession, max_retries: int, limit: int) -> list[uuid.UUID]:
    """Ids of attempts still waiting for a retry, oldest first."""
    result = await db.execute(
        select(DeliveryAttempt.id)
        .where(
            and_(
                DeliveryAttempt.status == AttemptStatus.RETRY_SCHEDULED,
                DeliveryAttempt.retry_count < max_retries,
            )
        )
        .order_by(DeliveryAttempt.created_at, DeliveryAttempt.id)
        .limit(limit)
    )
    return list(result.scalars().all())


def _fail(attempt: DeliveryAttempt, error: str, max_retries: int, permanent: bool = False) -> AttemptStatus:
    """Count a failed retry on the attempt and return its new status."""
    attempt.last_error = error
    if permanent:
        attempt.retry_count = max_retries
    else:
        attempt.retry_count = min(attempt.retry_count + 1, max_retries)
    attempt.status = (
        AttemptStatus.PERMANENTLY_FAILED
        if attempt.retry_count >= max_retries
        else AttemptStatus.RETRY_SCHEDULED
    )
    return attempt.status


async def retry_attempt(
    services: DeliveryServices,
    attempt_id: uuid.UUID,
    max_retries: int,
    now: datetime | None = None,
    timeout: float | None = None,
) -> AttemptStatus:
    """Re-attempt one tracked delivery once.

    On success the attempt is marked sent and the subscription is claimed at
    `delivery_index - 1`. Losing that claim (another pass already counted the
    week) is logged and otherwise ignored.

    Returns:
        The attempt's new status
    """
    now = now or utc_now()
    delivery = get_config().delivery
    timeout = timeout or delivery.send_timeout_seconds

    async with services.session_factory() as db:
        attempt = await db.get(DeliveryAttempt, attempt_id)
        if attempt is None or attempt.status != AttemptStatus.RETRY_SCHEDULED:
            return attempt.status if attempt else AttemptStatus.PERMANENTLY_FAILED

        log = logger.bind(
            attempt_id=str(attempt.id),
            subscription_id=str(attempt.subscription_id),
            delivery_index=attempt.delivery_index,
            retry_count=attempt.retry_count,
        )

        subscription = await db.get(Subscription, attempt.subscription_id)
        expected = (attempt.delivery_index or 1) - 1

        if subscription is None or not is_valid_timezone(subscription.timezone):
            status = _fail(attempt, "subscription missing or has invalid timezone", max_retries, permanent=True)
            await db.commit()
            log.error("retry_abandoned_invalid_subscription")
            return status

        if subscription.delivery_count > expected:
            status = _fail(attempt, "superseded by a later delivery", max_retries, permanent=True)
            await db.commit()
            log.bind(delivery_count=subscription.delivery_count).info("retry_superseded")
            return status

        profile = await services.profile_store.get_profile(db, subscription.recipient_id)
        if profile is None:
            status = _fail(attempt, "recipient not found", max_retries, permanent=True)
            await db.commit()
            log.error("retry_abandoned_recipient_missing")
            return status

        timezone = subscription.timezone
        is_coaching = subscription.series_kind == SeriesKind.COACHING
        try:
            content = await next_content(
                subscription, profile, services.generator, max_attempts=1, sleep=services.sleep
            )
            if content is None:
                raise ContentGenerationError("recipient has no collaborators to feature")

            html = render_body(content, subscription.delivery_index if is_coaching else None)
            message_id = await asyncio.wait_for(
                services.provider.send(profile.email, content.subject_line, html),
                timeout=timeout,
            )
        except PermanentDeliveryError as e:
            status = _fail(attempt, str(e), max_retries, permanent=True)
            await db.commit()
            services.metrics.record_attempt(timezone, success=False)
            log.bind(error=str(e)).error("retry_permanently_rejected")
            return status
        except Exception as e:
            error = str(e) or type(e).__name__
            status = _fail(attempt, error, max_retries)
            await db.commit()
            services.metrics.record_attempt(timezone, success=False)
            log.bind(error=error, status=status.value).warning("retry_failed")
            return status

        attempt.status = AttemptStatus.SENT
        attempt.provider_message_id = message_id
        attempt.subject_line = content.subject_line[:500]
        attempt.last_error = None

        windows = None
        next_eligible_time = None
        if is_coaching:
            windows = VarietyWindows.from_subscription(
                subscription, size=get_config().variety.window_size
            ).push(content.chosen_patterns)
            next_eligible_time = compute_next_eligible_time(timezone, now=now)

        claimed = await try_claim(
            db,
            subscription.id,
            expected_delivery_count=expected,
            today=local_date(timezone, now),
            cap=delivery.cap_for(subscription.series_kind),
            now=now,
            next_eligible_time=next_eligible_time,
            windows=windows,
        )
        await db.commit()
        services.metrics.record_attempt(timezone, success=True)

        log.bind(message_id=message_id, claimed=claimed).info("retry_sent")
        if not claimed:
            log.debug("retry_claim_lost")
        return AttemptStatus.SENT


async def sweep_failed_deliveries(
    services: DeliveryServices | None = None,
    max_retries: int | None = None,
    batch_size: int | None = None,
    now: datetime | None = None,
) -> SweepResult:
    """Retry every pending attempt once.

    Attempts are processed one at a time, each in its own session. Errors on a
    single attempt are logged and counted; store connectivity errors abort the
    sweep.

    Args:
        services: Collaborators, defaults to the production ones
        max_retries: Retry budget per attempt, defaults to config
        batch_size: Maximum attempts per sweep, defaults to config
        now: Sweep instant (naive UTC), defaults to now

    Returns:
        Counts per resulting status
    """
    services = services or DeliveryServices.default()
    delivery = get_config().delivery
    max_retries = delivery.max_retries if max_retries is None else max_retries
    batch_size = batch_size or delivery.sweep_batch_size
    now = now or utc_now()

    async with services.session_factory() as db:
        attempt_ids = await get_pending_retries(db, max_retries, batch_size)

    result = SweepResult()
    for attempt_id in attempt_ids:
        result.examined += 1
        try:
            status = await retry_attempt(services, attempt_id, max_retries, now=now)
        except STORE_ERRORS:
            raise
        except Exception as e:
            result.errors += 1
            logger.bind(attempt_id=str(attempt_id), error=str(e), error_type=type(e).__name__).error(
                "retry_failed_unexpectedly"
            )
            continue

        if status == AttemptStatus.SENT:
            result.sent += 1
        elif status == AttemptStatus.RETRY_SCHEDULED:
            result.rescheduled += 1
        else:
            result.permanently_failed += 1

    if result.examined:
        logger.bind(**result.as_dict()).info("retry_sweep_completed")
    else:
        logger.debug("retry_sweep_nothing_pending")
    return result
