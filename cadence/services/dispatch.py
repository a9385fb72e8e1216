"""Dispatch worker: sends one delivery with bounded in-process retries.

Only deliveries that fail here get a durable `DeliveryAttempt` record; those are
picked up later by the retry sweeper. A successful send is reported back to the
caller, which claims the delivery through the concurrency gate.
"""

import asyncio
import uuid
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from cadence.config import get_config
from cadence.core.errors import PermanentDeliveryError
from cadence.core.logging import get_logger
from cadence.core.retry import Sleep, backoff_delay
from cadence.models.delivery_attempt import AttemptStatus, DeliveryAttempt
from cadence.models.subscription import SeriesKind, Subscription
from cadence.schemas.content import GeneratedContent
from cadence.services.email_service import DeliveryProvider, render_body

logger = get_logger(__name__)


@dataclass
class DispatchOutcome:
    """Result of one dispatch."""

    success: bool
    provider_message_id: str | None = None
    attempts: int = 0
    error: str | None = None
    permanent: bool = False
    attempt_id: uuid.UUID | None = None


def placeholder_subject(subscription: Subscription) -> str:
    """Subject recorded when content could not be generated at all."""
    if subscription.series_kind == SeriesKind.WELCOME:
        return "Welcome email"
    return f"Week {subscription.delivery_index} coaching email"


async def record_attempt(
    db: AsyncSession,
    subscription: Subscription,
    subject_line: str,
    status: AttemptStatus,
    error: str,
    retry_count: int = 0,
) -> DeliveryAttempt:
    """Persist a delivery that needs durable tracking, and commit it."""
    attempt = DeliveryAttempt(
        subscription_id=subscription.id,
        recipient_id=subscription.recipient_id,
        series_kind=subscription.series_kind,
        subject_line=subject_line[:500],
        delivery_index=(
            subscription.delivery_index if subscription.series_kind == SeriesKind.COACHING else None
        ),
        status=status,
        retry_count=retry_count,
        last_error=error,
    )
    db.add(attempt)
    await db.commit()

    logger.bind(
        subscription_id=str(subscription.id),
        attempt_id=str(attempt.id),
        status=status.value,
        retry_count=retry_count,
        error=error,
    ).warning("delivery_attempt_recorded")
    return attempt


async def record_generation_failure(
    db: AsyncSession,
    subscription: Subscription,
    error: str,
) -> DeliveryAttempt:
    """Track a delivery whose content could not be generated, for the sweeper."""
    return await record_attempt(
        db,
        subscription,
        subject_line=placeholder_subject(subscription),
        status=AttemptStatus.RETRY_SCHEDULED,
        error=f"content generation failed: {error}",
    )


async def send_with_retry(
    db: AsyncSession,
    subscription: Subscription,
    recipient_address: str,
    content: GeneratedContent,
    provider: DeliveryProvider,
    max_attempts: int | None = None,
    base_delay: float | None = None,
    timeout: float | None = None,
    sleep: Sleep = asyncio.sleep,
    max_retries: int | None = None,
) -> DispatchOutcome:
    """Send a delivery, retrying transient failures with exponential backoff.

    After failed attempt n (1-based) and before attempt n + 1 the worker waits
    2**n * base_delay. Timeouts count as failures. A permanent error stops the
    loop at once.

    Never raises for provider failures:
    - permanent error: records a permanently_failed attempt (retry_count = max_retries)
    - attempts exhausted: records one retry_scheduled attempt (retry_count = 0)

    Args:
        db: Database session, committed when an attempt record is written
        subscription: Subscription being served
        recipient_address: Where to send
        content: Sanitized content
        provider: Delivery provider
        max_attempts: In-process attempts, defaults to config
        base_delay: Backoff base in seconds, defaults to config
        timeout: Per-send timeout in seconds, defaults to config
        sleep: Delay primitive, replaceable in tests
        max_retries: Sweeper retry budget, defaults to config

    Returns:
        DispatchOutcome with the provider message id on success
    """
    delivery = get_config().delivery
    max_attempts = max_attempts or delivery.max_attempts
    base_delay = delivery.backoff_base_seconds if base_delay is None else base_delay
    timeout = timeout or delivery.send_timeout_seconds
    max_retries = delivery.max_retries if max_retries is None else max_retries

    is_coaching = subscription.series_kind == SeriesKind.COACHING
    html = render_body(content, subscription.delivery_index if is_coaching else None)
    log = logger.bind(
        subscription_id=str(subscription.id),
        series_kind=subscription.series_kind.value,
        delivery_index=subscription.delivery_index,
    )

    last_error = ""
    for attempt in range(1, max_attempts + 1):
        try:
            message_id = await asyncio.wait_for(
                provider.send(recipient_address, content.subject_line, html),
                timeout=timeout,
            )
            log.bind(attempt=attempt, message_id=message_id).info("delivery_sent")
            return DispatchOutcome(success=True, provider_message_id=message_id, attempts=attempt)
        except PermanentDeliveryError as e:
            log.bind(attempt=attempt, error=str(e)).error("delivery_permanently_rejected")
            record = await record_attempt(
                db,
                subscription,
                content.subject_line,
                AttemptStatus.PERMANENTLY_FAILED,
                error=str(e),
                retry_count=max_retries,
            )
            return DispatchOutcome(
                success=False,
                attempts=attempt,
                error=str(e),
                permanent=True,
                attempt_id=record.id,
            )
        except Exception as e:
            # Transient or unmapped provider failure
            last_error = str(e) or type(e).__name__
            if attempt < max_attempts:
                delay = backoff_delay(attempt, base_delay)
                log.bind(
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay_seconds=delay,
                    error=last_error,
                ).warning("delivery_retry")
                await sleep(delay)

    log.bind(attempts=max_attempts, error=last_error).error("delivery_attempts_exhausted")
    record = await record_attempt(
        db,
        subscription,
        content.subject_line,
        AttemptStatus.RETRY_SCHEDULED,
        error=last_error,
    )
    return DispatchOutcome(
        success=False,
        attempts=max_attempts,
        error=last_error,
        attempt_id=record.id,
    )
