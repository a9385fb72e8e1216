"""Tests for the dispatch worker."""

import asyncio

import pytest
from sqlalchemy import select

from cadence.core.errors import PermanentDeliveryError, TransientDeliveryError
from cadence.models.delivery_attempt import AttemptStatus, DeliveryAttempt
from cadence.models.subscription import SeriesKind
from cadence.schemas.content import GeneratedContent
from cadence.services.dispatch import record_generation_failure, send_with_retry

pytestmark = pytest.mark.asyncio

CONTENT = GeneratedContent(
    subject_line="Put your Strategic to work this week",
    body_sections={"header": "Week 1 of 12", "personal_insight": "Your Strategic shows up in meetings."},
)


async def _attempts(session_maker) -> list[DeliveryAttempt]:
    async with session_maker() as session:
        result = await session.execute(select(DeliveryAttempt))
        return list(result.scalars().all())


class TestSendWithRetry:
    """Tests for send_with_retry."""

    async def test_first_attempt_success(
        self, db_session, session_maker, subscription_factory, fake_provider, recording_sleep
    ):
        subscription = await subscription_factory()
        provider = fake_provider()

        outcome = await send_with_retry(
            db_session, subscription, "jane@corp.com", CONTENT, provider, sleep=recording_sleep
        )

        assert outcome.success is True
        assert outcome.provider_message_id == "msg-1"
        assert outcome.attempts == 1
        assert provider.sent[0]["subject"] == CONTENT.subject_line
        assert "Week 1 of 12" in provider.sent[0]["html"]
        assert await _attempts(session_maker) == []

    async def test_succeeds_on_third_attempt(
        self, db_session, session_maker, subscription_factory, fake_provider, recording_sleep
    ):
        """Fails twice then succeeds: success and no attempt record."""
        subscription = await subscription_factory()
        provider = fake_provider(
            [TransientDeliveryError("503"), TransientDeliveryError("503"), "msg-ok"]
        )

        outcome = await send_with_retry(
            db_session,
            subscription,
            "jane@corp.com",
            CONTENT,
            provider,
            max_attempts=3,
            base_delay=1.0,
            sleep=recording_sleep,
        )

        assert outcome.success is True
        assert outcome.provider_message_id == "msg-ok"
        assert outcome.attempts == 3
        assert recording_sleep.delays == [2.0, 4.0]
        assert await _attempts(session_maker) == []

    async def test_exhaustion_records_one_retry(
        self, db_session, session_maker, subscription_factory, fake_provider, recording_sleep
    ):
        """Always failing: failure outcome and one retry_scheduled record."""
        subscription = await subscription_factory(delivery_count=4)
        provider = fake_provider([TransientDeliveryError("timeout")] * 3)

        outcome = await send_with_retry(
            db_session,
            subscription,
            "jane@corp.com",
            CONTENT,
            provider,
            max_attempts=3,
            sleep=recording_sleep,
        )

        attempts = await _attempts(session_maker)
        assert outcome.success is False
        assert outcome.permanent is False
        assert provider.calls == 3
        assert len(attempts) == 1
        assert attempts[0].status == AttemptStatus.RETRY_SCHEDULED
        assert attempts[0].retry_count == 0
        assert attempts[0].delivery_index == 5
        assert attempts[0].subject_line == CONTENT.subject_line
        assert attempts[0].last_error == "timeout"
        assert outcome.attempt_id == attempts[0].id

    async def test_backoff_strictly_increases(
        self, db_session, subscription_factory, fake_provider, recording_sleep
    ):
        subscription = await subscription_factory()
        provider = fake_provider([TransientDeliveryError("busy")] * 4)

        await send_with_retry(
            db_session,
            subscription,
            "jane@corp.com",
            CONTENT,
            provider,
            max_attempts=4,
            base_delay=0.5,
            sleep=recording_sleep,
        )

        assert recording_sleep.delays == [1.0, 2.0, 4.0]

    async def test_unmapped_provider_error_is_retried_and_recorded(
        self, db_session, session_maker, subscription_factory, fake_provider, recording_sleep
    ):
        subscription = await subscription_factory(delivery_count=2)
        provider = fake_provider([RuntimeError("sdk bug")] * 3)

        outcome = await send_with_retry(
            db_session,
            subscription,
            "jane@corp.com",
            CONTENT,
            provider,
            max_attempts=3,
            base_delay=1.0,
            sleep=recording_sleep,
        )

        attempts = await _attempts(session_maker)
        assert outcome.success is False
        assert outcome.permanent is False
        assert outcome.error == "sdk bug"
        assert provider.calls == 3
        assert recording_sleep.delays == [2.0, 4.0]
        assert len(attempts) == 1
        assert attempts[0].status == AttemptStatus.RETRY_SCHEDULED
        assert attempts[0].retry_count == 0

    async def test_permanent_error_short_circuits(
        self, db_session, session_maker, subscription_factory, fake_provider, recording_sleep
    ):
        subscription = await subscription_factory()
        provider = fake_provider([PermanentDeliveryError("invalid recipient address")])

        outcome = await send_with_retry(
            db_session,
            subscription,
            "not-an-address",
            CONTENT,
            provider,
            max_attempts=3,
            max_retries=3,
            sleep=recording_sleep,
        )

        attempts = await _attempts(session_maker)
        assert outcome.success is False
        assert outcome.permanent is True
        assert provider.calls == 1
        assert recording_sleep.delays == []
        assert attempts[0].status == AttemptStatus.PERMANENTLY_FAILED
        assert attempts[0].retry_count == 3

    async def test_timeout_counts_as_failure(
        self, db_session, subscription_factory, recording_sleep
    ):
        subscription = await subscription_factory()

        class SlowProvider:
            calls = 0

            async def send(self, address, subject, html):
                self.calls += 1
                if self.calls == 1:
                    await asyncio.sleep(1)
                return "msg-late"

        provider = SlowProvider()
        outcome = await send_with_retry(
            db_session,
            subscription,
            "jane@corp.com",
            CONTENT,
            provider,
            timeout=0.01,
            sleep=recording_sleep,
        )

        assert outcome.success is True
        assert outcome.attempts == 2
        assert len(recording_sleep.delays) == 1

    async def test_welcome_attempt_has_no_delivery_index(
        self, db_session, session_maker, subscription_factory, fake_provider, recording_sleep
    ):
        subscription = await subscription_factory(series_kind=SeriesKind.WELCOME)
        provider = fake_provider([TransientDeliveryError("503")] * 2)

        await send_with_retry(
            db_session,
            subscription,
            "jane@corp.com",
            CONTENT,
            provider,
            max_attempts=2,
            sleep=recording_sleep,
        )

        attempts = await _attempts(session_maker)
        assert attempts[0].delivery_index is None
        assert attempts[0].series_kind == SeriesKind.WELCOME


class TestRecordGenerationFailure:
    async def test_records_placeholder_subject(self, db_session, session_maker, subscription_factory):
        subscription = await subscription_factory(delivery_count=6)

        await record_generation_failure(db_session, subscription, "model down")

        attempts = await _attempts(session_maker)
        assert attempts[0].subject_line == "Week 7 coaching email"
        assert attempts[0].status == AttemptStatus.RETRY_SCHEDULED
        assert attempts[0].retry_count == 0
        assert "model down" in attempts[0].last_error
