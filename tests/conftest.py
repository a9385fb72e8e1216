"""
Pytest configuration and fixtures for Cadence tests.

Provides:
- Async test database with SQLite (a file per test, so concurrent sessions are real)
- Test client for API testing
- Factory fixtures for recipients and subscriptions
- In-memory fakes for the delivery provider and sleep
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cadence.config import Settings, get_settings
from cadence.core.database import get_db
from cadence.main import app
from cadence.models import Base
from cadence.models.recipient import AssociatedPerson, Recipient
from cadence.models.subscription import SeriesKind, Subscription
from cadence.services.delivery import DeliveryServices
from cadence.services.generator import TemplateContentGenerator
from cadence.services.metrics import MetricsAggregator
from cadence.services.profiles import DatabaseProfileStore

# Monday 2026-03-02 14:00 UTC is 09:00 in New York (EST), the weekly slot.
# US daylight saving starts on Sunday 2026-03-08.
SLOT_NOW = datetime(2026, 3, 2, 14, 0)


# Override settings for testing
class TestSettings(Settings):
    database_url: str = "sqlite+aiosqlite:///:memory:"
    debug: bool = True
    openai_api_key: str = ""
    resend_api_key: str = "test-key"
    base_url: str = "http://localhost:8000"
    scheduler_enabled: bool = False


class FakeProvider:
    """Delivery provider that records sends and plays back scripted outcomes.

    Each call consumes the next outcome: an exception instance is raised, any
    other value is returned as the message id. Once the script is used up every
    send succeeds.
    """

    def __init__(self, outcomes: list | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.sent: list[dict] = []
        self.calls = 0

    async def send(self, address: str, subject: str, html: str) -> str:
        self.calls += 1
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            message_id = str(outcome)
        else:
            message_id = f"msg-{self.calls}"
        self.sent.append({"address": address, "subject": subject, "html": html, "id": message_id})
        return message_id


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create async test database engine backed by a temp file."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'cadence.db'}",
        echo=False,
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client with database override."""

    async def override_get_db():
        yield db_session

    def override_get_settings():
        return TestSettings()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = override_get_settings

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============================================================================
# Factory Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def recipient_factory(db_session: AsyncSession):
    """Factory for creating test recipients with their team."""

    async def _create_recipient(
        email: str = None,
        display_name: str = "Jane Doe",
        timezone: str = "America/New_York",
        ranked_attributes: list[str] = None,
        people: list[str] = None,
    ) -> Recipient:
        if email is None:
            email = f"jane-{uuid.uuid4().hex[:8]}@corp.com"
        if ranked_attributes is None:
            ranked_attributes = ["Strategic", "Achiever", "Relator", "Learner", "Focus"]
        if people is None:
            people = ["Alex", "Sam", "Priya"]

        recipient = Recipient(
            email=email,
            display_name=display_name,
            timezone=timezone,
            ranked_attributes=ranked_attributes,
        )
        db_session.add(recipient)
        await db_session.flush()

        for rank, name in enumerate(people):
            db_session.add(
                AssociatedPerson(
                    recipient_id=recipient.id,
                    name=name,
                    attributes=["Developer", "Communication"],
                    rank=rank,
                )
            )
        await db_session.commit()
        return recipient

    return _create_recipient


@pytest_asyncio.fixture
async def subscription_factory(db_session: AsyncSession, recipient_factory):
    """Factory for creating committed test subscriptions."""

    async def _create_subscription(
        recipient: Recipient = None,
        series_kind: SeriesKind = SeriesKind.COACHING,
        delivery_count: int = 0,
        next_eligible_time: datetime = None,
        is_active: bool = True,
        timezone: str = None,
        last_sent_date=None,
    ) -> Subscription:
        if recipient is None:
            recipient = await recipient_factory()
        if next_eligible_time is None:
            next_eligible_time = SLOT_NOW - timedelta(minutes=1)

        subscription = Subscription(
            recipient_id=recipient.id,
            series_kind=series_kind,
            timezone=timezone or recipient.timezone,
            is_active=is_active,
            next_eligible_time=next_eligible_time,
            last_sent_date=last_sent_date,
            delivery_count=delivery_count,
            recent_openers=[],
            recent_collaborators=[],
            recent_subject_patterns=[],
            recent_quote_sources=[],
        )
        db_session.add(subscription)
        await db_session.commit()
        return subscription

    return _create_subscription


# ============================================================================
# Fakes
# ============================================================================


@pytest.fixture
def fake_provider():
    """Factory for scripted delivery providers."""

    def _create(outcomes: list | None = None) -> FakeProvider:
        return FakeProvider(outcomes)

    return _create


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def services_factory(session_maker, recording_sleep):
    """Factory for delivery services wired to the test database and fakes."""

    def _create(provider: FakeProvider = None, generator=None) -> DeliveryServices:
        return DeliveryServices(
            session_factory=session_maker,
            provider=provider or FakeProvider(),
            generator=generator or TemplateContentGenerator(),
            profile_store=DatabaseProfileStore(),
            metrics=MetricsAggregator(),
            sleep=recording_sleep,
        )

    return _create


@pytest.fixture
def reload(session_maker):
    """Fetch a fresh copy of a row in a new session."""

    async def _reload(model, id_):
        async with session_maker() as session:
            return await session.get(model, id_)

    return _reload


@pytest.fixture
def slot_now() -> datetime:
    """A weekly slot instant for New York recipients (naive UTC)."""
    return SLOT_NOW
