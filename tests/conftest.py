from collections.abc import AsyncGenerator
from dataclasses import dataclass, field

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.core.database.base import Base
from src.core.database import get_db
from src.core.exceptions import PaymentProviderError
from src.integrations.base import PaymentProvider, SessionRef, WebhookParseResult
from src.integrations.registry import get_payment_provider
from src.main import app
from src.modules.families.models import Family, Student

# In-memory SQLite; StaticPool keeps the single connection (and its data) for the test
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def test_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Get test database session."""
    async with session_factory() as session:
        yield session


@dataclass
class FakePaymentProvider(PaymentProvider):
    """Records calls instead of talking to a provider."""

    name: str = "stripe"
    fail_create: bool = False
    hosted: bool = False
    sessions: list[dict] = field(default_factory=list)
    confirmations: list[dict] = field(default_factory=list)

    async def create_session(self, amount, currency, metadata, success_url, cancel_url, description=None):
        if self.fail_create:
            raise PaymentProviderError(self.name, "card_declined")
        session_id = f"sess_test_{len(self.sessions) + 1}"
        self.sessions.append(
            {
                "session_id": session_id,
                "amount": amount,
                "currency": currency,
                "metadata": metadata,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "description": description,
            }
        )
        if self.hosted:
            return SessionRef(session_id=session_id, redirect_url=f"https://pay.example.test/{session_id}")
        return SessionRef(session_id=session_id, client_secret=f"{session_id}_secret")

    async def confirm_session(self, session_id, source_token, amount, currency, metadata):
        self.confirmations.append({"session_id": session_id, "source_token": source_token, "amount": amount})
        return f"pay_{session_id}"

    def parse_webhook(self, raw_payload, headers) -> WebhookParseResult:
        raise NotImplementedError


@pytest.fixture
def fake_provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
async def client(db_session: AsyncSession, fake_provider: FakePaymentProvider) -> AsyncGenerator[AsyncClient, None]:
    """Get test HTTP client with overridden database and provider dependencies."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: fake_provider

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
async def family(db_session: AsyncSession) -> Family:
    """A family with two active students."""
    family = Family(name="Tanaka", email="tanaka@example.com")
    db_session.add(family)
    await db_session.flush()
    db_session.add_all(
        [
            Student(family_id=family.id, first_name="Ken", last_name="Tanaka", is_active=True),
            Student(family_id=family.id, first_name="Yuki", last_name="Tanaka", is_active=True),
        ]
    )
    await db_session.commit()
    return family


@pytest.fixture
async def students(db_session: AsyncSession, family: Family) -> list[Student]:
    result = await db_session.execute(
        select(Student).where(Student.family_id == family.id).order_by(Student.id)
    )
    return list(result.scalars().all())
