import json
import os
import sys
from collections.abc import AsyncGenerator
from datetime import timedelta

# Settings are read at import time; give the test run safe defaults
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./app_test.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")

import httpx
import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Load environment variables from .env file
load_dotenv()

from app.config import settings
from app.core.calendar import GoogleCalendarClient
from app.core.email import SmtpEmailClient
from app.core.exceptions import EmailDeliveryError
from app.core.integrations import Integrations
from app.core.payments import CheckoutSession, Product, StripeGateway
from app.core.security import create_access_token
from app.core.video import DailyVideoClient
from app.database import get_db
from app.dependencies import get_cache_manager, get_integrations
from app.main import app
from app.models import metadata, users

WEBHOOK_SECRET = "whsec_test_secret"

# Test database URL - MUST be different from production
# Without TEST_DATABASE_URL the suite runs on a local SQLite file
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///./test_clinic.db")

# Additional safety: ensure we're not using production database
if settings.database_url == TEST_DATABASE_URL:
    print("\n❌ CRITICAL ERROR: Test database URL is same as production database!")
    print("This would DROP all production data during tests.")
    print("Please set TEST_DATABASE_URL to a separate test database in .env")
    sys.exit(1)

# Ensure we're using asyncpg driver for async operations
if TEST_DATABASE_URL.startswith("postgresql://"):
    TEST_DATABASE_URL = TEST_DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")

# Use NullPool to avoid event loop issues between tests
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,  # Set to True for SQL debugging
    poolclass=NullPool,
)

# Create test session factory
TestSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class FakeProviders:
    """In-process stand-in for the Daily and Google HTTP APIs."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.fail_video = False
        self.fail_calendar = False
        self._event_counter = 0

    def calls(self, method: str, fragment: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and fragment in r.url.path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host, path = request.url.host, request.url.path

        if host == "api.daily.co":
            if self.fail_video:
                return httpx.Response(500, json={"error": "unavailable"})
            if request.method == "POST" and path.endswith("/rooms"):
                name = json.loads(request.content)["name"]
                return httpx.Response(
                    200, json={"name": name, "url": f"https://clinic.daily.co/{name}"}
                )
            return httpx.Response(200, json={"deleted": True})

        if host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": "token", "expires_in": 3600})

        if host == "www.googleapis.com":
            if self.fail_calendar:
                return httpx.Response(503, json={"error": "backend error"})
            if request.method == "POST":
                self._event_counter += 1
                return httpx.Response(200, json={"id": f"gcal-{self._event_counter}"})
            if request.method == "DELETE":
                return httpx.Response(204)
            return httpx.Response(200, json={})

        return httpx.Response(404)


class RecordingEmailClient(SmtpEmailClient):
    """SMTP client that keeps messages instead of sending them."""

    def __init__(self) -> None:
        super().__init__(host="smtp.test", port=587, from_email="noreply@clinic.test")
        self.sent: list = []
        self.fail = False

    def send_email_sync(self, msg) -> None:
        if self.fail:
            raise EmailDeliveryError("SMTP server unavailable")
        self.sent.append(msg)


class FakeStripeGateway(StripeGateway):
    """Real webhook verification, canned checkout sessions."""

    def __init__(self) -> None:
        super().__init__(secret_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET)
        self.checkouts: list[dict] = []

    async def create_checkout_session(
        self,
        product: Product,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        customer_email: str | None = None,
        client_reference_id: str | None = None,
    ) -> CheckoutSession:
        self.checkouts.append(
            {
                "product": product,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata,
                "customer_email": customer_email,
            }
        )
        session_id = f"cs_test_{len(self.checkouts)}"
        return CheckoutSession(id=session_id, url=f"https://checkout.stripe.test/{session_id}")


@pytest.fixture
def providers() -> FakeProviders:
    """Recorded Daily and Google traffic."""
    return FakeProviders()


@pytest_asyncio.fixture
async def integrations(providers: FakeProviders) -> AsyncGenerator[Integrations, None]:
    """Real clients wired to in-process fakes."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(providers.handler))
    bundle = Integrations(
        video=DailyVideoClient(api_key="daily-test-key", http_client=http_client),
        calendar=GoogleCalendarClient(
            client_id="client-id",
            client_secret="client-secret",
            refresh_token="refresh-token",
            http_client=http_client,
        ),
        email=RecordingEmailClient(),
        payments=FakeStripeGateway(),
    )
    yield bundle
    await http_client.aclose()


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    # Create tables
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)

    # Create session
    async with TestSessionLocal() as session:
        yield session

    # Drop tables after test
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    integrations: Integrations,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache_manager] = lambda: None
    app.dependency_overrides[get_integrations] = lambda: integrations

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def _create_user(db_session: AsyncSession, **values) -> dict:
    result = await db_session.execute(insert(users).values(**values).returning(users.c.id))
    user_id = result.scalar_one()
    await db_session.commit()
    return {"id": user_id, **values}


@pytest_asyncio.fixture
async def patient(db_session: AsyncSession) -> dict:
    """A patient with an email address."""
    return await _create_user(
        db_session,
        open_id="patient-1",
        email="patient@example.com",
        full_name="Pat Patient",
        role="patient",
    )


@pytest_asyncio.fixture
async def other_patient(db_session: AsyncSession) -> dict:
    """A second, unrelated patient."""
    return await _create_user(
        db_session,
        open_id="patient-2",
        email="other@example.com",
        full_name="Olive Other",
        role="patient",
    )


@pytest_asyncio.fixture
async def clinician(db_session: AsyncSession) -> dict:
    """A bookable clinician."""
    return await _create_user(
        db_session,
        open_id="clinician-1",
        email="dr.smith@example.com",
        full_name="Dr Sam Smith",
        role="clinician",
        specialization="General Practice",
        ahpra_number="MED0001234567",
    )


@pytest_asyncio.fixture
async def other_clinician(db_session: AsyncSession) -> dict:
    """A clinician not assigned to the test appointments."""
    return await _create_user(
        db_session,
        open_id="clinician-2",
        email="dr.jones@example.com",
        full_name="Dr Jo Jones",
        role="clinician",
    )


@pytest_asyncio.fixture
async def admin(db_session: AsyncSession) -> dict:
    """An administrator."""
    return await _create_user(
        db_session,
        open_id="admin-1",
        email="admin@example.com",
        full_name="Ada Admin",
        role="admin",
    )


def make_auth_headers(user: dict) -> dict:
    """Bearer headers for a user fixture."""
    token = create_access_token(data={"sub": str(user["id"])}, expires_delta=timedelta(minutes=30))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def patient_headers(patient: dict) -> dict:
    return make_auth_headers(patient)


@pytest.fixture
def clinician_headers(clinician: dict) -> dict:
    return make_auth_headers(clinician)


@pytest.fixture
def auth_headers_for():
    """Build bearer headers for any user fixture."""
    return make_auth_headers
