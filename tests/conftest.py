"""
Shared fixtures for the payment core tests.

Each test gets its own in-memory SQLite database (one shared connection
through StaticPool), the default payment methods, and a recording card
gateway in place of Stripe.
"""

import os
import tempfile

os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "bookrent-test-logs"))
os.environ["TEST_MODE"] = "true"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["GATEWAY_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import bookrent.models  # noqa: F401
from bookrent.core.database import Base, enable_sqlite_foreign_keys, get_db
from bookrent.models.booking import Booking
from bookrent.models.user import User
from bookrent.services import conversion_rates
from bookrent.services.auth_service import create_token, hash_password
from bookrent.services.errors import GatewayError
from bookrent.services.gateway import CardGateway, GatewayLink, GatewayNotification
from bookrent.services.payment_methods import seed_default_methods


class FakeGateway(CardGateway):
    """Records every call; outcomes are scripted per session id."""
    name = "fake"

    def __init__(self):
        self.links: List[Dict] = []
        self.captures: List[Dict] = []
        self.releases: List[str] = []
        self.outcomes: Dict[str, GatewayNotification] = {}
        self.fail_with: Optional[str] = None

    async def create_link(self, payment_id, booking_reference, description, amount, currency,
                          expires_at, authorize_only=False, customer_email=None, metadata=None):
        if self.fail_with:
            raise GatewayError(self.fail_with)
        session_id = f"cs_test_{len(self.links) + 1}"
        self.links.append({
            "payment_id": payment_id,
            "session_id": session_id,
            "amount": amount,
            "currency": currency,
            "authorize_only": authorize_only,
            "expires_at": expires_at,
        })
        return GatewayLink(url=f"https://checkout.test/{session_id}", session_id=session_id, expires_at=expires_at)

    async def fetch_outcome(self, session_id):
        return self.outcomes.get(session_id)

    async def capture(self, transaction_id, amount, currency):
        if self.fail_with:
            raise GatewayError(self.fail_with)
        self.captures.append({"transaction_id": transaction_id, "amount": amount, "currency": currency})

    async def release(self, transaction_id):
        if self.fail_with:
            raise GatewayError(self.fail_with)
        self.releases.append(transaction_id)

    def complete(self, session_id, transaction_id="pi_test", at=None, event_id=None):
        return GatewayNotification(
            reference=session_id,
            final_state="completed",
            occurred_at=at or datetime.utcnow(),
            transaction_id=transaction_id,
            external_event_id=event_id,
        )


@pytest_asyncio.fixture
async def engine():
    engine = enable_sqlite_foreign_keys(
        create_async_engine(
            "sqlite+aiosqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        await seed_default_methods(session)
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def make_booking(db):
    async def _make(**overrides) -> Booking:
        values = {
            "id": str(uuid.uuid4()),
            "reference_code": f"BR-{uuid.uuid4().hex[:6].upper()}",
            "status": "confirmed",
            "client_name": "Jane Client",
            "client_email": "jane@example.com",
            "currency": "EUR",
            "amount_total": Decimal("1000.00"),
            "amount_paid": Decimal("0"),
            "security_deposit_amount": Decimal("1500.00"),
            "access_token": uuid.uuid4().hex,
            "created_at": datetime.utcnow(),
        }
        values.update(overrides)
        booking = Booking(**values)
        db.add(booking)
        await db.commit()
        return booking
    return _make


@pytest_asyncio.fixture
async def booking(make_booking):
    return await make_booking()


@pytest_asyncio.fixture
async def chf_rate(db):
    return await conversion_rates.add_rate(
        db, "EUR", "CHF", Decimal("1.03"), effective_date=datetime.utcnow() - timedelta(days=1)
    )


@pytest_asyncio.fixture
async def staff_user(db):
    user = User(
        id=str(uuid.uuid4()),
        email="staff@bookrent.test",
        password_hash=hash_password("s3cret-pass"),
        name="Front Desk",
        role="staff",
        created_at=datetime.utcnow(),
    )
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
def auth_headers(staff_user):
    return {"Authorization": f"Bearer {create_token(staff_user.id, staff_user.email, staff_user.role)}"}


@pytest_asyncio.fixture
async def client(session_factory, gateway, db):
    from bookrent.api.deps import get_gateway
    from bookrent.server import app

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
