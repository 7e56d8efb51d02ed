"""Pytest configuration and fixtures."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("RESEND_API_KEY", "")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("VODAPAY_TEST_MODE", "true")

from datetime import datetime, timedelta

import httpx
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.auth.security import create_access_token
from app.models.membership_plan import MembershipPlan
from app.models.product import Product
from app.models.subscription import Subscription
from app.models.user import User
from app.services import ledger
from main import app


@pytest.fixture
async def test_engine():
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def file_sessions(tmp_path):
    """Session factory on a database file, for tests that run sessions side by side.

    Every transaction opens with BEGIN IMMEDIATE, so SQLite queues a second
    writer behind the first the way row locks would on the production database.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'concurrent.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    """Create test database session."""
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(test_db):
    """Async HTTP client bound to the app, sharing the test session."""
    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _make_user(db, name: str, email: str, role: str = "user") -> User:
    user = User(name=name, email=email, user_role=role, status="active")
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest.fixture
async def user(test_db):
    return await _make_user(test_db, "Test Buyer", "buyer@example.com")


@pytest.fixture
async def creator(test_db):
    return await _make_user(test_db, "Test Creator", "creator@example.com", role="creator")


@pytest.fixture
async def admin(test_db):
    return await _make_user(test_db, "Test Admin", "admin@example.com", role="admin")


@pytest.fixture
def auth_headers():
    """Build a Bearer header for a user."""
    def _headers(user: User) -> dict:
        token = create_access_token(data={"sub": user.uuid, "email": user.email, "role": user.user_role})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
async def plans(test_db):
    """Free, creator ($20/mo, $200/yr) and pro ($50/mo, $500/yr) tiers."""
    rows = [
        MembershipPlan(plan_id="free", name="Free", monthly_price_cents=0, yearly_price_cents=0, display_order=0),
        MembershipPlan(plan_id="creator", name="Creator", monthly_price_cents=2000, yearly_price_cents=20000, display_order=1),
        MembershipPlan(plan_id="pro", name="Pro", monthly_price_cents=5000, yearly_price_cents=50000, display_order=2),
    ]
    test_db.add_all(rows)
    await test_db.commit()
    return {p.plan_id: p for p in rows}


@pytest.fixture
async def creator_product(test_db, creator):
    product = Product(name="Trading Course", price_cents=10000, product_type="course", creator_id=creator.uuid)
    test_db.add(product)
    await test_db.commit()
    await test_db.refresh(product)
    return product


@pytest.fixture
def fund_wallet(test_db):
    """Credit a wallet and commit."""
    async def _fund(holder_id: str, amount_cents: int):
        await ledger.credit(test_db, holder_id, amount_cents, "Test top-up")
        await test_db.commit()
    return _fund


@pytest.fixture
def subscribe(test_db):
    """Give a user an active subscription ending ``days_left`` days from now."""
    async def _subscribe(user_id: str, plan_id: str, days_left: int, billing_cycle: str = "monthly", now=None):
        now = now or datetime.utcnow()
        subscription = Subscription(
            user_id=user_id,
            plan_id=plan_id,
            billing_cycle=billing_cycle,
            status="active",
            current_period_start=now - timedelta(days=30 - days_left),
            current_period_end=now + timedelta(days=days_left),
        )
        test_db.add(subscription)
        await test_db.commit()
        return subscription
    return _subscribe
