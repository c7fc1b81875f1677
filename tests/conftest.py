"""
tests/conftest.py
Shared fixtures: a fresh SQLite database per test, the FastAPI app with its
DB/Redis dependencies overridden, users, and entity/payment factories.
"""

import os
import tempfile

# Settings are read at import time; configure before any app module is imported.
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{tempfile.gettempdir()}/admin_console_health.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("APP_ENV", "test")

import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.database import Base, get_db
from config.redis_client import get_redis
from shared.models.models import (
    ENTITY_MODELS,
    ApprovalStatus,
    EntityKind,
    InstituteDomain,
    PaymentEntityType,
    PaymentRequest,
    PaymentStatus,
    User,
)
from shared.utils.security import create_access_token


# ── Helpers ────────────────────────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.email, is_admin=user.is_admin)
    return {"Authorization": f"Bearer {token}"}


class FakeRedis:
    """In-memory stand-in for the redis.asyncio commands the app uses."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.expiry: dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.store.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.store

    async def ping(self):
        return True

    async def get(self, key):
        return self.store[key] if self._alive(key) else None

    async def setex(self, key, ttl, value):
        self.store[key] = value
        self.expiry[key] = time.monotonic() + ttl

    async def delete(self, key):
        self.store.pop(key, None)
        self.expiry.pop(key, None)

    async def exists(self, key):
        return 1 if self._alive(key) else 0

    async def incr(self, key):
        value = int(self.store[key]) + 1 if self._alive(key) else 1
        self.store[key] = str(value)
        return value

    async def expire(self, key, seconds):
        self.expiry[key] = time.monotonic() + seconds


# ── Database ───────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    import shared.models.models  # noqa: F401  register tables

    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'console.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest_asyncio.fixture
async def client(session_factory, fake_redis):
    from main import app

    async def _get_test_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_test_db
    app.dependency_overrides[get_redis] = lambda: fake_redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ── Users ──────────────────────────────────────────────────────────────────────

async def _make_user(db: AsyncSession, username: str, **kwargs) -> User:
    user = User(
        id=uuid.uuid4(),
        username=username,
        email=f"{username}@example.com",
        full_name=kwargs.pop("full_name", username.title()),
        **kwargs,
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def admin_user(db):
    return await _make_user(db, "reviewer", is_admin=True, is_verified=True)


@pytest_asyncio.fixture
async def second_admin(db):
    return await _make_user(db, "reviewer2", is_admin=True, is_verified=True)


@pytest_asyncio.fixture
async def user(db):
    return await _make_user(db, "owner")


@pytest_asyncio.fixture
async def other_user(db):
    return await _make_user(db, "another")


# ── Factories ──────────────────────────────────────────────────────────────────

@pytest.fixture
def make_entity(db):
    """Create a submission: await make_entity(EntityKind.SHOP, owner, name=...)."""
    counter = {"n": 0}

    async def _make(kind: EntityKind, owner: User, **kwargs):
        counter["n"] += 1
        model = ENTITY_MODELS[kind]
        if kind == EntityKind.INSTITUTE:
            kwargs.setdefault("domain", InstituteDomain.EDUCATION)
        entity = model(
            id=uuid.uuid4(),
            owner_id=owner.id,
            name=kwargs.pop("name", f"{kind.value} #{counter['n']}"),
            status=kwargs.pop("status", ApprovalStatus.PENDING),
            created_at=kwargs.pop(
                "created_at",
                datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=counter["n"]),
            ),
            **kwargs,
        )
        db.add(entity)
        await db.commit()
        return entity

    return _make


@pytest.fixture
def make_payment(db):
    """Create a payment request: await make_payment(owner, PaymentEntityType.SHOP, ...)."""
    counter = {"n": 0}

    async def _make(owner: User, entity_type: PaymentEntityType, **kwargs):
        counter["n"] += 1
        payment = PaymentRequest(
            id=uuid.uuid4(),
            user_id=owner.id,
            entity_type=entity_type,
            amount=kwargs.pop("amount", Decimal("1500.00")),
            transaction_id=kwargs.pop("transaction_id", f"TXN{counter['n']:06d}"),
            bank_name=kwargs.pop("bank_name", "State Bank"),
            account_number=kwargs.pop("account_number", "000111222333"),
            transaction_date=kwargs.pop(
                "transaction_date",
                datetime(2024, 2, 1, tzinfo=timezone.utc) + timedelta(days=counter["n"]),
            ),
            status=kwargs.pop("status", PaymentStatus.PENDING),
            **kwargs,
        )
        db.add(payment)
        await db.commit()
        return payment

    return _make
