"""
tests/conftest.py
Shared fixtures: per-test SQLite database, in-memory Redis,
an ASGI client with dependency overrides, and user factories.
"""

import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test-default.db")

import json
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Optional

import fakeredis
import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import config.database as database
from config.database import Base, get_db
from config.redis_client import get_redis
from main import app
from services.credits.ledger import set_credit_feature_enabled
from services.payment.telr import TelrClient, get_telr_client
from shared.models.models import (
    CreditPackage,
    Listing,
    ListingCategory,
    ListingStatus,
    User,
    utcnow,
)
from shared.utils.security import create_access_token, hash_password

TEST_PASSWORD = "password123"


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.is_admin, user.phone)
    return {"Authorization": f"Bearer {token}"}


# ── Database ───────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 30},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine, monkeypatch):
    factory = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    # Background tasks open their own sessions through get_db_context
    monkeypatch.setattr(database, "AsyncSessionLocal", factory)
    return factory


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


# ── Telr ───────────────────────────────────────────────────────────────────────

class FakeTelr:
    """
    Scripted Telr endpoint for httpx.MockTransport.
    Set `create_response` / `check_code` / `applepay_status` per test,
    or `error` to an httpx exception to simulate a transport failure.
    """

    def __init__(self):
        self.requests: list[dict] = []
        self.create_response: Optional[dict] = None
        self.check_code = 1
        self.check_text = "Pending"
        self.applepay_status = "A"
        self.applepay_message = "Authorised"
        self.error: Optional[Exception] = None
        self.status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        self.requests.append(body)
        if self.error is not None:
            raise self.error
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={})

        if body.get("method") == "create":
            cart_id = body["order"]["cartid"]
            return httpx.Response(200, json=self.create_response or {
                "method": "create",
                "order": {"ref": f"REF-{cart_id}", "url": f"https://secure.telr.com/gateway/process.html?o=REF-{cart_id}"},
            })
        if body.get("method") == "check":
            return httpx.Response(200, json={
                "method": "check",
                "order": {
                    "ref": body["order"]["ref"],
                    "status": {"code": self.check_code, "text": self.check_text},
                    "transaction": {"ref": "TXN-123", "status": "A"},
                },
            })
        # remote.json (Apple Pay)
        return httpx.Response(200, json={
            "transaction": {
                "ref": "APPLE-TXN-1",
                "status": self.applepay_status,
                "message": self.applepay_message,
            },
        })

    def methods(self) -> list[str]:
        return [r.get("method", "applepay") for r in self.requests]


@pytest.fixture
def telr() -> FakeTelr:
    return FakeTelr()


@pytest.fixture
def telr_client(telr: FakeTelr) -> TelrClient:
    return TelrClient(transport=httpx.MockTransport(telr.handler))


# ── App client ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(session_factory, redis, telr_client):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_telr_client] = lambda: telr_client

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def pushed(monkeypatch) -> list[str]:
    """Captures queued push deliveries instead of talking to the broker."""
    from tasks.notification_tasks import deliver_push_notification

    queued: list[str] = []
    monkeypatch.setattr(deliver_push_notification, "delay", lambda nid: queued.append(nid))
    return queued


# ── Factories ──────────────────────────────────────────────────────────────────

async def make_user(
    db,
    phone: Optional[str] = None,
    name: str = "Test User",
    is_admin: bool = False,
    spare_parts_credits: int = 0,
    automotive_credits: int = 0,
    **kwargs,
) -> User:
    user = User(
        phone=phone or f"+9715{uuid.uuid4().int % 10**8:08d}",
        name=name,
        password_hash=hash_password(TEST_PASSWORD),
        is_admin=is_admin,
        spare_parts_credits=spare_parts_credits,
        automotive_credits=automotive_credits,
        **kwargs,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def make_listing(
    db,
    owner: User,
    status: ListingStatus = ListingStatus.PENDING,
    category: ListingCategory = ListingCategory.SPARE_PARTS,
    sub_category: str = "Toyota",
    title: str = "Toyota Camry headlights",
    description: str = "Original part, good condition",
    **kwargs,
) -> Listing:
    now = utcnow()
    if status == ListingStatus.APPROVED:
        kwargs.setdefault("approved_at", now)
        kwargs.setdefault("expires_at", now + timedelta(days=30))
    if status == ListingStatus.REJECTED:
        kwargs.setdefault("rejected_at", now)
        kwargs.setdefault("rejection_reason", "Blurry photos")
    listing = Listing(
        owner_id=owner.id,
        title=title,
        description=description,
        category=category,
        sub_category=sub_category,
        price=Decimal("250.00"),
        images=["https://cdn.example.com/a.jpg"],
        status=status,
        **kwargs,
    )
    db.add(listing)
    await db.commit()
    await db.refresh(listing)
    return listing


def listing_payload(**overrides) -> dict:
    payload = {
        "title": "Nissan Patrol 2018",
        "description": "Single owner, full service history",
        "category": "Automotive",
        "sub_category": "Nissan",
        "price": "95000.00",
        "year": 2018,
        "mileage": 120000,
        "images": ["https://cdn.example.com/patrol.jpg"],
    }
    payload.update(overrides)
    return payload


async def make_package(
    db,
    category: ListingCategory = ListingCategory.SPARE_PARTS,
    credits: int = 5,
    price: str = "45.00",
    **kwargs,
) -> CreditPackage:
    package = CreditPackage(
        name=f"{credits} credits",
        category=category,
        credits=credits,
        price=Decimal(price),
        **kwargs,
    )
    db.add(package)
    await db.commit()
    await db.refresh(package)
    return package


@pytest_asyncio.fixture
async def user(db) -> User:
    return await make_user(db, phone="+971500000001", name="Seller One")


@pytest_asyncio.fixture
async def other_user(db) -> User:
    return await make_user(db, phone="+971500000002", name="Seller Two")


@pytest_asyncio.fixture
async def admin_user(db) -> User:
    return await make_user(db, phone="+971500000099", name="Admin", is_admin=True)


@pytest_asyncio.fixture
async def credits_enabled(db) -> None:
    await set_credit_feature_enabled(db, True)
    await db.commit()
