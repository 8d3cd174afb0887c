"""
Pytest configuration and fixtures for async database testing.

Each test gets its own SQLite database file, created with
Base.metadata.create_all. Requests made through the `client` fixture open a
fresh session per request, the way get_session does in production; tests
use `session_factory` to arrange data and to inspect it afterwards.
"""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["ID_HASH_SECRET"] = "test-id-hash-secret"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin-password"
os.environ["ADMIN_EMAIL"] = "admin@biggbuzz.test"
os.environ["CLICKATELL_API_KEY"] = ""
os.environ["TWILIO_ACCOUNT_SID"] = ""

from datetime import date
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from biggbuzz import otp as otp_module
from biggbuzz import sms as sms_module
from biggbuzz.core.db import Base, get_session
from biggbuzz.main import app
from biggbuzz.models import Product, ProductCategory, StrainType, Subscriber, Vendor
from biggbuzz.rate_limiter import clear_rate_limits
from biggbuzz.security import create_admin_token, create_subscriber_token, hash_sa_id

TEST_OTP = "123456"

# Valid, adult SA ID numbers (born 1990, 1985, 1992)
ADULT_ID = "9001015000085"
SECOND_ADULT_ID = "8505205123086"
THIRD_ADULT_ID = "9202204720083"
# Born 2015
MINOR_ID = "1501010000087"


@pytest.fixture(scope="function")
async def async_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    clear_rate_limits()
    yield
    clear_rate_limits()


@pytest.fixture(autouse=True)
def sent_sms(monkeypatch):
    """Fixed OTPs and a recording SMS sender instead of real providers."""
    outbox: list[tuple[str, str]] = []

    async def fake_send_otp(to_phone: str, code: str) -> bool:
        outbox.append((to_phone, code))
        return True

    monkeypatch.setattr(otp_module, "generate_otp", lambda: TEST_OTP)
    monkeypatch.setattr(sms_module, "send_otp", fake_send_otp)
    return outbox


@pytest.fixture(scope="function")
async def client(session_factory):
    """FastAPI AsyncClient with the database dependency pointed at the test database."""

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def vendor(session_factory) -> Vendor:
    async with session_factory() as session:
        vendor = Vendor(name="Green Valley Farms", email="contact@greenvalley.com")
        session.add(vendor)
        await session.commit()
        return vendor


@pytest.fixture
async def product(session_factory, vendor) -> Product:
    async with session_factory() as session:
        product = Product(
            vendor_id=vendor.id,
            name="Blue Dream",
            description="Balanced hybrid",
            category=ProductCategory.FLOWER,
            strain_type=StrainType.HYBRID,
            price=Decimal("100.00"),
            stock_quantity=10,
            in_stock=True,
            is_active=True,
        )
        session.add(product)
        await session.commit()
        return product


@pytest.fixture
async def second_product(session_factory, vendor) -> Product:
    async with session_factory() as session:
        product = Product(
            vendor_id=vendor.id,
            name="Strawberry Gummies",
            category=ProductCategory.EDIBLES,
            price=Decimal("20.00"),
            stock_quantity=5,
            in_stock=True,
            is_active=True,
        )
        session.add(product)
        await session.commit()
        return product


async def make_subscriber(
    session_factory,
    *,
    sa_id: str = ADULT_ID,
    phone: str = "+27821234567",
    balance: str = "0.00",
    active: bool = True,
    verified: bool = True,
    terms: bool = True,
    first_name: str = "Thandi",
) -> Subscriber:
    async with session_factory() as session:
        subscriber = Subscriber(
            phone_number=phone,
            sa_id_hash=hash_sa_id(sa_id),
            sa_id_last4=sa_id[-4:],
            first_name=first_name,
            last_name="Nkosi",
            date_of_birth=date(1990, 1, 1),
            gender="male",
            is_sa_citizen=True,
            is_active=active,
            phone_verified=verified,
            accepted_terms=terms,
            accepted_privacy=terms,
            token_balance=Decimal(balance),
        )
        session.add(subscriber)
        await session.commit()
        return subscriber


@pytest.fixture
async def subscriber(session_factory) -> Subscriber:
    return await make_subscriber(session_factory, balance="1000.00")


@pytest.fixture
def subscriber_headers(subscriber) -> dict:
    token = create_subscriber_token(subscriber.id, subscriber.phone_number)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers() -> dict:
    token = create_admin_token("admin", "admin@biggbuzz.test")
    return {"Authorization": f"Bearer {token}"}
