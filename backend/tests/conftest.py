"""
Shared fixtures: an in-memory SQLite database behind the real app, and user/product factories.
"""
import os
import sys

# Settings are read at import time, so seed them before importing the app
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-agroconnect-0123456789abcdef")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_agroconnect_webhook_secret")
os.environ.setdefault("ENVIRONMENT", "test")

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from main import app
from config import get_db
from models import Base, User, Profile, Product, Transporter, UserRole, ProductCategory
from realtime_chat.connection_manager import manager, ConnectionInfo
from routers.auth.helpers import auth_helpers

TEST_PASSWORD = "harvest-season-2024"


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_connections():
    manager._connections.clear()
    yield
    manager._connections.clear()


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {auth_helpers.create_access_token(user)}"}


@pytest.fixture
def make_user(session_factory):
    """Create a user with a profile directly in the database"""
    counter = {"n": 0}

    async def _make_user(
        role: UserRole = UserRole.BUYER,
        email: str = None,
        first_name: str = "Ama",
        last_name: str = "Mensah",
        latitude: float = None,
        longitude: float = None,
        **user_fields
    ) -> User:
        counter["n"] += 1
        async with session_factory() as session:
            user = User(
                email=email or f"{role.value.lower()}{counter['n']}@agro.gh",
                password_hash=auth_helpers.hash_password(TEST_PASSWORD),
                role=role.value,
                **user_fields
            )
            user.profile = Profile(
                first_name=first_name,
                last_name=last_name,
                phone_number="+233241234567",
                city="Kumasi",
                region="Ashanti",
                latitude=latitude,
                longitude=longitude
            )
            session.add(user)
            await session.commit()
            return user

    return _make_user


@pytest.fixture
def make_product(session_factory):
    async def _make_product(
        seller: User,
        title: str = "Fresh Tomatoes",
        price: float = 12.5,
        quantity: int = 100,
        is_approved: bool = True,
        is_available: bool = True,
        unit: str = "crate",
        **fields
    ) -> Product:
        async with session_factory() as session:
            product = Product(
                seller_id=seller.id,
                title=title,
                description="Grown in the Ashanti region",
                category=ProductCategory.CROPS.value,
                price=price,
                quantity=quantity,
                unit=unit,
                region="Ashanti",
                is_approved=is_approved,
                is_available=is_available,
                **fields
            )
            session.add(product)
            await session.commit()
            return product

    return _make_product


@pytest.fixture
def make_transporter(session_factory, make_user):
    async def _make_transporter(
        is_verified: bool = True,
        current_lat: float = None,
        current_lng: float = None,
        company_name: str = "Boateng Haulage",
        **fields
    ):
        user = await make_user(role=UserRole.TRANSPORTER, first_name="Kofi", last_name="Boateng")
        async with session_factory() as session:
            transporter = Transporter(
                user_id=user.id,
                company_name=company_name,
                is_verified=is_verified,
                current_lat=current_lat,
                current_lng=current_lng,
                **fields
            )
            session.add(transporter)
            await session.commit()
            return user, transporter

    return _make_transporter


@pytest.fixture
def place_order(client):
    """POST a single-item order as `buyer_user` and return the raw response"""
    async def _place_order(buyer_user: User, product: Product, quantity: int = 1, **extra):
        payload = {
            "items": [{"product_id": str(product.id), "quantity": quantity}],
            "delivery_address": "12 Market Street",
            "delivery_city": "Accra",
            "delivery_region": "Greater Accra",
            **extra
        }
        return await client.post("/api/orders/", json=payload, headers=auth_headers(buyer_user))

    return _place_order


def connect_fake_socket(user: User) -> AsyncMock:
    """Register a mock socket for `user` in the connection manager and return it"""
    websocket = AsyncMock()
    manager._connections[str(user.id)] = ConnectionInfo(websocket=websocket, user_id=str(user.id))
    return websocket
