"""
Centralized Test Configuration.
"""

import asyncio

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from courier.app.main import app
from courier.app.db.session import get_db, Base
from courier.app.core.jwt import create_access_token
from courier.app.core.redis_client import get_redis
from courier.app.core.reliability import CircuitBreaker
from courier.app.models.driver import Driver
from courier.app.schemas.parcel import ParcelCreate
from courier.app.services.events import EventPublisher
from courier.app.services.geocoding import Geocoder, get_geocoder
from courier.app.services.workflow import ParcelWorkflowEngine
import courier.app.core.redis_client as redis_client_module

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

# Account ids used across the suite
ADMIN_ID = 900
SENDER_ID = 1
RECIPIENT_ID = 2
OTHER_CUSTOMER_ID = 3
DRIVER_ID = 101
SECOND_DRIVER_ID = 102
UNAVAILABLE_DRIVER_ID = 103

# Places the fake provider knows about: name -> (lat, lng)
KNOWN_PLACES = {
    "Kenyatta Avenue, Nairobi": (-1.2864, 36.8172),
    "Westlands, Nairobi": (-1.2676, 36.8108),
    "Moi Avenue, Mombasa": (-4.0435, 39.6682),
    "Nakuru Town": (-0.3031, 36.0800),
}


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self.published = []
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self._closed:
            return False
        self.store[key] = value
        return True

    async def publish(self, channel, message):
        if self._closed:
            return 0
        self.published.append((channel, message))
        return 1

    async def flushdb(self):
        if not self._closed:
            self.store = {}
            self.published = []

    async def aclose(self):
        self._closed = True
        self.store = {}


class FakeGeocodingProvider:
    """
    In-memory stand-in for the Nominatim client.

    Substring match over KNOWN_PLACES; delay and fail_with let tests
    simulate a slow or broken provider.
    """

    def __init__(self, places=None):
        self.places = dict(places or KNOWN_PLACES)
        self.search_calls = []
        self.reverse_calls = []
        self.delay = 0.0
        self.fail_with = None

    async def _misbehave(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

    async def search(self, query, limit, address_details=False):
        self.search_calls.append(query)
        await self._misbehave()
        matches = [
            {
                "name": name.split(",")[0],
                "display_name": f"{name}, Kenya",
                "lat": str(lat),
                "lon": str(lng),
            }
            for name, (lat, lng) in self.places.items()
            if query.lower() in name.lower()
        ]
        return matches[:limit]

    async def reverse(self, lat, lng):
        self.reverse_calls.append((lat, lng))
        await self._misbehave()
        name, _ = min(
            self.places.items(),
            key=lambda item: (item[1][0] - lat) ** 2 + (item[1][1] - lng) ** 2,
        )
        return {"display_name": f"{name}, Kenya"}


@pytest.fixture
def mock_redis():
    return MockRedis()


@pytest.fixture
def fake_provider():
    return FakeGeocodingProvider()


@pytest.fixture
def geocoder(fake_provider):
    return Geocoder(
        provider=fake_provider,
        timeout=0.5,
        breaker=CircuitBreaker(failure_threshold=3, reset_timeout=60),
    )


@pytest.fixture(autouse=True)
def apply_overrides(mock_redis, geocoder):
    """Point the app at the in-memory database, Redis double and fake geocoder."""
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = mock_redis

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    async def override_get_redis():
        return mock_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_geocoder] = lambda: geocoder
    yield

    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def auth_headers():
    def _headers(user_id: int, role: str) -> dict:
        token = create_access_token({"sub": f"user-{user_id}", "user_id": user_id, "role": role})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
async def drivers(db_session):
    """Roster: two available drivers in Nairobi and one off duty."""
    roster = [
        Driver(id=DRIVER_ID, name="Peter Kamau", vehicle_type="motorbike", is_available=True,
               current_lat=-1.2833, current_lng=36.8167, average_rating=4.6, completed_deliveries=120),
        Driver(id=SECOND_DRIVER_ID, name="Grace Achieng", vehicle_type="van", is_available=True,
               current_lat=-1.2921, current_lng=36.8219, average_rating=4.9, completed_deliveries=80),
        Driver(id=UNAVAILABLE_DRIVER_ID, name="Samuel Mutua", vehicle_type="motorbike", is_available=False,
               average_rating=4.2, completed_deliveries=300),
    ]
    db_session.add_all(roster)
    await db_session.commit()
    return roster


@pytest.fixture
def parcel_data():
    def _data(**overrides) -> ParcelCreate:
        data = dict(
            sender_id=SENDER_ID,
            sender_name="Jane Wanjiku",
            sender_email="jane@example.com",
            sender_phone="+254700000001",
            recipient_id=RECIPIENT_ID,
            recipient_name="Otieno Ouma",
            recipient_email="otieno@example.com",
            recipient_phone="+254700000002",
            pickup_address="Kenyatta Avenue, Nairobi",
            delivery_address="Moi Avenue, Mombasa",
            weight_kg=2.5,
        )
        data.update(overrides)
        return ParcelCreate(**data)
    return _data


@pytest.fixture
def workflow(db_session, geocoder, mock_redis):
    return ParcelWorkflowEngine(
        db=db_session,
        geocoder=geocoder,
        publisher=EventPublisher(mock_redis),
    )


@pytest.fixture
def create_parcel(workflow, parcel_data):
    async def _create(**overrides):
        parcel, _ = await workflow.create_parcel(parcel_data(**overrides), actor_id=SENDER_ID)
        return parcel
    return _create
