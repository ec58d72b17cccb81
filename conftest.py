from datetime import datetime, timedelta, timezone
import uuid
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from leafstack import crud
from leafstack.auth import Principal
from leafstack.config import Settings
from leafstack.main import app, get_db
from leafstack.models import Role
from leafstack.schemas import BookCreate
from leafstack.seeder import seed_admin
from leafstack.services import BorrowService
from leafstack.storage import MongoStore


def unique_db_name():
    return f"leafstack_test_{uuid.uuid4().hex[:8]}"


class FakeClock:
    """Callable clock the tests can move forward by hand."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta):
        self.now = self.now + delta


@pytest.fixture
def settings():
    return Settings(
        admin_seed_enabled=True,
        admin_username="admin",
        admin_email="admin@leafstack.test",
        admin_password="admin12345",
        bcrypt_rounds=4,
        loan_period_days=14,
        token_ttl_hours=24,
        seed_sample_books=False,
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc))


# Store level fixtures

@pytest_asyncio.fixture
async def store():
    db = MongoStore(AsyncMongoMockClient(), unique_db_name())
    await db.ensure_indexes()
    return db


@pytest.fixture
def service(store, settings, clock):
    return BorrowService(store, settings, clock)


async def make_user(store, username, role=Role.MEMBER, name=None):
    user = await crud.create_user(
        store,
        username=username,
        name=name or username.title(),
        email=f"{username}@example.com",
        password_hash="not-a-real-hash",
        role=role,
        phone=None,
        now=datetime.now(timezone.utc),
    )
    return user, Principal.from_user(user)


async def make_book(service, isbn="9780140449136", copies=1, title="The Odyssey"):
    return await service.add_book(
        BookCreate(
            title=title,
            author="Homer",
            isbn=isbn,
            category="Classics",
            copies=copies,
        )
    )


@pytest_asyncio.fixture
async def member(store):
    return await make_user(store, "alice")


@pytest_asyncio.fixture
async def other_member(store):
    return await make_user(store, "bob")


@pytest_asyncio.fixture
async def admin(store):
    return await make_user(store, "root", role=Role.ADMIN)


# HTTP fixtures

@pytest.fixture
def http_store():
    db = MongoStore(AsyncMongoMockClient(), unique_db_name())
    return db


@pytest.fixture
def client(http_store, settings):
    previous_settings = app.state.settings
    app.state.testing = True
    app.state.settings = settings
    app.dependency_overrides[get_db] = lambda: http_store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.testing = False
    app.state.settings = previous_settings


@pytest.fixture
def admin_headers(client, http_store, settings):
    client.portal.call(seed_admin, http_store, settings)
    response = client.post(
        "/auth/login",
        json={"email": settings.admin_email, "password": settings.admin_password},
    )
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


def register(client, username, password="s3cret-pass"):
    response = client.post(
        "/auth/register",
        json={
            "username": username,
            "name": username.title(),
            "email": f"{username}@example.com",
            "password": password,
        },
    )
    assert response.status_code == 201, response.text
    data = response.json()
    return {"Authorization": f"Bearer {data['token']}"}, data["user"]


def add_book(client, headers, isbn="9780140449136", copies=1, title="The Odyssey"):
    response = client.post(
        "/books",
        headers=headers,
        json={
            "title": title,
            "author": "Homer",
            "isbn": isbn,
            "category": "Classics",
            "copies": copies,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()
