from datetime import timedelta
import pytest

from leafstack import crud
from leafstack.auth import AccessGate, Principal, authorize, hash_password, verify_password
from leafstack.exceptions import ConflictError, ForbiddenError, UnauthorizedError, ValidationError
from leafstack.models import Role
from leafstack.schemas import LoginRequest, RegisterRequest
from leafstack.seeder import SAMPLE_BOOKS, seed_admin, seed_sample_books


@pytest.fixture
def gate(store, settings, clock):
    return AccessGate(store, settings, clock)


def registration(username="alice", **overrides):
    data = {
        "username": username,
        "name": username.title(),
        "email": f"{username}@Example.com",
        "password": "s3cret-pass",
    }
    data.update(overrides)
    return RegisterRequest(**data)


def test_password_hash_round_trip():
    hashed = hash_password("hunter2", rounds=4)
    assert hashed != "hunter2"
    assert verify_password("hunter2", hashed)
    assert not verify_password("hunter3", hashed)
    assert not verify_password("hunter2", "plain-text-legacy")


def test_authorize():
    admin = Principal(id="a", email="a@x.io", role=Role.ADMIN)
    member = Principal(id="m", email="m@x.io", role=Role.MEMBER)
    authorize(admin, Role.ADMIN)
    authorize(member, Role.MEMBER)
    with pytest.raises(ForbiddenError):
        authorize(member, Role.ADMIN)


@pytest.mark.asyncio
async def test_register_creates_member_with_lowercase_email(gate):
    token, user = await gate.register(registration())
    assert token
    assert user.role == Role.MEMBER
    assert user.email == "alice@example.com"
    assert user.password != "s3cret-pass"

    principal = await gate.authenticate(token)
    assert principal == Principal(id=user.id, email="alice@example.com", role=Role.MEMBER)


@pytest.mark.asyncio
async def test_register_rejects_duplicate_email_case_insensitively(gate):
    await gate.register(registration())
    with pytest.raises(ConflictError):
        await gate.register(registration(username="alice2", email="ALICE@example.com"))


@pytest.mark.asyncio
async def test_register_rejects_duplicate_username(gate):
    await gate.register(registration())
    with pytest.raises(ConflictError):
        await gate.register(registration(email="other@example.com"))


@pytest.mark.asyncio
async def test_only_admins_register_admins(gate, store, settings):
    with pytest.raises(ForbiddenError):
        await gate.register(registration(role="admin"))

    admin = await seed_admin(store, settings)
    _, user = await gate.register(
        registration(username="deputy", role="admin"), caller=Principal.from_user(admin)
    )
    assert user.role == Role.ADMIN


@pytest.mark.asyncio
async def test_login_by_email_or_username(gate):
    await gate.register(registration())

    token, user = await gate.login(LoginRequest(email="ALICE@example.com", password="s3cret-pass"))
    assert user.username == "alice"
    assert (await gate.authenticate(token)).id == user.id

    token, _ = await gate.login(LoginRequest(username="alice", password="s3cret-pass"))
    assert token


@pytest.mark.asyncio
async def test_login_failures(gate):
    await gate.register(registration())
    with pytest.raises(UnauthorizedError):
        await gate.login(LoginRequest(email="alice@example.com", password="wrong"))
    with pytest.raises(UnauthorizedError):
        await gate.login(LoginRequest(email="nobody@example.com", password="s3cret-pass"))
    with pytest.raises(ValidationError):
        await gate.login(LoginRequest(password="s3cret-pass"))


@pytest.mark.asyncio
async def test_tokens_expire(gate, clock):
    token, _ = await gate.register(registration())
    clock.advance(timedelta(hours=23, minutes=59))
    await gate.authenticate(token)

    clock.advance(timedelta(minutes=1))
    with pytest.raises(UnauthorizedError):
        await gate.authenticate(token)


@pytest.mark.asyncio
async def test_unknown_and_missing_tokens(gate):
    with pytest.raises(UnauthorizedError):
        await gate.authenticate(None)
    with pytest.raises(UnauthorizedError):
        await gate.authenticate("deadbeef")


@pytest.mark.asyncio
async def test_logout_revokes_token(gate):
    token, _ = await gate.register(registration())
    await gate.logout(token)
    with pytest.raises(UnauthorizedError):
        await gate.authenticate(token)
    with pytest.raises(UnauthorizedError):
        await gate.logout(token)


@pytest.mark.asyncio
async def test_seed_admin_runs_once(store, settings):
    admin = await seed_admin(store, settings)
    assert admin.role == Role.ADMIN
    assert admin.email == settings.admin_email
    assert await seed_admin(store, settings) is None


@pytest.mark.asyncio
async def test_seed_admin_disabled(store, settings):
    settings.admin_seed_enabled = False
    assert await seed_admin(store, settings) is None


@pytest.mark.asyncio
async def test_seed_sample_books_disabled(store, settings):
    assert await seed_sample_books(store, settings) == []
    assert await crud.count_books(store) == 0


@pytest.mark.asyncio
async def test_seed_sample_books_fills_empty_catalog_once(store, settings):
    settings.seed_sample_books = True
    seeded = await seed_sample_books(store, settings)
    assert {book.isbn for book in seeded} == {book.isbn for book in SAMPLE_BOOKS}
    assert all(book.available == book.copies for book in seeded)

    assert await seed_sample_books(store, settings) == []
    assert await crud.count_books(store) == len(SAMPLE_BOOKS)
