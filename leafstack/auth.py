"""Authentication and authorization helpers.

Passwords are hashed with bcrypt. A successful login or registration opens
a session: an opaque random token stored in the ``sessions`` collection with
an expiry. Clients send it back as ``Authorization: Bearer <token>``.

The rest of the service only ever sees a resolved ``Principal``; token
parsing stays in this module.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

import bcrypt
from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import crud
from .config import Settings
from .exceptions import ForbiddenError, UnauthorizedError, UserNotFoundError, ValidationError
from .models import Role, UserModel, utcnow
from .schemas import LoginRequest, RegisterRequest
from .storage import MongoStore

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    id: str
    email: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @classmethod
    def from_user(cls, user: UserModel):
        return cls(id=user.id, email=user.email, role=user.role)


def hash_password(password: str, rounds: int = 10) -> str:
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Stored value is not a bcrypt hash
        return False


def authorize(principal: Principal, required_role: Role) -> None:
    if required_role == Role.ADMIN and not principal.is_admin:
        raise ForbiddenError("Admin access required")


class AccessGate:
    def __init__(
        self,
        store: MongoStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock

    async def open_session(self, user: UserModel) -> str:
        # Generate a token that isn't already in use
        while True:
            token = secrets.token_hex(32)
            if await crud.get_session(self.store, token) is None:
                break
        now = self.clock()
        expires_at = now + timedelta(hours=self.settings.token_ttl_hours)
        await crud.create_session(self.store, token, user.id, now, expires_at)
        return token

    async def register(
        self, request: RegisterRequest, caller: Optional[Principal] = None
    ) -> Tuple[str, UserModel]:
        if request.role == Role.ADMIN and (caller is None or not caller.is_admin):
            raise ForbiddenError("Only an admin can create admin accounts")
        user = await crud.create_user(
            self.store,
            username=request.username,
            name=request.name,
            email=request.email,
            password_hash=hash_password(request.password, self.settings.bcrypt_rounds),
            role=request.role,
            phone=request.phone,
            now=self.clock(),
        )
        logger.info(f"Registered {user.role.value} {user.username} ({user.id})")
        token = await self.open_session(user)
        return token, user

    async def login(self, request: LoginRequest) -> Tuple[str, UserModel]:
        identifier = request.email or request.username
        if not identifier:
            raise ValidationError("Email (or username) and password are required")
        user = await crud.find_user_by_login(self.store, identifier)
        if user is None or not verify_password(request.password, user.password):
            raise UnauthorizedError("Invalid credentials")
        token = await self.open_session(user)
        logger.info(f"User {user.username} logged in")
        return token, user

    async def logout(self, token: str) -> None:
        if not await crud.delete_session(self.store, token):
            raise UnauthorizedError("Invalid token")

    async def authenticate(self, token: Optional[str]) -> Principal:
        if not token:
            raise UnauthorizedError("Access token required")
        session = await crud.get_session(self.store, token)
        if session is None:
            raise UnauthorizedError("Invalid or expired token")
        if session.is_expired(self.clock()):
            await crud.delete_session(self.store, token)
            raise UnauthorizedError("Invalid or expired token")
        user = await crud.get_user(self.store, crud.parse_object_id(session.user_id, "user"))
        if user is None:
            raise UnauthorizedError("User not found")
        return Principal.from_user(user)

    async def current_user(self, principal: Principal) -> UserModel:
        user = await crud.get_user(self.store, crud.parse_object_id(principal.id, "user"))
        if user is None:
            raise UserNotFoundError(principal.id)
        return user


# FastAPI dependencies

def get_db(request: Request) -> MongoStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_access_gate(
    store: MongoStore = Depends(get_db), settings: Settings = Depends(get_settings)
) -> AccessGate:
    return AccessGate(store, settings)


def bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> Optional[str]:
    if credentials is None:
        return None
    return credentials.credentials


async def get_current_principal(
    token: Optional[str] = Depends(bearer_token),
    gate: AccessGate = Depends(get_access_gate),
) -> Principal:
    return await gate.authenticate(token)


async def get_optional_principal(
    token: Optional[str] = Depends(bearer_token),
    gate: AccessGate = Depends(get_access_gate),
) -> Optional[Principal]:
    if not token:
        return None
    try:
        return await gate.authenticate(token)
    except UnauthorizedError:
        # A stale token on an optional route is treated as anonymous
        return None


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    authorize(principal, Role.ADMIN)
    return principal
