from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Optional
from pydantic import BaseModel, BeforeValidator, Field


def _as_utc(value):
    # Mongo hands back naive datetimes unless the client is tz aware
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


PyObjectId = Annotated[str, BeforeValidator(str)]
UTCDateTime = Annotated[datetime, BeforeValidator(_as_utc)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class BookModel(BaseModel):
    id: PyObjectId = Field(alias="_id")
    title: str
    author: str
    isbn: str
    category: str
    copies: int
    available: int
    description: Optional[str] = None
    created_at: UTCDateTime = Field(alias="createdAt")

    class Config:
        populate_by_name = True

    @property
    def borrowed(self) -> int:
        return self.copies - self.available


class UserModel(BaseModel):
    id: PyObjectId = Field(alias="_id")
    username: str
    name: str
    email: str
    password: str
    role: Role = Role.MEMBER
    phone: Optional[str] = None
    created_at: UTCDateTime = Field(alias="createdAt")

    class Config:
        populate_by_name = True

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class BorrowModel(BaseModel):
    """A loan of one copy of a book to one user.

    ``returned_at`` is the only field that ever changes after insert, and it
    changes at most once. Whether a loan is overdue is never stored: it is a
    function of the clock, see ``is_overdue``.
    """

    id: PyObjectId = Field(alias="_id")
    book_id: PyObjectId = Field(alias="bookId")
    book_title: str = Field(alias="bookTitle")
    user_id: PyObjectId = Field(alias="userId")
    user_name: str = Field(alias="userName")
    borrowed_at: UTCDateTime = Field(alias="borrowedAt")
    due_date: UTCDateTime = Field(alias="dueDate")
    returned_at: Optional[UTCDateTime] = Field(default=None, alias="returnedAt")

    class Config:
        populate_by_name = True

    @property
    def is_open(self) -> bool:
        return self.returned_at is None

    def is_overdue(self, now: datetime) -> bool:
        if self.returned_at is not None:
            return False
        return now > self.due_date


class SessionModel(BaseModel):
    token: str
    user_id: PyObjectId = Field(alias="userId")
    created_at: UTCDateTime = Field(alias="createdAt")
    expires_at: UTCDateTime = Field(alias="expiresAt")

    class Config:
        populate_by_name = True

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
