from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional

from .models import BookModel, BorrowModel, Role, UserModel

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class BookBase(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: str = Field(min_length=1)
    category: str = Field(min_length=1)
    description: Optional[str] = None

    class Config:
        str_strip_whitespace = True


class BookCreate(BookBase):
    copies: int = Field(ge=1)


class BookUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    author: Optional[str] = Field(None, min_length=1)
    isbn: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    copies: Optional[int] = Field(None, ge=1)

    class Config:
        str_strip_whitespace = True


class BookSchema(BaseModel):
    id: str
    title: str
    author: str
    isbn: str
    category: str
    copies: int
    available: int
    description: Optional[str] = None
    added_at: datetime = Field(alias="addedAt")

    class Config:
        populate_by_name = True

    @classmethod
    def from_model(cls, book: BookModel):
        return cls(
            id=book.id,
            title=book.title,
            author=book.author,
            isbn=book.isbn,
            category=book.category,
            copies=book.copies,
            available=book.available,
            description=book.description,
            added_at=book.created_at,
        )


class BookFilterParams(BaseModel):
    category: Optional[str] = Field(None, min_length=1, max_length=50)
    search: Optional[str] = Field(None, min_length=1, max_length=100)


class RegisterRequest(BaseModel):
    username: str = Field(min_length=1)
    name: str = Field(min_length=1)
    email: str = Field(pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1)
    phone: Optional[str] = None
    role: Role = Role.MEMBER

    class Config:
        str_strip_whitespace = True


class LoginRequest(BaseModel):
    email: Optional[str] = None
    username: Optional[str] = None
    password: str = Field(min_length=1)


class UserSchema(BaseModel):
    id: str
    username: str
    name: str
    email: str
    role: Role
    phone: Optional[str] = None

    @classmethod
    def from_model(cls, user: UserModel):
        return cls(
            id=user.id,
            username=user.username,
            name=user.name,
            email=user.email,
            role=user.role,
            phone=user.phone,
        )


class AuthResponse(BaseModel):
    token: str
    user: UserSchema


class VerifyResponse(BaseModel):
    user: UserSchema


class MemberCreate(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(pattern=EMAIL_PATTERN)
    phone: Optional[str] = None

    class Config:
        str_strip_whitespace = True


class MemberSchema(BaseModel):
    id: str
    name: str
    email: str
    phone: str = ""
    joined_at: datetime = Field(alias="joinedAt")

    class Config:
        populate_by_name = True

    @classmethod
    def from_model(cls, user: UserModel):
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            phone=user.phone or "",
            joined_at=user.created_at,
        )


class BorrowRequest(BaseModel):
    book_id: str = Field(alias="bookId", min_length=1)
    # Accepted for compatibility with older clients; the borrower is always
    # the authenticated caller.
    member_id: Optional[str] = Field(None, alias="memberId")
    member_name: Optional[str] = Field(None, alias="memberName")

    class Config:
        populate_by_name = True


class BorrowSchema(BaseModel):
    id: str
    book_id: str = Field(alias="bookId")
    book_title: str = Field(alias="bookTitle")
    user_id: str = Field(alias="userId")
    user_name: str = Field(alias="userName")
    borrowed_at: datetime = Field(alias="borrowedAt")
    due_date: datetime = Field(alias="dueDate")
    returned_at: Optional[datetime] = Field(None, alias="returnedAt")
    is_overdue: bool = Field(alias="isOverdue")

    class Config:
        populate_by_name = True

    @classmethod
    def from_model(cls, borrow: BorrowModel, now: datetime):
        return cls(
            id=borrow.id,
            book_id=borrow.book_id,
            book_title=borrow.book_title,
            user_id=borrow.user_id,
            user_name=borrow.user_name,
            borrowed_at=borrow.borrowed_at,
            due_date=borrow.due_date,
            returned_at=borrow.returned_at,
            is_overdue=borrow.is_overdue(now),
        )


class MessageSchema(BaseModel):
    message: str
