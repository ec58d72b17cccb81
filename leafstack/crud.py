import logging
import re
from datetime import datetime
from typing import Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .exceptions import ConflictError, DatabaseError, ValidationError
from .models import BookModel, BorrowModel, Role, SessionModel, UserModel
from .schemas import BookCreate, BookUpdate
from .storage import MongoStore

logger = logging.getLogger(__name__)

# Fields a partial update may not clear
REQUIRED_BOOK_FIELDS = ("title", "author", "isbn", "category", "copies")
MAX_UPDATE_ATTEMPTS = 5

OPEN = {"returnedAt": None}


def parse_object_id(value, kind: str) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or len(value) != 24 or not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {kind} ID: {value}")
    return ObjectId(value)


# Catalog

async def create_book(store: MongoStore, book: BookCreate, now: datetime) -> BookModel:
    try:
        if await store.books.find_one({"isbn": book.isbn}):
            raise ConflictError(f"Book with ISBN {book.isbn} already exists")
        document = {
            **book.model_dump(),
            "available": book.copies,
            "createdAt": now,
        }
        result = await store.books.insert_one(document)
        return BookModel(**{**document, "_id": result.inserted_id})
    except DuplicateKeyError:
        raise ConflictError(f"Book with ISBN {book.isbn} already exists")
    except PyMongoError as e:
        raise DatabaseError("create book", str(e))


async def get_book(store: MongoStore, book_id: ObjectId) -> Optional[BookModel]:
    try:
        book = await store.books.find_one({"_id": book_id})
    except PyMongoError as e:
        raise DatabaseError("fetch book", str(e))
    if book:
        return BookModel(**book)
    return None


async def list_books(
    store: MongoStore,
    category: Optional[str] = None,
    search: Optional[str] = None,
) -> list[BookModel]:
    query = {}
    if category:
        query["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"title": pattern}, {"author": pattern}]
    try:
        cursor = store.books.find(query, sort=[("createdAt", DESCENDING)])
        return [BookModel(**book) async for book in cursor]
    except PyMongoError as e:
        raise DatabaseError("list books", str(e))


async def count_books(store: MongoStore) -> int:
    try:
        return await store.books.count_documents({})
    except PyMongoError as e:
        raise DatabaseError("count books", str(e))


async def update_book(
    store: MongoStore, book_id: ObjectId, book_update: BookUpdate
) -> Optional[BookModel]:
    """Apply a partial update, returning None when the book does not exist.

    A change of ``copies`` moves ``available`` by the same delta, floored at
    zero and capped at the new total. The write is conditional on the copy
    counts read beforehand, so a concurrent borrow or return forces a re-read
    instead of being overwritten.
    """
    update_data = {
        key: value
        for key, value in book_update.model_dump(exclude_unset=True).items()
        if value is not None or key not in REQUIRED_BOOK_FIELDS
    }
    new_copies = update_data.pop("copies", None)

    try:
        if "isbn" in update_data:
            clash = await store.books.find_one(
                {"isbn": update_data["isbn"], "_id": {"$ne": book_id}}
            )
            if clash:
                raise ConflictError(f"Book with ISBN {update_data['isbn']} already exists")

        for attempt in range(MAX_UPDATE_ATTEMPTS):
            current = await store.books.find_one({"_id": book_id})
            if current is None:
                return None

            query = {"_id": book_id}
            changes = dict(update_data)
            if new_copies is not None:
                delta = new_copies - current["copies"]
                changes["copies"] = new_copies
                changes["available"] = max(0, min(new_copies, current["available"] + delta))
                query["copies"] = current["copies"]
                query["available"] = current["available"]
            if not changes:
                return BookModel(**current)

            updated = await store.books.find_one_and_update(
                query, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
            if updated:
                return BookModel(**updated)
            logger.info(f"Book {book_id} changed during update (attempt {attempt + 1}), retrying")
    except DuplicateKeyError:
        raise ConflictError(f"Book with ISBN {update_data.get('isbn')} already exists")
    except PyMongoError as e:
        raise DatabaseError("update book", str(e))

    raise DatabaseError("update book", f"book {book_id} kept changing, gave up")


async def retire_book(store: MongoStore, book_id: ObjectId) -> Optional[BookModel]:
    """Flag a book as retired so ``reserve_copy`` no longer hands out copies."""
    try:
        book = await store.books.find_one_and_update(
            {"_id": book_id},
            {"$set": {"retired": True}},
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError as e:
        raise DatabaseError("retire book", str(e))
    if book:
        return BookModel(**book)
    return None


async def restore_book(store: MongoStore, book_id: ObjectId) -> None:
    try:
        await store.books.update_one({"_id": book_id}, {"$unset": {"retired": ""}})
    except PyMongoError as e:
        raise DatabaseError("restore book", str(e))


async def delete_book(store: MongoStore, book_id: ObjectId) -> bool:
    try:
        result = await store.books.delete_one({"_id": book_id})
    except PyMongoError as e:
        raise DatabaseError("delete book", str(e))
    return result.deleted_count > 0


async def reserve_copy(store: MongoStore, book_id: ObjectId) -> Optional[BookModel]:
    """Take one copy off the shelf in a single conditional update.

    Returns the book after the decrement, or None when the book is missing,
    retired or has no copy left.
    """
    try:
        book = await store.books.find_one_and_update(
            {"_id": book_id, "available": {"$gt": 0}, "retired": {"$ne": True}},
            {"$inc": {"available": -1}},
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError as e:
        raise DatabaseError("reserve copy", str(e))
    if book:
        return BookModel(**book)
    return None


async def release_copy(store: MongoStore, book_id: ObjectId) -> Optional[BookModel]:
    """Put one copy back on the shelf without ever exceeding ``copies``."""
    try:
        for _ in range(MAX_UPDATE_ATTEMPTS):
            current = await store.books.find_one({"_id": book_id})
            if current is None:
                logger.warning(f"Returned copy belongs to missing book {book_id}")
                return None
            copies = current["copies"]
            if current["available"] >= copies:
                logger.warning(
                    f"Book {book_id} already has all {copies} copies available, not incrementing"
                )
                return BookModel(**current)
            book = await store.books.find_one_and_update(
                {"_id": book_id, "copies": copies, "available": {"$lt": copies}},
                {"$inc": {"available": 1}},
                return_document=ReturnDocument.AFTER,
            )
            if book:
                return BookModel(**book)
    except PyMongoError as e:
        raise DatabaseError("release copy", str(e))
    raise DatabaseError("release copy", f"book {book_id} kept changing, gave up")


# Borrow ledger

async def insert_borrow(
    store: MongoStore,
    book: BookModel,
    user: UserModel,
    borrowed_at: datetime,
    due_date: datetime,
) -> BorrowModel:
    document = {
        "bookId": ObjectId(book.id),
        "bookTitle": book.title,
        "userId": ObjectId(user.id),
        "userName": user.name,
        "borrowedAt": borrowed_at,
        "dueDate": due_date,
    }
    try:
        result = await store.borrows.insert_one(document)
    except PyMongoError as e:
        raise DatabaseError("create borrow", str(e))
    return BorrowModel(**{**document, "_id": result.inserted_id})


async def get_borrow(store: MongoStore, borrow_id: ObjectId) -> Optional[BorrowModel]:
    try:
        borrow = await store.borrows.find_one({"_id": borrow_id})
    except PyMongoError as e:
        raise DatabaseError("fetch borrow", str(e))
    if borrow:
        return BorrowModel(**borrow)
    return None


async def close_borrow(
    store: MongoStore, borrow_id: ObjectId, returned_at: datetime
) -> Optional[BorrowModel]:
    """Mark an open borrow as returned. None means it was not open."""
    try:
        borrow = await store.borrows.find_one_and_update(
            {"_id": borrow_id, **OPEN},
            {"$set": {"returnedAt": returned_at}},
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError as e:
        raise DatabaseError("close borrow", str(e))
    if borrow:
        return BorrowModel(**borrow)
    return None


async def list_borrows(
    store: MongoStore, user_id: Optional[ObjectId] = None
) -> list[BorrowModel]:
    query = {"userId": user_id} if user_id is not None else {}
    try:
        cursor = store.borrows.find(query, sort=[("borrowedAt", DESCENDING)])
        return [BorrowModel(**borrow) async for borrow in cursor]
    except PyMongoError as e:
        raise DatabaseError("list borrows", str(e))


async def count_open_borrows(
    store: MongoStore,
    book_id: Optional[ObjectId] = None,
    user_id: Optional[ObjectId] = None,
) -> int:
    query = dict(OPEN)
    if book_id is not None:
        query["bookId"] = book_id
    if user_id is not None:
        query["userId"] = user_id
    try:
        return await store.borrows.count_documents(query)
    except PyMongoError as e:
        raise DatabaseError("count borrows", str(e))


# Identity

async def create_user(
    store: MongoStore,
    username: str,
    name: str,
    email: str,
    password_hash: str,
    role: Role,
    phone: Optional[str],
    now: datetime,
) -> UserModel:
    email = email.lower()
    try:
        if await store.users.find_one({"email": email}):
            raise ConflictError(f"User with email {email} already exists")
        if await store.users.find_one({"username": username}):
            raise ConflictError(f"Username {username} is already taken")
        document = {
            "username": username,
            "name": name,
            "email": email,
            "password": password_hash,
            "role": role.value,
            "phone": phone,
            "createdAt": now,
        }
        result = await store.users.insert_one(document)
        return UserModel(**{**document, "_id": result.inserted_id})
    except DuplicateKeyError:
        raise ConflictError(f"User {username} <{email}> already exists")
    except PyMongoError as e:
        raise DatabaseError("create user", str(e))


async def get_user(store: MongoStore, user_id: ObjectId) -> Optional[UserModel]:
    try:
        user = await store.users.find_one({"_id": user_id})
    except PyMongoError as e:
        raise DatabaseError("fetch user", str(e))
    if user:
        return UserModel(**user)
    return None


async def find_user_by_login(store: MongoStore, identifier: str) -> Optional[UserModel]:
    """Look a user up by email (case-insensitive) or, failing that, username."""
    try:
        user = await store.users.find_one({"email": identifier.strip().lower()})
        if user is None:
            user = await store.users.find_one({"username": identifier.strip()})
    except PyMongoError as e:
        raise DatabaseError("fetch user", str(e))
    if user:
        return UserModel(**user)
    return None


async def find_admin(store: MongoStore) -> Optional[UserModel]:
    try:
        user = await store.users.find_one({"role": Role.ADMIN.value})
    except PyMongoError as e:
        raise DatabaseError("fetch user", str(e))
    if user:
        return UserModel(**user)
    return None


async def list_members(store: MongoStore) -> list[UserModel]:
    try:
        cursor = store.users.find(
            {"role": Role.MEMBER.value}, sort=[("createdAt", DESCENDING)]
        )
        return [UserModel(**user) async for user in cursor]
    except PyMongoError as e:
        raise DatabaseError("list members", str(e))


async def delete_user_cascade(store: MongoStore, user_id: ObjectId) -> int:
    """Delete a user with their borrow history and sessions.

    Returns the number of borrow records removed.
    """
    try:
        await store.users.delete_one({"_id": user_id})
        borrows = await store.borrows.delete_many({"userId": user_id})
        await store.sessions.delete_many({"userId": user_id})
    except PyMongoError as e:
        raise DatabaseError("delete user", str(e))
    return borrows.deleted_count


# Sessions

async def create_session(
    store: MongoStore, token: str, user_id: str, now: datetime, expires_at: datetime
) -> SessionModel:
    document = {
        "token": token,
        "userId": ObjectId(user_id),
        "createdAt": now,
        "expiresAt": expires_at,
    }
    try:
        await store.sessions.insert_one(document)
    except PyMongoError as e:
        raise DatabaseError("create session", str(e))
    return SessionModel(**document)


async def get_session(store: MongoStore, token: str) -> Optional[SessionModel]:
    try:
        session = await store.sessions.find_one({"token": token})
    except PyMongoError as e:
        raise DatabaseError("fetch session", str(e))
    if session:
        return SessionModel(**session)
    return None


async def delete_session(store: MongoStore, token: str) -> bool:
    try:
        result = await store.sessions.delete_one({"token": token})
    except PyMongoError as e:
        raise DatabaseError("delete session", str(e))
    return result.deleted_count > 0
