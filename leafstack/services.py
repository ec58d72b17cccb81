import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from . import crud
from .auth import Principal, hash_password
from .config import Settings
from .exceptions import (
    ActiveBorrowsError,
    AlreadyReturnedError,
    BookNotAvailableError,
    BookNotFoundError,
    BorrowNotFoundError,
    ForbiddenError,
    UserNotFoundError,
)
from .models import BookModel, BorrowModel, Role, UserModel, utcnow
from .schemas import BookCreate, BookUpdate, MemberCreate
from .storage import MongoStore

logger = logging.getLogger(__name__)


class BorrowService:
    """Lending rules on top of the catalog, identity and borrow collections.

    Availability is only ever changed through conditional updates in the
    store (see ``crud.reserve_copy`` and ``crud.release_copy``), so two
    callers racing for the last copy cannot both win.
    """

    def __init__(
        self,
        store: MongoStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock

    @property
    def loan_period(self) -> timedelta:
        return timedelta(days=self.settings.loan_period_days)

    # ---- borrow / return

    async def borrow_book(
        self,
        principal: Principal,
        book_id: str,
        requested_member_id: Optional[str] = None,
    ) -> BorrowModel:
        if requested_member_id and requested_member_id != principal.id:
            raise ForbiddenError("Books can only be borrowed for your own account")

        book_oid = crud.parse_object_id(book_id, "book")
        user = await crud.get_user(self.store, crud.parse_object_id(principal.id, "user"))
        if user is None:
            raise UserNotFoundError(principal.id)

        book = await crud.reserve_copy(self.store, book_oid)
        if book is None:
            if await crud.get_book(self.store, book_oid) is None:
                raise BookNotFoundError(book_id)
            raise BookNotAvailableError(book_id)

        # The copy is already taken off the shelf; if the insert below fails,
        # availability stays one lower than it should rather than double-booked.
        now = self.clock()
        borrow = await crud.insert_borrow(self.store, book, user, now, now + self.loan_period)
        logger.info(
            f"User {user.username} borrowed '{book.title}' ({book.id}), "
            f"{book.available}/{book.copies} left, due {borrow.due_date.isoformat()}"
        )
        return borrow

    async def return_book(self, principal: Principal, borrow_id: str) -> BorrowModel:
        borrow_oid = crud.parse_object_id(borrow_id, "borrow")
        borrow = await crud.get_borrow(self.store, borrow_oid)
        if borrow is None:
            raise BorrowNotFoundError(borrow_id)
        if not principal.is_admin and borrow.user_id != principal.id:
            raise ForbiddenError("Only the borrower or an admin can return this book")
        if not borrow.is_open:
            raise AlreadyReturnedError(borrow_id)

        closed = await crud.close_borrow(self.store, borrow_oid, self.clock())
        if closed is None:
            # Lost the race against a concurrent return
            raise AlreadyReturnedError(borrow_id)

        book = await crud.release_copy(self.store, crud.parse_object_id(closed.book_id, "book"))
        if book is not None:
            logger.info(
                f"Borrow {closed.id} of '{closed.book_title}' returned, "
                f"{book.available}/{book.copies} available"
            )
        return closed

    async def list_borrows(
        self, principal: Principal, member_id: Optional[str] = None
    ) -> List[BorrowModel]:
        if principal.is_admin:
            user_oid = crud.parse_object_id(member_id, "user") if member_id else None
        else:
            if member_id and member_id != principal.id:
                raise ForbiddenError("Members can only list their own loans")
            user_oid = crud.parse_object_id(principal.id, "user")
        return await crud.list_borrows(self.store, user_oid)

    # ---- catalog

    async def list_books(
        self, category: Optional[str] = None, search: Optional[str] = None
    ) -> List[BookModel]:
        return await crud.list_books(self.store, category, search)

    async def get_book(self, book_id: str) -> BookModel:
        book = await crud.get_book(self.store, crud.parse_object_id(book_id, "book"))
        if book is None:
            raise BookNotFoundError(book_id)
        return book

    async def add_book(self, book: BookCreate) -> BookModel:
        created = await crud.create_book(self.store, book, self.clock())
        logger.info(f"Book added: '{created.title}' ({created.id}), {created.copies} copies")
        return created

    async def update_book(self, book_id: str, book_update: BookUpdate) -> BookModel:
        updated = await crud.update_book(
            self.store, crud.parse_object_id(book_id, "book"), book_update
        )
        if updated is None:
            raise BookNotFoundError(book_id)
        return updated

    async def delete_book(self, book_id: str) -> None:
        """Delete a book nobody holds.

        The book is retired first so no new copy can be reserved while the
        open borrows are counted. A copy reserved just before that, whose
        borrow record is not written yet, still shows up as a missing copy.
        """
        book_oid = crud.parse_object_id(book_id, "book")
        book = await crud.retire_book(self.store, book_oid)
        if book is None:
            raise BookNotFoundError(book_id)
        if book.available < book.copies or await crud.count_open_borrows(
            self.store, book_id=book_oid
        ):
            await crud.restore_book(self.store, book_oid)
            raise ActiveBorrowsError("book", book_id)
        if not await crud.delete_book(self.store, book_oid):
            raise BookNotFoundError(book_id)
        logger.info(f"Book {book_id} deleted")

    # ---- members

    async def list_members(self) -> List[UserModel]:
        return await crud.list_members(self.store)

    async def add_member(self, member: MemberCreate) -> UserModel:
        # Admin-created members log in by email; the username mirrors it
        username = member.email.lower()
        user = await crud.create_user(
            self.store,
            username=username,
            name=member.name,
            email=member.email,
            password_hash=hash_password(
                self.settings.default_member_password, self.settings.bcrypt_rounds
            ),
            role=Role.MEMBER,
            phone=member.phone,
            now=self.clock(),
        )
        logger.info(f"Member {user.email} ({user.id}) created by admin")
        return user

    async def delete_user(self, principal: Principal, user_id: str) -> Tuple[UserModel, int]:
        user_oid = crud.parse_object_id(user_id, "user")
        if user_id == principal.id:
            raise ForbiddenError("You cannot delete your own account")
        user = await crud.get_user(self.store, user_oid)
        if user is None:
            raise UserNotFoundError(user_id)
        if user.is_admin:
            raise ForbiddenError("Admin accounts cannot be deleted through the members endpoint")
        if await crud.count_open_borrows(self.store, user_id=user_oid):
            raise ActiveBorrowsError("user", user_id)
        removed = await crud.delete_user_cascade(self.store, user_oid)
        logger.info(f"User {user.username} ({user_id}) deleted with {removed} borrow records")
        return user, removed
