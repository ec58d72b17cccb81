from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

logger = logging.getLogger(__name__)


class LibraryException(Exception):
    """Base exception for library-related errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ValidationError(LibraryException):
    status_code = 400


class NotFoundError(LibraryException):
    status_code = 404


class BookNotFoundError(NotFoundError):
    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__(f"Book with id {book_id} not found")


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User with id {user_id} not found")


class BorrowNotFoundError(NotFoundError):
    def __init__(self, borrow_id: str):
        self.borrow_id = borrow_id
        super().__init__(f"Borrow record with id {borrow_id} not found")


class ConflictError(LibraryException):
    status_code = 409


class ActiveBorrowsError(ConflictError):
    """Raised when a delete is blocked by borrows that are still open."""

    status_code = 400

    def __init__(self, kind: str, entity_id: str):
        self.entity_id = entity_id
        super().__init__(
            f"Cannot delete {kind} {entity_id} with active borrows. "
            "Please return all books first."
        )


class BookNotAvailableError(LibraryException):
    status_code = 400

    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__(f"Book with id {book_id} is not available for borrowing")


class AlreadyReturnedError(LibraryException):
    status_code = 400

    def __init__(self, borrow_id: str):
        self.borrow_id = borrow_id
        super().__init__(f"Borrow record {borrow_id} has already been returned")


class UnauthorizedError(LibraryException):
    status_code = 401


class ForbiddenError(LibraryException):
    status_code = 403


class DatabaseError(LibraryException):
    status_code = 500

    def __init__(self, operation: str, details: str):
        super().__init__(f"Database error during {operation}: {details}")


# Exception handlers
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Request validation error: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request parameters. Please check your input."},
    )


async def response_validation_exception_handler(
    request: Request, exc: ResponseValidationError
):
    logger.error(f"Response validation error: {exc.errors()}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "The server encountered an unexpected error. Please contact support."
        },
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unexpected error: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Please contact support."},
    )


async def library_exception_handler(request: Request, exc: LibraryException):
    if exc.status_code >= 500:
        logger.error(f"Library error: {exc}")
        content = {"detail": "Internal server error"}
    else:
        logger.warning(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc}")
        content = {"detail": str(exc)}
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(
        ResponseValidationError, response_validation_exception_handler
    )
    app.add_exception_handler(Exception, general_exception_handler)
    app.add_exception_handler(LibraryException, library_exception_handler)
