from contextlib import asynccontextmanager
import logging
from typing import List, Optional
from fastapi import Depends, FastAPI, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware

from .auth import (
    AccessGate,
    Principal,
    bearer_token,
    get_access_gate,
    get_current_principal,
    get_db,
    get_optional_principal,
    get_settings,
    require_admin,
)
from .config import Settings, settings
from .exceptions import add_exception_handlers
from .schemas import (
    AuthResponse,
    BookCreate,
    BookFilterParams,
    BookSchema,
    BookUpdate,
    BorrowRequest,
    BorrowSchema,
    LoginRequest,
    MemberCreate,
    MemberSchema,
    MessageSchema,
    RegisterRequest,
    UserSchema,
    VerifyResponse,
)
from .seeder import seed_admin, seed_sample_books
from .services import BorrowService
from .storage import MongoStore, close_store, init_store

# Set up logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        logger.info("Initializing database connection")
        app.state.store = await init_store(app.state.settings)
        await seed_admin(app.state.store, app.state.settings)
        await seed_sample_books(app.state.store, app.state.settings)
    yield
    if not app.state.testing:
        logger.info("Closing database connection")
        await close_store(app.state.store)


app = FastAPI(
    title="Leafstack Library API",
    lifespan=lifespan,
    description="Catalog, members and borrow/return workflow for the Leafstack library",
    version="1.0.0",
)
app.state.settings = settings

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
add_exception_handlers(app)


def get_borrow_service(
    store: MongoStore = Depends(get_db), settings: Settings = Depends(get_settings)
) -> BorrowService:
    return BorrowService(store, settings)


@app.get("/ping", response_model=MessageSchema)
async def ping(settings: Settings = Depends(get_settings)):
    return MessageSchema(message=settings.ping_message)


# Authentication
@app.post("/auth/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    caller: Optional[Principal] = Depends(get_optional_principal),
    gate: AccessGate = Depends(get_access_gate),
):
    token, user = await gate.register(request, caller)
    return AuthResponse(token=token, user=UserSchema.from_model(user))


@app.post("/auth/login", response_model=AuthResponse)
async def login(request: LoginRequest, gate: AccessGate = Depends(get_access_gate)):
    token, user = await gate.login(request)
    return AuthResponse(token=token, user=UserSchema.from_model(user))


@app.get("/auth/verify", response_model=VerifyResponse)
async def verify(
    principal: Principal = Depends(get_current_principal),
    gate: AccessGate = Depends(get_access_gate),
):
    user = await gate.current_user(principal)
    return VerifyResponse(user=UserSchema.from_model(user))


@app.post("/auth/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    token: Optional[str] = Depends(bearer_token),
    principal: Principal = Depends(get_current_principal),
    gate: AccessGate = Depends(get_access_gate),
):
    await gate.logout(token)
    logger.info(f"User {principal.email} logged out")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Books
@app.get("/books", response_model=List[BookSchema])
async def list_books(
    params: BookFilterParams = Depends(),
    principal: Principal = Depends(get_current_principal),
    service: BorrowService = Depends(get_borrow_service),
):
    books = await service.list_books(params.category, params.search)
    return [BookSchema.from_model(book) for book in books]


@app.post("/books", response_model=BookSchema, status_code=status.HTTP_201_CREATED)
async def add_book(
    book: BookCreate,
    admin: Principal = Depends(require_admin),
    service: BorrowService = Depends(get_borrow_service),
):
    logger.info(f"Received request to add book: {book.title}")
    new_book = await service.add_book(book)
    return BookSchema.from_model(new_book)


@app.get("/books/{book_id}", response_model=BookSchema)
async def get_book(
    book_id: str,
    principal: Principal = Depends(get_current_principal),
    service: BorrowService = Depends(get_borrow_service),
):
    book = await service.get_book(book_id)
    return BookSchema.from_model(book)


@app.put("/books/{book_id}", response_model=BookSchema)
async def modify_book(
    book_id: str,
    book_update: BookUpdate,
    admin: Principal = Depends(require_admin),
    service: BorrowService = Depends(get_borrow_service),
):
    updated_book = await service.update_book(book_id, book_update)
    return BookSchema.from_model(updated_book)


@app.delete("/books/{book_id}", response_model=MessageSchema)
async def remove_book(
    book_id: str,
    admin: Principal = Depends(require_admin),
    service: BorrowService = Depends(get_borrow_service),
):
    await service.delete_book(book_id)
    return MessageSchema(message="Book deleted successfully")


# Members
@app.get("/members", response_model=List[MemberSchema])
async def list_members(
    admin: Principal = Depends(require_admin),
    service: BorrowService = Depends(get_borrow_service),
):
    members = await service.list_members()
    return [MemberSchema.from_model(member) for member in members]


@app.post("/members", response_model=MemberSchema, status_code=status.HTTP_201_CREATED)
async def add_member(
    member: MemberCreate,
    admin: Principal = Depends(require_admin),
    service: BorrowService = Depends(get_borrow_service),
):
    user = await service.add_member(member)
    return MemberSchema.from_model(user)


@app.delete("/members/{member_id}", response_model=MessageSchema)
async def remove_member(
    member_id: str,
    admin: Principal = Depends(require_admin),
    service: BorrowService = Depends(get_borrow_service),
):
    await service.delete_user(admin, member_id)
    return MessageSchema(message="User and associated borrow history deleted successfully")


# Loans
@app.get("/loans", response_model=List[BorrowSchema])
async def list_loans(
    member_id: Optional[str] = Query(None, alias="memberId"),
    principal: Principal = Depends(get_current_principal),
    service: BorrowService = Depends(get_borrow_service),
):
    borrows = await service.list_borrows(principal, member_id)
    now = service.clock()
    return [BorrowSchema.from_model(borrow, now) for borrow in borrows]


@app.post("/loans/borrow", response_model=BorrowSchema, status_code=status.HTTP_201_CREATED)
async def borrow_book(
    borrow_request: BorrowRequest,
    principal: Principal = Depends(get_current_principal),
    service: BorrowService = Depends(get_borrow_service),
):
    borrow = await service.borrow_book(
        principal, borrow_request.book_id, borrow_request.member_id
    )
    return BorrowSchema.from_model(borrow, service.clock())


@app.put("/loans/{borrow_id}/return", response_model=BorrowSchema)
async def return_book(
    borrow_id: str,
    principal: Principal = Depends(get_current_principal),
    service: BorrowService = Depends(get_borrow_service),
):
    borrow = await service.return_book(principal, borrow_id)
    return BorrowSchema.from_model(borrow, service.clock())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
