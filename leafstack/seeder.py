import logging
from typing import List

from . import crud
from .auth import hash_password
from .config import Settings
from .exceptions import ConflictError
from .models import BookModel, Role, utcnow
from .schemas import BookCreate
from .storage import MongoStore

logger = logging.getLogger(__name__)


async def seed_admin(store: MongoStore, settings: Settings):
    """Create the default admin account unless an admin already exists."""
    if not settings.admin_seed_enabled:
        return None

    if await crud.find_admin(store):
        logger.info("Admin user already exists - skipping seeding")
        return None

    try:
        admin = await crud.create_user(
            store,
            username=settings.admin_username,
            name=settings.admin_name,
            email=settings.admin_email,
            password_hash=hash_password(settings.admin_password, settings.bcrypt_rounds),
            role=Role.ADMIN,
            phone=None,
            now=utcnow(),
        )
    except ConflictError:
        # Another instance may have seeded already
        logger.info("Admin account taken (race or name clash) - skipping seeding")
        return None

    logger.info(f"Seeded default admin: {admin.email} (username: {admin.username})")
    return admin


SAMPLE_BOOKS = [
    BookCreate(
        title="Clean Code",
        author="Robert C. Martin",
        isbn="9780132350884",
        category="Programming",
        copies=5,
        description="A Handbook of Agile Software Craftsmanship",
    ),
    BookCreate(
        title="Effective Java",
        author="Joshua Bloch",
        isbn="9780134685991",
        category="Programming",
        copies=4,
        description="Best practices for the Java platform",
    ),
    BookCreate(
        title="Design Patterns",
        author="Erich Gamma",
        isbn="9780201633610",
        category="Software Engineering",
        copies=3,
        description="Elements of Reusable Object-Oriented Software",
    ),
]


async def seed_sample_books(store: MongoStore, settings: Settings) -> List[BookModel]:
    """Fill an empty catalog with a few demo books."""
    if not settings.seed_sample_books:
        return []

    if await crud.count_books(store):
        logger.info("Catalog is not empty - skipping sample books")
        return []

    seeded = []
    for book in SAMPLE_BOOKS:
        try:
            seeded.append(await crud.create_book(store, book, utcnow()))
        except ConflictError:
            logger.info(f"Sample book {book.isbn} already exists - skipping")
    logger.info(f"Seeded {len(seeded)} sample books")
    return seeded
