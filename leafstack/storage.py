import logging
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from .config import Settings

logger = logging.getLogger(__name__)


class MongoStore:
    """Handle on the library database, passed explicitly to everything that
    reads or writes documents.

    The store does not own a global client: whoever builds it (the app
    lifespan, or a test fixture) is responsible for calling ``close``.
    """

    def __init__(self, client, database_name: str):
        self.client = client
        self.db = client[database_name]

    @property
    def books(self):
        return self.db.books

    @property
    def users(self):
        return self.db.users

    @property
    def borrows(self):
        return self.db.borrows

    @property
    def sessions(self):
        return self.db.sessions

    async def ensure_indexes(self):
        await self.books.create_index([("isbn", ASCENDING)], unique=True)
        await self.books.create_index([("createdAt", DESCENDING)])
        await self.users.create_index([("email", ASCENDING)], unique=True)
        await self.users.create_index([("username", ASCENDING)], unique=True)
        await self.borrows.create_index([("userId", ASCENDING), ("returnedAt", ASCENDING)])
        await self.borrows.create_index([("bookId", ASCENDING), ("returnedAt", ASCENDING)])
        await self.sessions.create_index([("token", ASCENDING)], unique=True)
        await self.sessions.create_index([("userId", ASCENDING)])
        logger.info("Database indexes ensured")

    def close(self):
        self.client.close()


async def init_store(settings: Settings) -> MongoStore:
    logger.info(f"Connecting to MongoDB database '{settings.database_name}'")
    client = AsyncIOMotorClient(settings.mongodb_url, tz_aware=True)
    store = MongoStore(client, settings.database_name)
    await store.ensure_indexes()
    return store


async def close_store(store: MongoStore):
    if store:
        store.close()
        logger.info("MongoDB connection closed")
