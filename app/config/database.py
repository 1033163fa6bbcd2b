"""
MongoDB database connection using Motor (async driver).

Provides database instance, connection management with lifespan events,
and index creation for the settlement collections.
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from app.config.settings import get_settings

logger = logging.getLogger(__name__)

POSITIONS_COLLECTION = "positions"
PERFORMANCE_METRICS_COLLECTION = "performance_metrics"

_client: AsyncIOMotorClient | None = None
_database: AsyncIOMotorDatabase | None = None


async def connect_to_mongodb() -> None:
    """
    Connect to MongoDB database.

    This function is called during application startup.
    Creates a connection pool, tests the connection and ensures indexes.

    Raises:
        Exception: If connection to MongoDB fails
    """
    global _client, _database

    try:
        current_settings = get_settings()

        logger.info("Connecting to MongoDB at %s", current_settings.MONGODB_URL)

        _client = AsyncIOMotorClient(
            current_settings.MONGODB_URL,
            serverSelectionTimeoutMS=5000,
            maxPoolSize=10,
            minPoolSize=1,
            tz_aware=True,
        )

        _database = _client[current_settings.MONGODB_DB_NAME]

        await _client.admin.command("ping")
        await ensure_indexes(_database)

        logger.info(
            "Successfully connected to MongoDB database: %s",
            current_settings.MONGODB_DB_NAME,
        )

    except Exception as e:
        logger.error(f"Failed to connect to MongoDB: {str(e)}")
        raise


async def close_mongodb_connection() -> None:
    """
    Close MongoDB database connection.

    This function is called during application shutdown.
    """
    global _client, _database

    if _client:
        logger.info("Closing MongoDB connection")
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    """
    Create indexes used by settlement and import.

    The unique (date, symbol) index is what makes concurrent metrics
    upserts converge on a single rollup document.
    """
    try:
        positions = db[POSITIONS_COLLECTION]
        await positions.create_index("status")
        await positions.create_index([("status", ASCENDING), ("closed_at", DESCENDING)])
        await positions.create_index([("symbol", ASCENDING), ("status", ASCENDING)])
        await positions.create_index("metrics_pending", sparse=True)

        await db[PERFORMANCE_METRICS_COLLECTION].create_index(
            [("date", ASCENDING), ("symbol", ASCENDING)],
            unique=True,
            name="date_symbol_unique",
        )
    except PyMongoError as e:
        logger.warning(f"Index creation failed (continuing): {str(e)}")


def get_database() -> AsyncIOMotorDatabase:
    """
    Get MongoDB database instance.

    Returns:
        AsyncIOMotorDatabase: MongoDB database instance

    Raises:
        RuntimeError: If database is not connected
    """
    if _database is None:
        raise RuntimeError(
            "Database is not connected. Call connect_to_mongodb() first."
        )
    return _database
