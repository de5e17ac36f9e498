"""Database module for the Family Screen Time service."""

import asyncio
import time
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, PyMongoError, ServerSelectionTimeoutError

from family_screen_time.config import settings
from family_screen_time.managers.logging_manager import get_logger

db_logger = get_logger(prefix="[DATABASE]")
perf_logger = get_logger(prefix="[DB_PERFORMANCE]")
health_logger = get_logger(prefix="[DB_HEALTH]")

FAMILIES_COLLECTION = "families"
SESSIONS_COLLECTION = "sessions"
EVENTS_COLLECTION = "family_events"
COUNTERS_COLLECTION = "family_event_counters"


class DatabaseManager:
    """MongoDB database manager using Motor (async MongoDB driver)"""

    def __init__(self):
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self._connection_retries = 3

    async def connect(self):
        """Connect to MongoDB with retry logic"""
        start_time = time.time()
        db_logger.info("Starting MongoDB connection process")

        for attempt in range(self._connection_retries):
            attempt_start = time.time()
            try:
                db_logger.info("Connection attempt %d/%d to MongoDB", attempt + 1, self._connection_retries)

                if settings.MONGODB_USERNAME and settings.MONGODB_PASSWORD:
                    connection_string = (
                        f"mongodb://{settings.MONGODB_USERNAME}:"
                        f"{settings.MONGODB_PASSWORD.get_secret_value()}@"
                        f"{settings.MONGODB_URL.replace('mongodb://', '')}"
                    )
                    db_logger.debug("Using authenticated connection to MongoDB")
                else:
                    connection_string = settings.MONGODB_URL
                    db_logger.debug("Using unauthenticated connection to MongoDB")

                db_logger.info(
                    "MongoDB connection config - URL: %s, Database: %s, ServerTimeout: %dms, ConnTimeout: %dms",
                    settings.MONGODB_URL,
                    settings.MONGODB_DATABASE,
                    settings.MONGODB_SERVER_SELECTION_TIMEOUT,
                    settings.MONGODB_CONNECTION_TIMEOUT,
                )

                self.client = AsyncIOMotorClient(
                    connection_string,
                    serverSelectionTimeoutMS=settings.MONGODB_SERVER_SELECTION_TIMEOUT,
                    connectTimeoutMS=settings.MONGODB_CONNECTION_TIMEOUT,
                    tz_aware=True,
                )
                self.database = self.client[settings.MONGODB_DATABASE]

                ping_start = time.time()
                await self.client.admin.command("ping")
                ping_duration = time.time() - ping_start

                perf_logger.info(
                    "MongoDB connection established in %.3fs (ping: %.3fs)", time.time() - start_time, ping_duration
                )
                db_logger.info("Successfully connected to MongoDB database: %s", settings.MONGODB_DATABASE)
                return

            except (ServerSelectionTimeoutError, ConnectionFailure) as e:
                perf_logger.warning("Connection attempt %d failed after %.3fs", attempt + 1, time.time() - attempt_start)
                db_logger.warning(
                    "Failed to connect to MongoDB (attempt %d/%d): %s", attempt + 1, self._connection_retries, e
                )
                if attempt == self._connection_retries - 1:
                    db_logger.error("All connection attempts failed after %.3fs", time.time() - start_time)
                    raise

                backoff_time = 2**attempt
                db_logger.info("Waiting %.1fs before retry (exponential backoff)", backoff_time)
                await asyncio.sleep(backoff_time)

    async def disconnect(self):
        """Disconnect from MongoDB"""
        if self.client is None:
            db_logger.warning("Disconnect called but no active MongoDB connection found")
            return
        self.client.close()
        self.client = None
        self.database = None
        db_logger.info("Successfully disconnected from MongoDB")

    async def health_check(self) -> bool:
        """Check database connection health"""
        if self.client is None:
            health_logger.warning("Health check failed: No database client available")
            return False
        start_time = time.time()
        try:
            await self.client.admin.command("ping")
        except PyMongoError as e:
            health_logger.error("Database health check failed after %.3fs: %s", time.time() - start_time, e)
            return False
        health_logger.debug("Database health check passed in %.3fs", time.time() - start_time)
        return True

    def get_collection(self, collection_name: str) -> AsyncIOMotorCollection:
        """Get a collection from the database"""
        if self.database is None:
            db_logger.error("Cannot get collection '%s': Database not connected", collection_name)
            raise RuntimeError("Database not connected")
        return self.database[collection_name]

    async def create_indexes(self):
        """Create the indexes the screen-time collections rely on"""
        start_time = time.time()
        db_logger.info("Starting database index creation process")

        families = self.get_collection(FAMILIES_COLLECTION)
        await self._create_index_if_not_exists(families, "family_id", {"unique": True})

        sessions = self.get_collection(SESSIONS_COLLECTION)
        await self._create_index_if_not_exists(
            sessions, [("family_id", 1), ("child_id", 1), ("session_id", 1)], {"unique": True}
        )
        await self._create_index_if_not_exists(sessions, [("family_id", 1), ("child_id", 1), ("date", 1)], {})

        events = self.get_collection(EVENTS_COLLECTION)
        await self._create_index_if_not_exists(events, [("family_id", 1), ("sequence", 1)], {"unique": True})
        await self._create_index_if_not_exists(
            events,
            "recorded_at",
            {"expireAfterSeconds": settings.EVENT_LOG_RETENTION_DAYS * 24 * 3600},
        )

        perf_logger.info("Database index creation completed in %.3fs", time.time() - start_time)

    async def _create_index_if_not_exists(
        self, collection: AsyncIOMotorCollection, field_spec: Any, options: Dict[str, Any]
    ):
        """Create an index if it doesn't already exist"""
        start_time = time.time()
        try:
            await collection.create_index(field_spec, **options)
            perf_logger.debug("Created/ensured index '%s' in %.3fs", field_spec, time.time() - start_time)
        except PyMongoError as e:
            db_logger.warning("Could not create/ensure index '%s': %s", field_spec, e)

    def log_query_start(self, collection_name: str, operation: str, query: Optional[Dict] = None) -> float:
        """Log the start of a database query and return start time for performance tracking"""
        db_logger.debug("Starting %s operation on collection '%s' - Query: %s", operation, collection_name, query or {})
        return time.time()

    def log_query_success(
        self, collection_name: str, operation: str, start_time: float, result_count: Optional[int] = None
    ):
        """Log successful completion of a database query with performance metrics"""
        duration = time.time() - start_time
        if result_count is not None:
            perf_logger.debug(
                "%s on '%s' completed in %.3fs - %d records", operation, collection_name, duration, result_count
            )
        else:
            perf_logger.debug("%s on '%s' completed in %.3fs", operation, collection_name, duration)

    def log_query_error(
        self, collection_name: str, operation: str, start_time: float, error: Exception, query: Optional[Dict] = None
    ):
        """Log database query errors with context and performance metrics"""
        db_logger.error(
            "%s operation failed on collection '%s' after %.3fs - Error: %s, Query: %s",
            operation,
            collection_name,
            time.time() - start_time,
            error,
            query or {},
        )

    async def initialize(self):
        """Connect and make sure indexes exist"""
        await self.connect()
        await self.create_indexes()

    async def close(self):
        """Close database connection (alias for disconnect)"""
        await self.disconnect()


# Global database manager instance
db_manager = DatabaseManager()
