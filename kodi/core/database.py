# Async MongoDB connection manager (Motor)

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase, AsyncIOMotorClientSession
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError, PyMongoError
from typing import Optional, AsyncGenerator, Dict, Any
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import asyncio
import os

import structlog
from dotenv import load_dotenv

logger = structlog.get_logger(__name__)
load_dotenv()

# =====================================
# CONFIGURATION
# =====================================

@dataclass
class AsyncDatabaseConfig:
    """Async MongoDB configuration"""
    mongo_uri: str
    database_name: str
    max_pool_size: int = 100
    min_pool_size: int = 10
    server_selection_timeout_ms: int = 5000
    connect_timeout_ms: int = 5000
    socket_timeout_ms: int = 20000
    retry_writes: bool = True
    retry_reads: bool = True
    uuid_representation: str = "standard"

    @classmethod
    def from_env(cls) -> "AsyncDatabaseConfig":
        """Create configuration from environment variables"""
        return cls(
            mongo_uri=os.getenv("MONGO_URI", "mongodb://localhost:27017"),
            database_name=os.getenv("MONGO_DATABASE", "kodi"),
            max_pool_size=int(os.getenv("MONGO_MAX_POOL_SIZE", "100")),
            min_pool_size=int(os.getenv("MONGO_MIN_POOL_SIZE", "10")),
            server_selection_timeout_ms=int(os.getenv("MONGO_SERVER_TIMEOUT_MS", "5000")),
            connect_timeout_ms=int(os.getenv("MONGO_CONNECT_TIMEOUT_MS", "5000")),
            socket_timeout_ms=int(os.getenv("MONGO_SOCKET_TIMEOUT_MS", "20000")),
        )

    def validate(self) -> None:
        if not self.mongo_uri:
            raise ValueError("MongoDB URI cannot be empty")
        if not self.database_name:
            raise ValueError("Database name cannot be empty")
        if self.max_pool_size < self.min_pool_size:
            raise ValueError("max_pool_size must be >= min_pool_size")


# =====================================
# ASYNC DATABASE MANAGER
# =====================================

class AsyncDatabaseManager:
    """
    Process-wide Motor client holder. Transactions need a replica set, so the
    client is shared with the store rather than recreated per request.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._client: Optional[AsyncIOMotorClient] = None
        self._database: Optional[AsyncIOMotorDatabase] = None
        self._config: Optional[AsyncDatabaseConfig] = None

    async def initialize(self, config: Optional[AsyncDatabaseConfig] = None) -> None:
        """
        Open the connection pool and ping the server. Call once at app startup.

        Raises:
            ConnectionFailure: If the server cannot be reached
            ValueError: If the configuration is invalid
        """
        async with self._lock:
            if self._client is not None:
                logger.warning("database_already_initialized")
                return

            config = config or AsyncDatabaseConfig.from_env()
            config.validate()

            client = AsyncIOMotorClient(
                config.mongo_uri,
                maxPoolSize=config.max_pool_size,
                minPoolSize=config.min_pool_size,
                serverSelectionTimeoutMS=config.server_selection_timeout_ms,
                connectTimeoutMS=config.connect_timeout_ms,
                socketTimeoutMS=config.socket_timeout_ms,
                retryWrites=config.retry_writes,
                retryReads=config.retry_reads,
                uuidRepresentation=config.uuid_representation,
                tz_aware=True,
            )
            try:
                await asyncio.wait_for(
                    client.admin.command("ping"),
                    timeout=config.server_selection_timeout_ms / 1000,
                )
            except (ConnectionFailure, ServerSelectionTimeoutError) as e:
                client.close()
                logger.error("mongo_connect_failed", error=str(e))
                raise ConnectionFailure(f"Could not connect to MongoDB: {e}") from e
            except asyncio.TimeoutError as e:
                client.close()
                logger.error("mongo_connect_timeout")
                raise ConnectionFailure("MongoDB connection timeout") from e

            self._client = client
            self._database = client[config.database_name]
            self._config = config
            logger.info(
                "mongo_connected",
                database=config.database_name,
                pool=f"{config.min_pool_size}-{config.max_pool_size}",
            )

    @property
    def client(self) -> AsyncIOMotorClient:
        if self._client is None:
            raise RuntimeError("AsyncDatabaseManager not initialized. Call `await initialize()` first.")
        return self._client

    @property
    def database(self) -> AsyncIOMotorDatabase:
        if self._database is None:
            raise RuntimeError("AsyncDatabaseManager not initialized. Call `await initialize()` first.")
        return self._database

    async def health_check(self) -> Dict[str, Any]:
        if self._client is None:
            return {
                "status": "unhealthy",
                "error": "Database not initialized",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        try:
            start = datetime.now()
            await asyncio.wait_for(self._client.admin.command("ping"), timeout=5.0)
            latency = (datetime.now() - start).total_seconds() * 1000
            return {
                "status": "healthy",
                "latency_ms": round(latency, 2),
                "database": self._config.database_name if self._config else "unknown",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        except (asyncio.TimeoutError, PyMongoError) as e:
            logger.error("database_health_check_failed", error=str(e))
            return {
                "status": "unhealthy",
                "error": str(e) or "Health check timeout",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

    async def close(self) -> None:
        async with self._lock:
            if self._client is not None:
                self._client.close()
                logger.info("mongo_connection_closed")
            self._client = None
            self._database = None
            self._config = None


db_manager = AsyncDatabaseManager()


@asynccontextmanager
async def transaction_context(client: AsyncIOMotorClient) -> AsyncGenerator[AsyncIOMotorClientSession, None]:
    """
    MongoDB multi-document transaction. Commits when the block exits cleanly,
    aborts when it raises.

        async with transaction_context(client) as session:
            await db.tenants.update_one({...}, {...}, session=session)
            await db.units.update_one({...}, {...}, session=session)
    """
    async with await client.start_session() as session:
        async with session.start_transaction():
            try:
                yield session
            except Exception as e:
                logger.warning("transaction_aborted", error=str(e), error_type=type(e).__name__)
                raise
