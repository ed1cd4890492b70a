"""
Shared MongoDB connection.

One DatabaseClient per process owns the motor client. The first caller of
get_connection() opens it; concurrent callers wait on the same attempt.
Work that needs a live connection (index provisioning) is registered with
on_connected() and awaited before the connection is handed out.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from core.errors import RepositoryError
from core.logging import get_logger


logger = get_logger(__name__)


ClientFactory = Callable[[str], AsyncIOMotorClient]
ConnectedCallback = Callable[[AsyncIOMotorDatabase], Awaitable[None]]


class DatabaseClient:
    """
    Lazily connected, process-wide MongoDB handle.

    Connection failures propagate as pymongo errors; nothing here retries.
    """

    def __init__(
        self,
        connection_string: str,
        database_name: str,
        *,
        client_factory: Optional[ClientFactory] = None,
        server_selection_timeout_ms: int = 5000,
    ):
        """
        Args:
            connection_string: MongoDB connection URI
            database_name: Database holding every entity collection
            client_factory: Builds the driver client from the URI
            server_selection_timeout_ms: Driver timeout when no server answers
        """
        self._connection_string = connection_string
        self._database_name = database_name
        self._client_factory = client_factory or self._motor_client
        self._server_selection_timeout_ms = server_selection_timeout_ms
        self._client: Optional[AsyncIOMotorClient] = None
        self._db: Optional[AsyncIOMotorDatabase] = None
        self._pending: list[ConnectedCallback] = []
        self._lock = asyncio.Lock()

    def _motor_client(self, connection_string: str) -> AsyncIOMotorClient:
        return AsyncIOMotorClient(
            connection_string,
            serverSelectionTimeoutMS=self._server_selection_timeout_ms,
        )

    @property
    def database_name(self) -> str:
        return self._database_name

    @property
    def is_connected(self) -> bool:
        return self._db is not None

    def on_connected(self, callback: ConnectedCallback) -> None:
        """
        Register one-time work for the connected database.

        Each callback runs once, inside get_connection(), before any caller
        receives the database. A failing callback does not stop the others;
        it stays queued and is retried on the next call.
        """
        self._pending.append(callback)

    async def get_connection(self) -> AsyncIOMotorDatabase:
        """Return the database, connecting on first use."""
        if self._db is not None and not self._pending:
            return self._db

        async with self._lock:
            if self._db is None:
                await self._open()
            await self._run_pending()
            return self._db

    async def connect(self) -> AsyncIOMotorDatabase:
        """Connect and run queued initializers; used by the lifespan owner."""
        return await self.get_connection()

    async def _open(self) -> None:
        client = self._client_factory(self._connection_string)
        db = client[self._database_name]
        try:
            await db.command("ping")
        except Exception:
            client.close()
            raise

        self._client = client
        self._db = db
        logger.info("MongoDB connected", database=self._database_name)

    async def _run_pending(self) -> None:
        # Every callback gets its turn; failed ones stay queued for the next
        # call and the first failure is raised once the rest have run.
        pending, self._pending = self._pending, []
        failed: list[ConnectedCallback] = []
        first_error: Optional[Exception] = None
        for callback in pending:
            try:
                await callback(self._db)
            except Exception as err:
                logger.error("Connected callback failed", error=str(err), exc_info=True)
                failed.append(callback)
                if first_error is None:
                    first_error = err

        self._pending = failed + self._pending
        if first_error is not None:
            raise first_error

    async def ping(self) -> bool:
        """Readiness check: True if the server answers."""
        try:
            db = await self.get_connection()
            await db.command("ping")
        except (PyMongoError, RepositoryError) as err:
            logger.warning("MongoDB ping failed", error=str(err))
            return False
        return True

    async def close(self) -> None:
        """Close the driver client; a later call reconnects."""
        async with self._lock:
            if self._client is not None:
                self._client.close()
            self._client = None
            self._db = None
        logger.info("MongoDB connection closed", database=self._database_name)
