"""
Tests for DatabaseClient connection lifecycle.
"""

import asyncio
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from core.storage import DatabaseClient


class SlowPingClient:
    """Driver stand-in whose ping yields to the event loop."""

    def __init__(self, ping_error: Optional[Exception] = None):
        self.closed = False
        self.db = MagicMock()
        self.db.command = AsyncMock(side_effect=self._ping)
        self._ping_error = ping_error

    async def _ping(self, *args, **kwargs):
        await asyncio.sleep(0.01)
        if self._ping_error is not None:
            raise self._ping_error
        return {"ok": 1.0}

    def __getitem__(self, name):
        return self.db

    def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_connection():
    """Callers racing before the first connect open a single client."""
    created = []

    def factory(url):
        created.append(SlowPingClient())
        return created[-1]

    client = DatabaseClient("mongodb://db", "explorer", client_factory=factory)

    databases = await asyncio.gather(*(client.get_connection() for _ in range(5)))

    assert len(created) == 1
    assert all(db is created[0].db for db in databases)
    assert client.is_connected


@pytest.mark.asyncio
async def test_connection_failure_propagates_unwrapped():
    """The client itself lets driver errors through and discards the half-open client."""
    created = []

    def factory(url):
        created.append(SlowPingClient(ping_error=ServerSelectionTimeoutError("no servers")))
        return created[-1]

    client = DatabaseClient("mongodb://db", "explorer", client_factory=factory)

    with pytest.raises(ServerSelectionTimeoutError):
        await client.get_connection()

    assert created[0].closed
    assert not client.is_connected


@pytest.mark.asyncio
async def test_connected_callbacks_run_exactly_once(database_client):
    """Connected callbacks run on the first connection only."""
    calls = []

    async def on_connected(db):
        calls.append(db)

    database_client.on_connected(on_connected)

    first = await database_client.get_connection()
    second = await database_client.get_connection()

    assert first is second
    assert calls == [first]


@pytest.mark.asyncio
async def test_failed_callback_is_retried_without_blocking_others(database_client):
    """A failing callback is retried later and does not starve the rest."""
    attempts = []
    healthy = []

    async def flaky(db):
        attempts.append(db)
        if len(attempts) == 1:
            raise RuntimeError("index build failed")

    async def provision(db):
        healthy.append(db)

    database_client.on_connected(flaky)
    database_client.on_connected(provision)

    with pytest.raises(RuntimeError):
        await database_client.get_connection()

    assert len(healthy) == 1

    await database_client.get_connection()
    await database_client.get_connection()
    assert len(attempts) == 2
    assert len(healthy) == 1


@pytest.mark.asyncio
async def test_ping_and_close(database_client):
    """Ping connects; close drops the connection."""
    assert await database_client.ping()
    assert database_client.is_connected

    await database_client.close()

    assert not database_client.is_connected


@pytest.mark.asyncio
async def test_ping_reports_unreachable_server():
    """Ping answers False instead of raising when no server responds."""
    client = DatabaseClient(
        "mongodb://db",
        "explorer",
        client_factory=lambda url: SlowPingClient(
            ping_error=ServerSelectionTimeoutError("no servers")
        ),
    )

    assert await client.ping() is False
