"""
Shotify Backend — MongoDB Client Tests
========================================

What:  Startup retry behaviour, ping and close of MongoDatabase.
How:   The AsyncMongoClient is a MagicMock; tenacity waits are disabled.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import ServerSelectionTimeoutError
from tenacity import wait_none

from shotify.database import MongoDatabase
from shotify.exceptions import DatabaseError


def _client(ping_side_effect=None) -> MagicMock:
    client = MagicMock()
    client.admin.command = AsyncMock(side_effect=ping_side_effect, return_value={"ok": 1})
    client.close = AsyncMock()
    return client


def _database(client, attempts: int = 3) -> MongoDatabase:
    return MongoDatabase(
        uri="mongodb://unused",
        database_name="shotify_test",
        connect_attempts=attempts,
        client=client,
        retry_wait=wait_none(),
    )


class TestConnect:

    @pytest.mark.asyncio
    async def test_first_ping_succeeds(self):
        client = _client()
        await _database(client).connect()
        client.admin.command.assert_awaited_once_with("ping")

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self):
        client = _client(
            ping_side_effect=[ServerSelectionTimeoutError("no servers"), {"ok": 1}]
        )
        await _database(client).connect()
        assert client.admin.command.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_database_error(self):
        client = _client(ping_side_effect=ServerSelectionTimeoutError("no servers"))

        with pytest.raises(DatabaseError) as exc_info:
            await _database(client, attempts=2).connect()

        assert client.admin.command.await_count == 2
        assert exc_info.value.context["attempts"] == 2
        assert "no servers" in exc_info.value.context["error"]


class TestPingAndClose:

    @pytest.mark.asyncio
    async def test_ping_true_when_reachable(self):
        assert await _database(_client()).ping() is True

    @pytest.mark.asyncio
    async def test_ping_false_on_error(self):
        client = _client(ping_side_effect=ServerSelectionTimeoutError("down"))
        assert await _database(client).ping() is False

    @pytest.mark.asyncio
    async def test_close(self):
        client = _client()
        await _database(client).close()
        client.close.assert_awaited_once()

    def test_database_handle(self):
        client = _client()
        db = _database(client)
        assert db.database is client.__getitem__.return_value
        client.__getitem__.assert_called_with("shotify_test")

    def test_invalid_uri_raises_database_error(self):
        with pytest.raises(DatabaseError):
            MongoDatabase(uri="not-a-mongo-uri", database_name="shotify_test")
