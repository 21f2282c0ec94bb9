import pytest
from unittest.mock import AsyncMock

from aiogram.fsm.storage.memory import MemoryStorage
from aiogram.fsm.storage.redis import RedisStorage

import config
import redis_client


@pytest.mark.asyncio
async def test_fsm_storage_falls_back_to_memory_in_dev(mocker, monkeypatch):
    monkeypatch.setattr(config, "IS_PRODUCTION", False)
    mocker.patch("redis_client.check_redis_connection", new_callable=AsyncMock, side_effect=ConnectionError("down"))

    assert isinstance(await redis_client.build_fsm_storage(), MemoryStorage)


@pytest.mark.asyncio
async def test_fsm_storage_requires_redis_in_production(mocker, monkeypatch):
    monkeypatch.setattr(config, "IS_PRODUCTION", True)
    mocker.patch("redis_client.check_redis_connection", new_callable=AsyncMock, side_effect=ConnectionError("down"))

    with pytest.raises(ConnectionError):
        await redis_client.build_fsm_storage()


@pytest.mark.asyncio
async def test_fsm_storage_uses_shared_client_with_ttl(mocker):
    client = AsyncMock()
    mocker.patch("redis_client.check_redis_connection", new_callable=AsyncMock, return_value=True)
    mocker.patch("redis_client.get_redis_client", new_callable=AsyncMock, return_value=client)

    storage = await redis_client.build_fsm_storage()

    assert isinstance(storage, RedisStorage)
    assert storage.redis is client
    assert storage.state_ttl == config.ADMIN_STATE_TTL_SECONDS


@pytest.mark.asyncio
async def test_check_connection_sets_ready_flag(mocker, monkeypatch):
    client = AsyncMock()
    client.ping.side_effect = [True, ConnectionError("down")]
    mocker.patch("redis_client.get_redis_client", new_callable=AsyncMock, return_value=client)

    assert await redis_client.check_redis_connection() is True
    assert redis_client.REDIS_READY is True

    with pytest.raises(ConnectionError):
        await redis_client.check_redis_connection()
    assert redis_client.REDIS_READY is False
