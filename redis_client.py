"""
TTL Store (Redis)

Одно соединение на процесс. В нём живут:
- idemp:*      - ключи идемпотентности действий и update_id (guard)
- rl:user:*    - счётчики rate limit (guard)
- lock:key:*   - взаимоисключение recovery/cleanup на одном VPN-ключе
- fsm:*        - состояние ввода админ-действий (aiogram RedisStorage)

Все ключи создаются с TTL, поэтому после падения процесса ничего не залипает.
"""
import logging
from typing import Optional

import redis.asyncio as redis
from aiogram.fsm.storage.base import BaseStorage
from aiogram.fsm.storage.memory import MemoryStorage
from aiogram.fsm.storage.redis import DefaultKeyBuilder, RedisStorage

import config

logger = logging.getLogger(__name__)

FSM_KEY_PREFIX = "fsm"

_redis_client: Optional[redis.Redis] = None

# Флаг для /health: читается без обращения к Redis
REDIS_READY: bool = False


def _new_client() -> redis.Redis:
    if not config.REDIS_URL:
        raise ValueError("REDIS_URL is not set")
    return redis.from_url(
        config.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30,
    )


async def get_redis_client() -> redis.Redis:
    """Общий клиент; создаётся лениво при первом обращении"""
    global _redis_client
    if _redis_client is None:
        _redis_client = _new_client()
    return _redis_client


async def check_redis_connection() -> bool:
    """
    PING при старте

    Raises:
        redis.RedisError, ValueError: Redis недоступен или не настроен
    """
    global REDIS_READY
    try:
        client = await get_redis_client()
        await client.ping()
    except Exception as e:
        REDIS_READY = False
        logger.error(f"redis connect: FAILED [error={type(e).__name__}: {e}]")
        raise
    REDIS_READY = True
    logger.info("✅ Redis connection verified")
    return True


async def build_fsm_storage() -> BaseStorage:
    """
    FSM storage для диалогов администратора

    Незавершённый ввод протухает через ADMIN_STATE_TTL_SECONDS. Без Redis
    в production запуск запрещён (sys.exit делает вызывающий), в dev -
    MemoryStorage с предупреждением.

    Raises:
        Exception: Redis недоступен в production
    """
    try:
        await check_redis_connection()
    except Exception:
        if config.IS_PRODUCTION:
            raise
        logger.warning("Dev mode: Falling back to MemoryStorage (NOT for production!)")
        return MemoryStorage()

    return RedisStorage(
        redis=await get_redis_client(),
        key_builder=DefaultKeyBuilder(prefix=FSM_KEY_PREFIX),
        state_ttl=config.ADMIN_STATE_TTL_SECONDS,
        data_ttl=config.ADMIN_STATE_TTL_SECONDS,
    )


async def close_redis_client():
    """Закрыть общий клиент"""
    global _redis_client, REDIS_READY
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        REDIS_READY = False
        logger.info("Redis client closed")
