"""
Idempotency & Rate-Limit Guard

Атомарные примитивы поверх Redis:
- try_acquire: SET NX EX - схлопывает дубли одного действия в одно выполнение
- allow: INCR + PEXPIRE одним Lua-скриптом - фиксированное окно на пользователя

Оба примитива выполняются за один round trip, поэтому нет гонки
check-then-act между несколькими инстансами бота.
"""
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject, Update

import config
import redis_client

logger = logging.getLogger(__name__)

# Возвращает текущее значение счётчика; TTL ставится только на первом инкременте
_RATE_LIMIT_SCRIPT = (
    "local current = redis.call('INCR', KEYS[1]); "
    "if current == 1 then redis.call('PEXPIRE', KEYS[1], ARGV[1]); end; "
    "return current;"
)

RATE_LIMITED_TEXT = "Слишком часто. Подождите пару секунд."
IN_PROGRESS_TEXT = "Запрос уже выполняется. Подождите немного."


def action_key(action: str, user_id: int, target: Optional[Any] = None) -> str:
    """Ключ идемпотентности для (действие, пользователь, цель)"""
    if target is None:
        return f"idemp:{action}:{user_id}"
    return f"idemp:{action}:{user_id}:{target}"


async def try_acquire(key: str, ttl: Optional[int] = None) -> bool:
    """
    Атомарно занять ключ, если он свободен

    Args:
        key: Ключ идемпотентности
        ttl: Время жизни в секундах (по умолчанию IDEMPOTENCY_TTL_SECONDS)

    Returns:
        True если ключ занят нами, False если операция уже выполняется
    """
    ttl = ttl or config.IDEMPOTENCY_TTL_SECONDS
    client = await redis_client.get_redis_client()
    ok = await client.set(key, str(int(time.time() * 1000)), nx=True, ex=ttl)
    return bool(ok)


async def release(key: str) -> None:
    """Освободить ключ досрочно (используется фоновыми задачами)"""
    client = await redis_client.get_redis_client()
    await client.delete(key)


async def allow(key: str) -> bool:
    """
    Фиксированное окно: не больше RATE_LIMIT_MAX_REQUESTS за окно

    Returns:
        True если запрос укладывается в лимит
    """
    client = await redis_client.get_redis_client()
    window_ms = config.RATE_LIMIT_WINDOW_SECONDS * 1000
    count = await client.eval(_RATE_LIMIT_SCRIPT, 1, key, str(window_ms))
    return count is not None and int(count) <= config.RATE_LIMIT_MAX_REQUESTS


async def acquire_action(action: str, user_id: int, target: Optional[Any] = None) -> bool:
    """
    Занять ключ действия пользователя

    При недоступности Redis действие пропускается (fail-open): защита от
    дублей не должна блокировать пользователя целиком.
    """
    key = action_key(action, user_id, target)
    try:
        return await try_acquire(key)
    except Exception as e:
        logger.warning(f"guard acquire_action: REDIS_ERROR [key={key}, error={e}]")
        return True


class UpdateGuardMiddleware(BaseMiddleware):
    """
    Outer middleware для Dispatcher.update

    1. Rate limit на пользователя (rl:user:<id>)
    2. Дедупликация повторной доставки одного update_id
    """

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        user = data.get("event_from_user")

        if user is not None:
            try:
                if not await allow(f"rl:user:{user.id}"):
                    await self._reply_rate_limited(event)
                    return None
            except Exception as e:
                logger.warning(f"guard rate_limit: CHECK_FAILED [user={user.id}, error={e}]")

        update_id = getattr(event, "update_id", None)
        if update_id is not None:
            try:
                if not await try_acquire(f"idemp:update:{update_id}", config.UPDATE_IDEMPOTENCY_TTL_SECONDS):
                    logger.info(f"guard update: DUPLICATE [update_id={update_id}]")
                    return None
            except Exception as e:
                logger.warning(f"guard update: CHECK_FAILED [update_id={update_id}, error={e}]")

        return await handler(event, data)

    @staticmethod
    async def _reply_rate_limited(event: TelegramObject) -> None:
        if not isinstance(event, Update):
            return
        try:
            if event.callback_query is not None:
                await event.callback_query.answer(RATE_LIMITED_TEXT)
            elif event.message is not None:
                await event.message.answer(RATE_LIMITED_TEXT)
        except Exception as e:
            logger.debug(f"guard rate_limit: reply failed: {e}")
