"""
Subscription Ledger

Подписка - строка истории с окном [start_date, end_date). "Активная" подписка -
самая поздняя по end_date строка, у которой end_date > now. Продление никогда
не перезаписывает старую строку: вставляется новая, начинающаяся с конца
текущего активного окна (цепочка продлений).
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

import asyncpg

import database

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 1440


def get_days_left(subscription: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> int:
    """
    Сколько дней осталось до конца подписки, с округлением вверх

    Осталось 0.2 дня - показываем 1 день. Истекла или осталось меньше
    минуты - 0.

    Args:
        subscription: Словарь подписки с end_date
        now: Текущее время (для тестов)

    Returns:
        Количество дней >= 0
    """
    if not subscription or not subscription.get("end_date"):
        return 0
    now = now or datetime.now()
    minutes_left = int((subscription["end_date"] - now).total_seconds() // 60)
    if minutes_left <= 0:
        return 0
    return math.ceil(minutes_left / MINUTES_PER_DAY)


async def _fetch_one(query: str, *args) -> Optional[Dict[str, Any]]:
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(query, *args)
        return dict(row) if row else None


async def get_active_subscription(user_id: int) -> Optional[Dict[str, Any]]:
    """Активная подписка пользователя (самая поздняя по end_date)"""
    return await _fetch_one(
        """SELECT * FROM subscriptions
           WHERE user_id = $1 AND end_date > $2
           ORDER BY end_date DESC LIMIT 1""",
        user_id, datetime.now()
    )


async def get_active_subscription_for_key(key_id: int) -> Optional[Dict[str, Any]]:
    """Активная подписка, привязанная к ключу"""
    return await _fetch_one(
        """SELECT * FROM subscriptions
           WHERE vpn_key_id = $1 AND end_date > $2
           ORDER BY end_date DESC LIMIT 1""",
        key_id, datetime.now()
    )


async def get_last_subscription(user_id: int) -> Optional[Dict[str, Any]]:
    """Последняя подписка пользователя (в том числе истёкшая)"""
    return await _fetch_one(
        "SELECT * FROM subscriptions WHERE user_id = $1 ORDER BY end_date DESC LIMIT 1",
        user_id
    )


async def get_last_subscription_for_key(key_id: int) -> Optional[Dict[str, Any]]:
    """Последняя подписка ключа (в том числе истёкшая)"""
    return await _fetch_one(
        "SELECT * FROM subscriptions WHERE vpn_key_id = $1 ORDER BY end_date DESC LIMIT 1",
        key_id
    )


async def has_active_subscription(user_id: int) -> bool:
    return await get_active_subscription(user_id) is not None


async def has_active_subscription_for_key(key_id: int) -> bool:
    return await get_active_subscription_for_key(key_id) is not None


async def _insert_extension(
    conn: asyncpg.Connection,
    user_id: int,
    days: int,
    key_id: Optional[int],
    current_end: Optional[datetime]
) -> Dict[str, Any]:
    now = datetime.now()
    start = current_end if current_end and current_end > now else now
    end = start + timedelta(days=days)
    row = await conn.fetchrow(
        """INSERT INTO subscriptions (user_id, vpn_key_id, start_date, end_date, created_at, is_active)
           VALUES ($1, $2, $3, $4, $5, TRUE)
           RETURNING *""",
        user_id, key_id, start, end, now
    )
    return dict(row)


async def extend_subscription(
    user_id: int,
    days: int,
    conn: Optional[asyncpg.Connection] = None
) -> Dict[str, Any]:
    """
    Продлить подписку пользователя на days дней

    Начало новой строки = max(now, конец текущей активной подписки).
    Строка пользователя блокируется, поэтому два параллельных продления
    выстраиваются в цепочку, а не перекрываются.

    Args:
        user_id: Внутренний ID пользователя
        days: Количество дней (> 0)
        conn: Соединение внешней транзакции (иначе открывается своя)

    Returns:
        Словарь новой подписки

    Raises:
        ValueError: Если days <= 0 или пользователь не найден
    """
    if days <= 0:
        raise ValueError(f"days must be positive, got {days}")

    if conn is None:
        pool = await database.get_pool()
        async with pool.acquire() as own_conn:
            async with own_conn.transaction():
                return await extend_subscription(user_id, days, conn=own_conn)

    user = await database.lock_user(conn, user_id)
    if user is None:
        raise ValueError(f"user {user_id} not found")

    current_end = await conn.fetchval(
        "SELECT MAX(end_date) FROM subscriptions WHERE user_id = $1 AND end_date > $2",
        user_id, datetime.now()
    )
    subscription = await _insert_extension(conn, user_id, days, None, current_end)
    logger.info(
        f"subscriptions extend: SUCCESS [user={user_id}, days={days}, "
        f"start={subscription['start_date']}, end={subscription['end_date']}]"
    )
    return subscription


async def extend_subscription_for_key(
    user_id: int,
    key_id: int,
    days: int,
    conn: Optional[asyncpg.Connection] = None
) -> Dict[str, Any]:
    """
    Продлить подписку конкретного ключа

    Окно считается от конца активной подписки этого ключа, новая строка
    сразу привязана к ключу.

    Raises:
        ValueError: Если days <= 0, пользователь не найден или ключ чужой
    """
    if days <= 0:
        raise ValueError(f"days must be positive, got {days}")

    if conn is None:
        pool = await database.get_pool()
        async with pool.acquire() as own_conn:
            async with own_conn.transaction():
                return await extend_subscription_for_key(user_id, key_id, days, conn=own_conn)

    user = await database.lock_user(conn, user_id)
    if user is None:
        raise ValueError(f"user {user_id} not found")

    owner = await conn.fetchval("SELECT user_id FROM vpn_keys WHERE id = $1", key_id)
    if owner != user_id:
        raise ValueError(f"key {key_id} does not belong to user {user_id}")

    current_end = await conn.fetchval(
        "SELECT MAX(end_date) FROM subscriptions WHERE vpn_key_id = $1 AND end_date > $2",
        key_id, datetime.now()
    )
    subscription = await _insert_extension(conn, user_id, days, key_id, current_end)
    logger.info(
        f"subscriptions extend_for_key: SUCCESS [user={user_id}, key_id={key_id}, days={days}, "
        f"end={subscription['end_date']}]"
    )
    return subscription


# Будущие звенья цепочки (start_date > now) схлопываются в нулевое окно [now, now]
_REVOKE_ACTIVE_SQL = """
    UPDATE subscriptions
    SET start_date = LEAST(start_date, $2), end_date = $2, is_active = FALSE
    WHERE user_id = $1 AND end_date > $2
    RETURNING *
"""


async def revoke_active_subscription(user_id: int) -> Optional[Dict[str, Any]]:
    """
    Досрочно завершить активную подписку пользователя (end_date = now)

    Завершается всё активное окно, включая уже оплаченные продления.

    Returns:
        Последняя завершённая подписка или None, если активной не было
    """
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            await database.lock_user(conn, user_id)
            rows = await conn.fetch(_REVOKE_ACTIVE_SQL, user_id, datetime.now())
    if not rows:
        logger.info(f"subscriptions revoke: NOTHING_ACTIVE [user={user_id}]")
        return None
    latest = max((dict(row) for row in rows), key=lambda s: s["id"])
    logger.info(f"subscriptions revoke: SUCCESS [user={user_id}, count={len(rows)}]")
    return latest


async def revoke_all_active_subscriptions(user_id: int, conn: Optional[asyncpg.Connection] = None) -> int:
    """
    Завершить все активные подписки пользователя

    Returns:
        Количество завершённых подписок
    """
    if conn is None:
        pool = await database.get_pool()
        async with pool.acquire() as own_conn:
            async with own_conn.transaction():
                return await revoke_all_active_subscriptions(user_id, conn=own_conn)

    rows = await conn.fetch(_REVOKE_ACTIVE_SQL, user_id, datetime.now())
    logger.info(f"subscriptions revoke_all: SUCCESS [user={user_id}, count={len(rows)}]")
    return len(rows)


async def bind_unassigned_subscriptions(conn: asyncpg.Connection, user_id: int, key_id: int) -> int:
    """
    Привязать активные подписки без ключа к ключу key_id

    Вызывается внутри транзакции выдачи ключа (под локом пользователя).

    Returns:
        Количество привязанных подписок
    """
    status = await conn.execute(
        """UPDATE subscriptions SET vpn_key_id = $2
           WHERE user_id = $1 AND vpn_key_id IS NULL AND end_date > $3""",
        user_id, key_id, datetime.now()
    )
    return database.affected_rows(status)


async def rebind_active_subscription(conn: asyncpg.Connection, old_key_id: int, new_key_id: int) -> int:
    """Перенести активные подписки со старого ключа на новый (замена ключа)"""
    status = await conn.execute(
        "UPDATE subscriptions SET vpn_key_id = $2 WHERE vpn_key_id = $1 AND end_date > $3",
        old_key_id, new_key_id, datetime.now()
    )
    return database.affected_rows(status)


async def get_expiring_subscriptions(within_days: int = 2) -> List[Dict[str, Any]]:
    """
    Активные подписки, истекающие в ближайшие within_days дней

    Отключённые пользователи в выборку не попадают. Звено, за которым в той
    же цепочке (пользователь + ключ) идёт более позднее, тоже пропускается.
    """
    now = datetime.now()
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """SELECT s.*, u.telegram_id, u.disabled
               FROM subscriptions s
               JOIN users u ON u.id = s.user_id
               WHERE s.end_date > $1 AND s.end_date <= $2 AND u.disabled = FALSE
                 AND NOT EXISTS (
                     SELECT 1 FROM subscriptions n
                     WHERE n.user_id = s.user_id
                       AND n.vpn_key_id IS NOT DISTINCT FROM s.vpn_key_id
                       AND n.end_date > s.end_date
                 )
               ORDER BY s.end_date""",
            now, now + timedelta(days=within_days)
        )
        return [dict(row) for row in rows]


async def mark_notified(subscription_id: int, column: str) -> None:
    """
    Проставить отметку об отправленном напоминании

    Args:
        column: notified_two_days_at или notified_one_day_at
    """
    if column not in ("notified_two_days_at", "notified_one_day_at"):
        raise ValueError(f"unknown notification column: {column}")
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            f"UPDATE subscriptions SET {column} = $1 WHERE id = $2",
            datetime.now(), subscription_id
        )
