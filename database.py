import asyncpg
import logging
from enum import Enum
from typing import Optional, Dict, Any, List
import config

logger = logging.getLogger(__name__)

# ====================================================================================
# SAFE STARTUP GUARD: Глобальные флаги готовности базы данных
# ====================================================================================
# DB_READY отражает, доступна ли БД прямо сейчас.
# DB_INIT_STATUS отражает результат применения миграций при старте.
# Оба флага читаются health endpoint'ом без обращения к БД.
# ====================================================================================
DB_READY: bool = False


class DBInitStatus(Enum):
    PENDING = "PENDING"
    READY = "READY"
    FAILED = "FAILED"


DB_INIT_STATUS: DBInitStatus = DBInitStatus.PENDING


def safe_int(value: Any) -> int:
    """
    Безопасное преобразование значения в int с обработкой None

    Returns:
        int: Преобразованное значение или 0 если None / мусор
    """
    if value is None:
        return 0
    try:
        return int(value)
    except (ValueError, TypeError):
        return 0


def affected_rows(status: Optional[str]) -> int:
    """
    Число затронутых строк из статуса asyncpg.execute ("UPDATE 3", "DELETE 0")
    """
    if not status:
        return 0
    return safe_int(status.split()[-1])


# Глобальный пул соединений
_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    """Получить пул соединений, создав его при необходимости"""
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(config.DATABASE_URL, min_size=1, max_size=10)
        logger.info("Database connection pool created")
    return _pool


async def close_pool():
    """Закрыть пул соединений"""
    global _pool, DB_READY
    if _pool:
        await _pool.close()
        _pool = None
        DB_READY = False
        logger.info("Database connection pool closed")


def ensure_db_ready() -> bool:
    """
    Проверка готовности базы данных перед выполнением фоновых операций

    Usage:
        if not ensure_db_ready():
            return  # Итерация пропущена
    """
    if not DB_READY:
        logger.warning("Database not ready - operation rejected (degraded mode)")
        return False
    return True


async def init_db() -> bool:
    """
    Инициализация базы данных: применение версионированных миграций

    Returns:
        True если инициализация успешна, False если миграции не применились
    """
    global DB_READY, DB_INIT_STATUS
    pool = await get_pool()

    try:
        import migrations
        migrations_success = await migrations.run_migrations_safe(pool)
    except Exception as e:
        logger.exception(f"Error applying migrations: {e}")
        migrations_success = False

    if not migrations_success:
        logger.error("Failed to apply database migrations")
        DB_INIT_STATUS = DBInitStatus.FAILED
        DB_READY = False
        return False

    logger.info("Database migrations applied successfully")
    DB_INIT_STATUS = DBInitStatus.READY
    DB_READY = True
    return True


# ====================================================================================
# USERS
# ====================================================================================

def normalize_username(username: Optional[str]) -> Optional[str]:
    """Убрать ведущий @ и привести к нижнему регистру"""
    if not username:
        return None
    value = username.strip().lstrip("@").lower()
    return value or None


async def get_user(user_id: int) -> Optional[Dict[str, Any]]:
    """Получить пользователя по внутреннему ID"""
    pool = await get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
        return dict(row) if row else None


async def get_user_by_telegram_id(telegram_id: int) -> Optional[Dict[str, Any]]:
    """Получить пользователя по Telegram ID"""
    pool = await get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow("SELECT * FROM users WHERE telegram_id = $1", telegram_id)
        return dict(row) if row else None


async def find_user_by_username(username: str) -> Optional[Dict[str, Any]]:
    """
    Найти пользователя по username (без учёта регистра и ведущего @)

    Returns:
        Словарь пользователя или None
    """
    normalized = normalize_username(username)
    if not normalized:
        return None
    pool = await get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            "SELECT * FROM users WHERE LOWER(username) = $1 ORDER BY id LIMIT 1",
            normalized
        )
        return dict(row) if row else None


async def register_or_update_user(
    telegram_id: int,
    username: Optional[str] = None,
    referrer_telegram_id: Optional[int] = None
) -> Dict[str, Any]:
    """
    Зарегистрировать пользователя при первом контакте или обновить username

    Реферальный код равен Telegram ID. Реферер записывается только при
    создании и только если это не сам пользователь.

    Returns:
        Словарь пользователя
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await conn.fetchrow(
                "SELECT * FROM users WHERE telegram_id = $1 FOR UPDATE", telegram_id
            )
            if row:
                if username and row["username"] != username:
                    row = await conn.fetchrow(
                        "UPDATE users SET username = $1 WHERE id = $2 RETURNING *",
                        username, row["id"]
                    )
                return dict(row)

            referred_by = None
            if referrer_telegram_id and referrer_telegram_id != telegram_id:
                referred_by = await conn.fetchval(
                    "SELECT id FROM users WHERE telegram_id = $1", referrer_telegram_id
                )

            row = await conn.fetchrow(
                """INSERT INTO users (telegram_id, username, referral_code, referred_by)
                   VALUES ($1, $2, $3, $4)
                   ON CONFLICT (telegram_id) DO UPDATE SET username = COALESCE(EXCLUDED.username, users.username)
                   RETURNING *""",
                telegram_id, username, str(telegram_id), referred_by
            )
            logger.info(
                f"users register: CREATED [user={row['id']}, telegram_id={telegram_id}, "
                f"referred_by={referred_by}]"
            )
            return dict(row)


async def lock_user(conn: asyncpg.Connection, user_id: int) -> Optional[Dict[str, Any]]:
    """
    Заблокировать строку пользователя до конца текущей транзакции

    Все мутации ключей и подписок одного пользователя сериализуются этим локом.
    """
    row = await conn.fetchrow("SELECT * FROM users WHERE id = $1 FOR UPDATE", user_id)
    return dict(row) if row else None


async def set_user_disabled(user_id: int, disabled: bool, conn: Optional[asyncpg.Connection] = None) -> bool:
    """
    Установить флаг disabled

    Returns:
        True если пользователь найден
    """
    query = "UPDATE users SET disabled = $1 WHERE id = $2"
    if conn is not None:
        return affected_rows(await conn.execute(query, disabled, user_id)) > 0
    pool = await get_pool()
    async with pool.acquire() as conn:
        return affected_rows(await conn.execute(query, disabled, user_id)) > 0


async def list_disabled_users() -> List[Dict[str, Any]]:
    """Получить всех отключённых пользователей"""
    pool = await get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch("SELECT * FROM users WHERE disabled = TRUE ORDER BY id")
        return [dict(row) for row in rows]


async def delete_users(user_ids: List[int]) -> int:
    """
    Удалить пользователей (ключи и подписки удаляются каскадно)

    Returns:
        Количество удалённых строк
    """
    if not user_ids:
        return 0
    pool = await get_pool()
    async with pool.acquire() as conn:
        status = await conn.execute("DELETE FROM users WHERE id = ANY($1::bigint[])", user_ids)
        return affected_rows(status)
