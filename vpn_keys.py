"""
Credential Lifecycle Manager

Жизненный цикл VPN-ключа:
    PENDING -> ACTIVE
    PENDING | ACTIVE | FAILED -> FAILED   (ошибка панели)
    FAILED -> ACTIVE                      (повтор из recovery)
    любой -> REVOKED                      (терминальный)

Правило: ни один HTTP-вызов панели не выполняется при открытой транзакции БД.
Транзакция фиксирует намерение (PENDING / REVOKED), затем вне её идёт
обращение к панели, затем короткая транзакция фиксирует результат.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

import asyncpg

import config
import database
import guard
import subscriptions
import vpn_utils
import xui_client
from errors import ValidationError, ConflictError, TransientGatewayError

logger = logging.getLogger(__name__)

STATUS_PENDING = "PENDING"
STATUS_ACTIVE = "ACTIVE"
STATUS_FAILED = "FAILED"
STATUS_REVOKED = "REVOKED"

# Redis-лок ключа: finalize и cleanup не работают с одним ключом одновременно
KEY_LOCK_TTL_SECONDS = 120

NO_ACTIVE_SUBSCRIPTION_TEXT = "Для этого ключа нет активной подписки."
KEY_IN_USE_TEXT = "Ключ можно удалить только после окончания срока."

# Префикс last_error отозванного ключа, который не удалось выключить в панели
DISABLE_FAILED_PREFIX = "disable failed: "


def key_lock_name(key_id: int) -> str:
    return f"lock:key:{key_id}"


def _safe_msg(error: BaseException) -> str:
    message = str(error)
    return message if message.strip() else type(error).__name__


def _is_revoked(key: Dict[str, Any]) -> bool:
    return bool(key.get("is_revoked")) or key.get("status") == STATUS_REVOKED


# ====================================================================================
# DB helpers (внутри транзакции)
# ====================================================================================

async def _fetch_key(conn: asyncpg.Connection, key_id: int) -> Optional[Dict[str, Any]]:
    row = await conn.fetchrow("SELECT * FROM vpn_keys WHERE id = $1", key_id)
    return dict(row) if row else None


async def _fetch_key_for_user(conn: asyncpg.Connection, user_id: int, key_id: int) -> Dict[str, Any]:
    row = await conn.fetchrow("SELECT * FROM vpn_keys WHERE id = $1 AND user_id = $2", key_id, user_id)
    if row is None:
        raise ValidationError(f"key {key_id} not found for user {user_id}", user_message="Ключ не найден.")
    return dict(row)


async def count_non_revoked_keys(user_id: int, conn: Optional[asyncpg.Connection] = None) -> int:
    """Количество неотозванных ключей пользователя (учитывается в лимите)"""
    query = "SELECT COUNT(*) FROM vpn_keys WHERE user_id = $1 AND is_revoked = FALSE"
    if conn is not None:
        return database.safe_int(await conn.fetchval(query, user_id))
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        return database.safe_int(await conn.fetchval(query, user_id))


async def _ensure_key_limit(conn: asyncpg.Connection, user_id: int) -> None:
    existing = await count_non_revoked_keys(user_id, conn=conn)
    if existing >= config.MAX_KEYS_PER_USER:
        raise ConflictError(
            f"key limit reached for user {user_id}: {existing}/{config.MAX_KEYS_PER_USER}",
            user_message=f"Достигнут лимит ключей (макс {config.MAX_KEYS_PER_USER}).",
        )


async def _insert_pending_key(conn: asyncpg.Connection, user: Dict[str, Any]) -> Dict[str, Any]:
    client_uuid = uuid.uuid4()
    label = vpn_utils.build_client_label(user["telegram_id"], user.get("username"), client_uuid)
    now = datetime.now()
    row = await conn.fetchrow(
        """INSERT INTO vpn_keys (user_id, inbound_id, client_uuid, client_email, key_value,
                                 status, is_revoked, created_at, updated_at)
           VALUES ($1, $2, $3, $4, $5, $6, FALSE, $7, $7)
           RETURNING *""",
        user["id"], config.XUI_INBOUND_ID, client_uuid, label,
        vpn_utils.placeholder_value(client_uuid), STATUS_PENDING, now
    )
    logger.info(
        f"vpn_keys create_pending: SUCCESS [user={user['id']}, key_id={row['id']}, "
        f"uuid={vpn_utils.uuid_preview(client_uuid)}]"
    )
    return dict(row)


async def _find_in_flight_key(conn: asyncpg.Connection, user_id: int) -> Optional[Dict[str, Any]]:
    border = datetime.now() - timedelta(minutes=config.RECOVERY_THRESHOLD_MINUTES)
    row = await conn.fetchrow(
        """SELECT * FROM vpn_keys
           WHERE user_id = $1 AND status = $2 AND is_revoked = FALSE AND created_at > $3
           ORDER BY id DESC LIMIT 1""",
        user_id, STATUS_PENDING, border
    )
    return dict(row) if row else None


async def _has_active_subscription(conn: asyncpg.Connection, user_id: int) -> bool:
    found = await conn.fetchval(
        "SELECT 1 FROM subscriptions WHERE user_id = $1 AND end_date > $2 LIMIT 1",
        user_id, datetime.now()
    )
    return found is not None


async def _has_active_subscription_for_key(conn: asyncpg.Connection, key_id: int) -> bool:
    found = await conn.fetchval(
        "SELECT 1 FROM subscriptions WHERE vpn_key_id = $1 AND end_date > $2 LIMIT 1",
        key_id, datetime.now()
    )
    return found is not None


async def _mark_revoked(conn: asyncpg.Connection, key_id: int) -> Optional[Dict[str, Any]]:
    row = await conn.fetchrow(
        """UPDATE vpn_keys SET status = $2, is_revoked = TRUE, last_error = NULL, updated_at = $3
           WHERE id = $1 AND is_revoked = FALSE
           RETURNING *""",
        key_id, STATUS_REVOKED, datetime.now()
    )
    return dict(row) if row else None


async def _mark_failed(key_id: int, error: str) -> bool:
    """
    PENDING/FAILED -> FAILED с текстом ошибки

    Returns:
        False если ключ успел стать ACTIVE или REVOKED (тогда не трогаем)
    """
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        updated = await conn.fetchval(
            """UPDATE vpn_keys SET status = $2, last_error = $3, updated_at = $4
               WHERE id = $1 AND is_revoked = FALSE AND status IN ('PENDING', 'FAILED')
               RETURNING id""",
            key_id, STATUS_FAILED, error[:1000], datetime.now()
        )
    return updated is not None


async def _mark_error(key_id: int, error: str) -> None:
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            "UPDATE vpn_keys SET last_error = $2, updated_at = $3 WHERE id = $1",
            key_id, error[:1000], datetime.now()
        )


async def _activate(key_id: int, key_value: str) -> Optional[Dict[str, Any]]:
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            """UPDATE vpn_keys SET status = $2, key_value = $3, last_error = NULL, updated_at = $4
               WHERE id = $1 AND is_revoked = FALSE
               RETURNING *""",
            key_id, STATUS_ACTIVE, key_value, datetime.now()
        )
    return dict(row) if row else None


async def _disable_remote(key: Dict[str, Any], record_error: bool = True) -> bool:
    """
    Best-effort выключение клиента в панели

    Ошибка логируется и (опционально) записывается в last_error ключа.
    """
    try:
        await xui_client.disable_client(key["inbound_id"], key["client_uuid"])
        return True
    except Exception as e:
        logger.warning(
            f"vpn_keys disable_remote: FAILED [key_id={key['id']}, "
            f"uuid={vpn_utils.uuid_preview(key['client_uuid'])}, error={_safe_msg(e)}]"
        )
        if record_error:
            try:
                await _mark_error(key["id"], f"{DISABLE_FAILED_PREFIX}{_safe_msg(e)}")
            except Exception as db_error:
                logger.error(f"vpn_keys disable_remote: MARK_ERROR_FAILED [key_id={key['id']}, error={db_error}]")
        return False


# ====================================================================================
# Panel resolution (вне транзакций)
# ====================================================================================

async def _resolve_link(key: Dict[str, Any]) -> str:
    inbound = await xui_client.get_inbound(key["inbound_id"])
    return vpn_utils.build_reality_link(
        inbound,
        config.XUI_PUBLIC_HOST,
        config.XUI_PUBLIC_PORT,
        key["client_uuid"],
        config.XUI_LINK_TAG,
    )


async def _load_for_finalize(key_id: int) -> Dict[str, Any]:
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        key = await _fetch_key(conn, key_id)
    if key is None:
        raise ValidationError(f"key {key_id} not found", user_message="Ключ не найден.")
    if _is_revoked(key):
        raise ConflictError(f"key {key_id} is revoked", user_message="Ключ отозван.")
    return key


async def finalize_key(key_id: int) -> Dict[str, Any]:
    """
    Довести ключ до ACTIVE: addClient -> getInbound -> ссылка -> ACTIVE

    Идемпотентно: ACTIVE ключ возвращается без обращения к панели,
    "клиент уже существует" считается успехом.

    Выполняется под Redis-локом ключа (тот же лок берёт cleanup). Если лок
    занят параллельным finalize, возвращается текущая строка без обращения
    к панели. Без Redis finalize всё равно выполняется.

    Raises:
        ValidationError: Ключ не найден
        ConflictError: Ключ отозван
        TransientGatewayError: Панель недоступна или ответила ошибкой;
            ключ переведён в FAILED, повтор сделает recovery
    """
    lock = key_lock_name(key_id)
    try:
        locked = await guard.try_acquire(lock, KEY_LOCK_TTL_SECONDS)
    except Exception as e:
        logger.warning(f"vpn_keys finalize: LOCK_UNAVAILABLE [key_id={key_id}, error={e}]")
        locked = None

    if locked is False:
        key = await _load_for_finalize(key_id)
        logger.info(f"vpn_keys finalize: SKIP_LOCKED [key_id={key_id}, status={key['status']}]")
        return key

    try:
        return await _finalize(await _load_for_finalize(key_id))
    finally:
        if locked:
            try:
                await guard.release(lock)
            except Exception as e:
                logger.debug(f"vpn_keys finalize: release failed [key_id={key_id}, error={e}]")


async def _finalize(key: Dict[str, Any]) -> Dict[str, Any]:
    key_id = key["id"]
    if key["status"] == STATUS_ACTIVE:
        return key

    uuid_log = vpn_utils.uuid_preview(key["client_uuid"])
    logger.info(f"vpn_keys finalize: START [key_id={key_id}, status={key['status']}, uuid={uuid_log}]")

    try:
        try:
            await xui_client.add_client(key["inbound_id"], key["client_uuid"], key["client_email"])
        except xui_client.DuplicateClientError:
            # Клиент уже создан прошлой попыткой; после компенсации он мог остаться выключенным
            logger.info(f"vpn_keys finalize: CLIENT_EXISTS [key_id={key_id}, uuid={uuid_log}]")
            await xui_client.enable_client(key["inbound_id"], key["client_uuid"])
        link = await _resolve_link(key)
    except Exception as e:
        error = _safe_msg(e)
        logger.error(f"vpn_keys finalize: FAILED [key_id={key_id}, uuid={uuid_log}, error={error}]")
        marked = await _mark_failed(key_id, error)
        if marked:
            # Компенсация: клиент в панели мог успеть создаться
            await _disable_remote(key, record_error=False)
        raise TransientGatewayError(f"finalize key {key_id} failed: {error}") from e

    activated = await _activate(key_id, link)
    if activated is None:
        raise ConflictError(f"key {key_id} was revoked during finalize", user_message="Ключ отозван.")

    logger.info(f"vpn_keys finalize: SUCCESS [key_id={key_id}, uuid={uuid_log}]")
    return activated


async def _refresh_active_link(key: Dict[str, Any]) -> Dict[str, Any]:
    """Пересобрать ссылку ACTIVE ключа; сохранить только при изменении"""
    try:
        link = await _resolve_link(key)
    except Exception as e:
        logger.warning(f"vpn_keys refresh_link: FAILED [key_id={key['id']}, error={_safe_msg(e)}]")
        return key

    if link == key["key_value"]:
        return key

    pool = await database.get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            """UPDATE vpn_keys SET key_value = $2, updated_at = $3
               WHERE id = $1 AND status = $4 AND is_revoked = FALSE
               RETURNING *""",
            key["id"], link, datetime.now(), STATUS_ACTIVE
        )
    if row is None:
        return key
    logger.info(f"vpn_keys refresh_link: UPDATED [key_id={key['id']}]")
    return dict(row)


async def _verify_active(key: Dict[str, Any]) -> Dict[str, Any]:
    """
    Режим VPN_KEY_VERIFY_ON_READ: убедиться, что клиент есть в панели

    Повторный addClient восстанавливает клиента после переустановки панели;
    "уже существует" - норма.
    """
    try:
        await xui_client.add_client(key["inbound_id"], key["client_uuid"], key["client_email"])
        logger.warning(f"vpn_keys verify: CLIENT_RESTORED [key_id={key['id']}]")
    except xui_client.DuplicateClientError:
        pass
    except Exception as e:
        logger.warning(f"vpn_keys verify: FAILED [key_id={key['id']}, error={_safe_msg(e)}]")
        return key
    return await _refresh_active_link(key)


# ====================================================================================
# Public API
# ====================================================================================

async def list_user_keys(user_id: int) -> List[Dict[str, Any]]:
    """
    Неотозванные ключи пользователя с датой окончания активной подписки

    Returns:
        Список словарей ключей с полем active_until (None если подписки нет)
    """
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """SELECT k.*,
                      (SELECT MAX(s.end_date) FROM subscriptions s
                       WHERE s.vpn_key_id = k.id AND s.end_date > $2) AS active_until
               FROM vpn_keys k
               WHERE k.user_id = $1 AND k.is_revoked = FALSE
               ORDER BY k.id""",
            user_id, datetime.now()
        )
        return [dict(row) for row in rows]


async def find_key_for_user(user_id: int, key_id: int) -> Dict[str, Any]:
    """
    Ключ пользователя (не отозванный)

    Raises:
        ValidationError: Ключ не найден или чужой
        ConflictError: Ключ отозван
    """
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        key = await _fetch_key_for_user(conn, user_id, key_id)
    if _is_revoked(key):
        raise ConflictError(f"key {key_id} is revoked", user_message="Ключ отозван.")
    return key


async def issue_key(user_id: int) -> Dict[str, Any]:
    """
    Выдать новый ключ пользователю

    Под локом пользователя: нужна активная подписка; если уже есть свежий
    PENDING ключ (параллельная выдача), он переиспользуется, иначе
    проверяется лимит и создаётся PENDING. Непривязанные активные подписки
    привязываются к ключу. После коммита - finalize_key.

    Raises:
        ConflictError: Нет подписки, лимит ключей, пользователь отключён
        TransientGatewayError: Панель недоступна (ключ останется FAILED)
    """
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            user = await database.lock_user(conn, user_id)
            if user is None:
                raise ValidationError(f"user {user_id} not found", user_message="Пользователь не найден.")
            if user.get("disabled"):
                raise ConflictError(f"user {user_id} is disabled", user_message="Доступ отключён администратором.")
            if not await _has_active_subscription(conn, user_id):
                raise ConflictError(
                    f"no active subscription for user {user_id}",
                    user_message="Нет активной подписки. Оформите подписку, чтобы получить ключ.",
                )

            key = await _find_in_flight_key(conn, user_id)
            if key is not None:
                logger.info(f"vpn_keys issue: REUSE_PENDING [user={user_id}, key_id={key['id']}]")
            else:
                await _ensure_key_limit(conn, user_id)
                try:
                    async with conn.transaction():
                        key = await _insert_pending_key(conn, user)
                except asyncpg.UniqueViolationError as e:
                    logger.warning(f"vpn_keys issue: UNIQUE_RACE [user={user_id}, error={e}]")
                    key = await _find_in_flight_key(conn, user_id)
                    if key is None:
                        raise ConflictError(f"key insert conflict for user {user_id}") from e

            await subscriptions.bind_unassigned_subscriptions(conn, user_id, key["id"])

    return await finalize_key(key["id"])


async def ensure_key_for_active_subscription(user_id: int) -> Optional[Dict[str, Any]]:
    """
    Привязать оплаченные, но непривязанные подписки к ключу

    Ключ выбирается так: неотозванный ключ без активной подписки, иначе
    новый PENDING (если позволяет лимит), иначе первый неотозванный ключ.
    Новый/неактивный ключ доводится до ACTIVE после коммита; ошибка панели
    не пробрасывается - ключ останется FAILED до recovery.

    Returns:
        Ключ, к которому привязаны подписки, или None если привязывать нечего
    """
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            user = await database.lock_user(conn, user_id)
            if user is None or user.get("disabled"):
                return None

            unassigned = await conn.fetchval(
                """SELECT COUNT(*) FROM subscriptions
                   WHERE user_id = $1 AND vpn_key_id IS NULL AND end_date > $2""",
                user_id, datetime.now()
            )
            if not unassigned:
                return None

            row = await conn.fetchrow(
                """SELECT k.* FROM vpn_keys k
                   WHERE k.user_id = $1 AND k.is_revoked = FALSE
                     AND NOT EXISTS (
                         SELECT 1 FROM subscriptions s WHERE s.vpn_key_id = k.id AND s.end_date > $2
                     )
                   ORDER BY k.id LIMIT 1""",
                user_id, datetime.now()
            )
            key = dict(row) if row else None

            if key is None:
                if await count_non_revoked_keys(user_id, conn=conn) < config.MAX_KEYS_PER_USER:
                    key = await _insert_pending_key(conn, user)
                else:
                    row = await conn.fetchrow(
                        "SELECT * FROM vpn_keys WHERE user_id = $1 AND is_revoked = FALSE ORDER BY id LIMIT 1",
                        user_id
                    )
                    key = dict(row)

            bound = await subscriptions.bind_unassigned_subscriptions(conn, user_id, key["id"])
            logger.info(f"vpn_keys ensure_key: BOUND [user={user_id}, key_id={key['id']}, subscriptions={bound}]")

    if key["status"] == STATUS_ACTIVE:
        return key
    try:
        return await finalize_key(key["id"])
    except TransientGatewayError as e:
        logger.warning(f"vpn_keys ensure_key: FINALIZE_DEFERRED [user={user_id}, key_id={key['id']}, error={e}]")
        return key


async def get_key_for_user(user_id: int, key_id: int) -> Dict[str, Any]:
    """
    Получить ключ для показа пользователю

    ACTIVE ключ проверяется на устаревшую ссылку (или полностью сверяется с
    панелью при VPN_KEY_VERIFY_ON_READ). PENDING/FAILED ключ доводится до
    ACTIVE прямо при чтении.

    Raises:
        ValidationError: Ключ не найден
        ConflictError: Ключ отозван или нет активной подписки для ключа
        TransientGatewayError: Ключ не удалось довести до ACTIVE
    """
    key = await find_key_for_user(user_id, key_id)
    if not await subscriptions.has_active_subscription_for_key(key_id):
        raise ConflictError(f"no active subscription for key {key_id}", user_message=NO_ACTIVE_SUBSCRIPTION_TEXT)

    if key["status"] == STATUS_ACTIVE:
        if config.VPN_KEY_VERIFY_ON_READ:
            return await _verify_active(key)
        if vpn_utils.is_placeholder(key["key_value"]) or vpn_utils.needs_link_refresh(key["key_value"]):
            return await _refresh_active_link(key)
        return key

    return await finalize_key(key_id)


async def replace_key(user_id: int, key_id: int) -> Dict[str, Any]:
    """
    Заменить ключ: старый REVOKED, новый PENDING с переносом подписки

    Слот не освобождается: отзыв и вставка в одной транзакции под локом.
    Старый клиент выключается в панели после попытки выдать новый.

    Raises:
        ValidationError: Ключ не найден
        ConflictError: Ключ отозван или для него нет активной подписки
        TransientGatewayError: Новый ключ не выдан (останется FAILED до recovery)
    """
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            user = await database.lock_user(conn, user_id)
            if user is None:
                raise ValidationError(f"user {user_id} not found", user_message="Пользователь не найден.")
            old = await _fetch_key_for_user(conn, user_id, key_id)
            if _is_revoked(old):
                raise ConflictError(f"key {key_id} is revoked", user_message="Ключ отозван.")
            if not await _has_active_subscription_for_key(conn, key_id):
                raise ConflictError(
                    f"no active subscription for key {key_id}", user_message=NO_ACTIVE_SUBSCRIPTION_TEXT
                )

            await _mark_revoked(conn, key_id)
            new_key = await _insert_pending_key(conn, user)
            moved = await subscriptions.rebind_active_subscription(conn, key_id, new_key["id"])

    logger.info(
        f"vpn_keys replace: COMMITTED [user={user_id}, old_key_id={key_id}, "
        f"new_key_id={new_key['id']}, subscriptions={moved}]"
    )
    try:
        return await finalize_key(new_key["id"])
    finally:
        await _disable_remote(old)


async def revoke_key(user_id: int, key_id: int, only_unused: bool = False) -> Dict[str, Any]:
    """
    Отозвать ключ пользователя: сначала локально REVOKED, затем выключить в панели

    Ошибка панели не откатывает отзыв, а записывается в last_error.

    Args:
        only_unused: Отказать, если к ключу привязана активная подписка
            (проверяется под локом пользователя, после оплаты не проскочит)

    Raises:
        ValidationError: Ключ не найден
        ConflictError: only_unused и у ключа есть активная подписка
    """
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            await database.lock_user(conn, user_id)
            key = await _fetch_key_for_user(conn, user_id, key_id)
            if only_unused and await _has_active_subscription_for_key(conn, key_id):
                raise ConflictError(f"key {key_id} has an active subscription", user_message=KEY_IN_USE_TEXT)
            if not _is_revoked(key):
                key = await _mark_revoked(conn, key_id) or key

    logger.info(f"vpn_keys revoke: SUCCESS [user={user_id}, key_id={key_id}]")
    await _disable_remote(key)
    return key


async def revoke_all_keys(user_id: int) -> int:
    """
    Отозвать все неотозванные ключи пользователя

    Returns:
        Количество ключей, отозванных этим вызовом
    """
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            await database.lock_user(conn, user_id)
            rows = await conn.fetch(
                """UPDATE vpn_keys SET status = $2, is_revoked = TRUE, last_error = NULL, updated_at = $3
                   WHERE user_id = $1 AND is_revoked = FALSE
                   RETURNING *""",
                user_id, STATUS_REVOKED, datetime.now()
            )
    revoked = [dict(row) for row in rows]
    for key in revoked:
        await _disable_remote(key)
    logger.info(f"vpn_keys revoke_all: SUCCESS [user={user_id}, count={len(revoked)}]")
    return len(revoked)


async def can_delete_key(user_id: int, key_id: int) -> bool:
    """Ключ можно удалить только когда к нему не привязана активная подписка"""
    await find_key_for_user(user_id, key_id)
    return not await subscriptions.has_active_subscription_for_key(key_id)


async def delete_key(user_id: int, key_id: int) -> Dict[str, Any]:
    """
    Удалить ключ пользователя (логически: отзыв)

    Строка удаляется позже через purge_revoked_keys.

    Raises:
        ConflictError: К ключу привязана активная подписка
    """
    if not await can_delete_key(user_id, key_id):
        raise ConflictError(f"key {key_id} has an active subscription", user_message=KEY_IN_USE_TEXT)
    return await revoke_key(user_id, key_id, only_unused=True)


async def recover_stale(threshold: timedelta, limit: Optional[int] = None) -> int:
    """
    Повторить finalize для зависших PENDING/FAILED ключей

    Лок ключа берёт сам finalize_key; ключ, занятый другим finalize,
    вернётся не ACTIVE и не будет засчитан. Ошибка по одному ключу не
    прерывает проход.

    Returns:
        Количество ключей, ставших ACTIVE
    """
    border = datetime.now() - threshold
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """SELECT * FROM vpn_keys
               WHERE is_revoked = FALSE AND status IN ('PENDING', 'FAILED') AND updated_at < $1
               ORDER BY updated_at ASC
               LIMIT $2""",
            border, limit or config.RECOVERY_BATCH_SIZE
        )

    recovered = 0
    for row in rows:
        key_id = row["id"]
        try:
            key = await finalize_key(key_id)
        except Exception as e:
            logger.warning(f"vpn_keys recover: FAILED [key_id={key_id}, error={_safe_msg(e)}]")
            continue
        if key["status"] == STATUS_ACTIVE:
            recovered += 1

    if rows:
        logger.info(f"vpn_keys recover: DONE [candidates={len(rows)}, recovered={recovered}]")
    return recovered


async def purge_revoked_keys() -> int:
    """
    Удалить строки отозванных ключей (с best-effort выключением в панели)

    Returns:
        Количество удалённых строк
    """
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch("SELECT * FROM vpn_keys WHERE is_revoked = TRUE OR status = $1", STATUS_REVOKED)
    if not rows:
        return 0

    for row in rows:
        await _disable_remote(dict(row), record_error=False)

    ids = [row["id"] for row in rows]
    async with pool.acquire() as conn:
        status = await conn.execute(
            "DELETE FROM vpn_keys WHERE id = ANY($1::bigint[]) AND (is_revoked = TRUE OR status = $2)",
            ids, STATUS_REVOKED
        )
    removed = database.affected_rows(status)
    logger.info(f"vpn_keys purge_revoked: SUCCESS [removed={removed}]")
    return removed


async def purge_disabled_users() -> int:
    """
    Удалить отключённых пользователей вместе с ключами и подписками

    Перед удалением клиенты выключаются в панели (best-effort).

    Returns:
        Количество удалённых пользователей
    """
    users = await database.list_disabled_users()
    if not users:
        return 0

    pool = await database.get_pool()
    for user in users:
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM vpn_keys WHERE user_id = $1", user["id"])
        for row in rows:
            await _disable_remote(dict(row), record_error=False)

    removed = await database.delete_users([user["id"] for user in users])
    logger.info(f"vpn_keys purge_disabled_users: SUCCESS [removed={removed}]")
    return removed
