"""
Recovery & Cleanup - фоновые задачи обслуживания VPN-ключей

recovery: каждые RECOVERY_INTERVAL_SECONDS повторяет finalize для ключей,
зависших в PENDING/FAILED дольше RECOVERY_THRESHOLD_MINUTES.

cleanup: каждые CLEANUP_INTERVAL_SECONDS удаляет ключи старше
UNUSED_KEY_TTL_HOURS, которые так и не пригодились:
1. PENDING/FAILED - выключить в панели (best-effort) и удалить
2. ACTIVE с подтверждённым нулевым трафиком - выключить и удалить
3. REVOKED, которые не удалось выключить в панели ("disable failed" в
   last_error) - повторить выключение, при успехе очистить last_error

Ключи с активной подпиской не удаляются никогда. Ключ, который сейчас
доводит finalize (занят Redis-лок), пропускается. Неизвестный трафик
(панель не ответила) удаление блокирует.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict

import config
import database
import guard
import vpn_keys
import vpn_utils
import xui_client

logger = logging.getLogger(__name__)

_NO_ACTIVE_SUBSCRIPTION = """
    NOT EXISTS (
        SELECT 1 FROM subscriptions s WHERE s.vpn_key_id = vpn_keys.id AND s.end_date > $2
    )
"""


async def recover_stale_keys(threshold: timedelta) -> int:
    """
    Один проход recovery

    Returns:
        Количество ключей, ставших ACTIVE
    """
    return await vpn_keys.recover_stale(threshold, limit=config.RECOVERY_BATCH_SIZE)


async def _delete_key(key: Dict[str, Any], statuses: tuple) -> bool:
    """Удалить строку ключа, если она всё ещё в ожидаемом статусе и без активной подписки"""
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        status = await conn.execute(
            f"""DELETE FROM vpn_keys
                WHERE id = $1 AND status = ANY($3::text[]) AND {_NO_ACTIVE_SUBSCRIPTION}""",
            key["id"], datetime.now(), list(statuses)
        )
    return database.affected_rows(status) > 0


async def _try_lock(key_id: int) -> bool:
    # Redis недоступен - удалять не рискуем
    try:
        return await guard.try_acquire(vpn_keys.key_lock_name(key_id), vpn_keys.KEY_LOCK_TTL_SECONDS)
    except Exception as e:
        logger.warning(f"cleanup lock: UNAVAILABLE [key_id={key_id}, error={e}]")
        return False


async def _unlock(key_id: int) -> None:
    try:
        await guard.release(vpn_keys.key_lock_name(key_id))
    except Exception as e:
        logger.debug(f"cleanup lock: release failed [key_id={key_id}, error={e}]")


async def _cleanup_pending_and_failed(border: datetime) -> int:
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"""SELECT * FROM vpn_keys
                WHERE status IN ('PENDING', 'FAILED') AND is_revoked = FALSE AND created_at < $1
                  AND {_NO_ACTIVE_SUBSCRIPTION}
                ORDER BY created_at""",
            border, datetime.now()
        )

    removed = 0
    for row in rows:
        key = dict(row)
        if not await _try_lock(key["id"]):
            logger.info(f"cleanup pending: SKIP_LOCKED [key_id={key['id']}]")
            continue
        try:
            try:
                await xui_client.disable_client(key["inbound_id"], key["client_uuid"])
            except Exception as e:
                # Клиент мог так и не появиться в панели
                logger.warning(f"cleanup pending: DISABLE_FAILED [key_id={key['id']}, error={e}]")
            if await _delete_key(key, (vpn_keys.STATUS_PENDING, vpn_keys.STATUS_FAILED)):
                removed += 1
                logger.info(
                    f"cleanup pending: REMOVED [key_id={key['id']}, status={key['status']}, "
                    f"uuid={vpn_utils.uuid_preview(key['client_uuid'])}]"
                )
        finally:
            await _unlock(key["id"])
    return removed


async def _cleanup_active_without_traffic(border: datetime) -> int:
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"""SELECT * FROM vpn_keys
                WHERE status = 'ACTIVE' AND is_revoked = FALSE AND created_at < $1
                  AND {_NO_ACTIVE_SUBSCRIPTION}
                ORDER BY created_at""",
            border, datetime.now()
        )

    removed = 0
    for row in rows:
        key = dict(row)
        traffic = await xui_client.get_client_traffic(key["inbound_id"], key["client_uuid"], key["client_email"])
        if traffic is None:
            logger.info(f"cleanup active: SKIP_UNKNOWN_TRAFFIC [key_id={key['id']}]")
            continue
        if traffic > 0:
            continue

        if not await _try_lock(key["id"]):
            continue
        try:
            try:
                await xui_client.disable_client(key["inbound_id"], key["client_uuid"])
            except Exception as e:
                # Клиент точно есть в панели: без выключения строку не удаляем
                logger.warning(f"cleanup active: DISABLE_FAILED [key_id={key['id']}, error={e}]")
                continue
            if await _delete_key(key, (vpn_keys.STATUS_ACTIVE,)):
                removed += 1
                logger.info(f"cleanup active: REMOVED [key_id={key['id']}]")
        finally:
            await _unlock(key["id"])
    return removed


async def retry_revoked_disable(limit: int) -> int:
    """
    Повторно выключить в панели отозванные ключи, где прошлое выключение упало

    Returns:
        Количество ключей, выключенных этим проходом
    """
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """SELECT * FROM vpn_keys
               WHERE is_revoked = TRUE AND last_error LIKE $1
               ORDER BY updated_at
               LIMIT $2""",
            f"{vpn_keys.DISABLE_FAILED_PREFIX}%", limit
        )

    disabled = 0
    for row in rows:
        key = dict(row)
        try:
            await xui_client.disable_client(key["inbound_id"], key["client_uuid"])
        except Exception as e:
            logger.warning(f"cleanup revoked: DISABLE_FAILED [key_id={key['id']}, error={e}]")
            # updated_at сдвигается, чтобы следующий проход начал с других ключей
            async with pool.acquire() as conn:
                await conn.execute(
                    "UPDATE vpn_keys SET last_error = $2, updated_at = $3 WHERE id = $1 AND is_revoked = TRUE",
                    key["id"], f"{vpn_keys.DISABLE_FAILED_PREFIX}{e}"[:1000], datetime.now()
                )
            continue
        async with pool.acquire() as conn:
            await conn.execute(
                "UPDATE vpn_keys SET last_error = NULL, updated_at = $2 WHERE id = $1 AND is_revoked = TRUE",
                key["id"], datetime.now()
            )
        disabled += 1
        logger.info(f"cleanup revoked: DISABLED [key_id={key['id']}]")
    return disabled


async def cleanup_unused_keys(ttl: timedelta) -> int:
    """
    Один проход cleanup

    Args:
        ttl: Возраст ключа, после которого неиспользуемый ключ удаляется

    Returns:
        Общее количество удалённых ключей (повторно выключенные REVOKED
        не считаются)
    """
    border = datetime.now() - ttl
    removed_pending = await _cleanup_pending_and_failed(border)
    removed_active = await _cleanup_active_without_traffic(border)
    disabled_revoked = await retry_revoked_disable(config.RECOVERY_BATCH_SIZE)
    if removed_pending or removed_active or disabled_revoked:
        logger.info(
            f"cleanup: DONE [pending_failed={removed_pending}, active_unused={removed_active}, "
            f"revoked_disabled={disabled_revoked}]"
        )
    return removed_pending + removed_active


async def recovery_task():
    """Фоновая задача recovery зависших ключей"""
    logger.info(f"Key recovery task started (interval: {config.RECOVERY_INTERVAL_SECONDS} seconds)")
    threshold = timedelta(minutes=config.RECOVERY_THRESHOLD_MINUTES)

    while True:
        try:
            await asyncio.sleep(config.RECOVERY_INTERVAL_SECONDS)
            if not database.ensure_db_ready():
                continue
            await recover_stale_keys(threshold)
        except asyncio.CancelledError:
            logger.info("Key recovery task cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in key recovery task: {e}", exc_info=True)
            await asyncio.sleep(10)


async def cleanup_task():
    """Фоновая задача удаления неиспользуемых ключей"""
    logger.info(f"Key cleanup task started (interval: {config.CLEANUP_INTERVAL_SECONDS} seconds)")
    ttl = timedelta(hours=config.UNUSED_KEY_TTL_HOURS)

    while True:
        try:
            await asyncio.sleep(config.CLEANUP_INTERVAL_SECONDS)
            if not database.ensure_db_ready():
                continue
            await cleanup_unused_keys(ttl)
        except asyncio.CancelledError:
            logger.info("Key cleanup task cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in key cleanup task: {e}", exc_info=True)
            await asyncio.sleep(10)
