"""
Payment Reconciliation Service

Платёж живёт в таблице payments. Создание: короткая транзакция вставляет
строку 'pending', затем ВНЕ транзакции идёт запрос в YooKassa.

Зачисление (webhook или фоновая сверка) всегда перепроверяет статус через
GET /payments/{id} и выполняется в одной транзакции:
    блокировка строки платежа -> продление подписки -> paid_at/processed_at

processed_at ставится ровно один раз, поэтому повторный webhook ничего не
продлевает. После коммита к оплаченной подписке привязывается ключ.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, List

import asyncpg
from aiogram import Bot
from aiogram.exceptions import TelegramForbiddenError

import config
import database
import subscriptions
import vpn_keys
import yookassa_client
from errors import ValidationError
from yookassa_client import PaymentGatewayError

logger = logging.getLogger(__name__)

PROVIDER = "YOOKASSA"
DEFAULT_CURRENCY = "RUB"

STATUS_PENDING = "pending"
STATUS_SUCCEEDED = "succeeded"
STATUS_CANCELED = "canceled"
STATUS_FAILED = "failed"

USER_RECONCILE_LIMIT = 5
BACKGROUND_RECONCILE_LIMIT = 100

__all__ = [
    "PaymentGatewayError",
    "PaymentInitResult",
    "SettlementResult",
    "create_payment",
    "handle_webhook",
    "reconcile_user_payments",
    "reconcile_pending_payments",
    "notify_payment_status",
    "payment_watcher_task",
]


@dataclass
class PaymentInitResult:
    payment: Dict[str, Any]
    confirmation_url: Optional[str]


@dataclass
class SettlementResult:
    """Итог обработки платежа (для уведомления пользователя после коммита)"""
    payment_id: int
    user_id: int
    telegram_id: Optional[int]
    status: str
    status_changed: bool = False
    settled: bool = False
    amount: Optional[Decimal] = None
    plan_label: Optional[str] = None
    key_id: Optional[int] = None
    subscription_end: Optional[datetime] = None


def _format_amount(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(Decimal("0.01")))


def amount_matches(payment: Dict[str, Any], verified: Dict[str, Any]) -> bool:
    """
    Совпадает ли сумма/валюта подтверждённого платежа с сохранённой

    Сравнение через Decimal, валюта без учёта регистра. Пустая или
    нечисловая сумма - несовпадение.
    """
    verified_amount = verified.get("amount") or {}
    value = verified_amount.get("value")
    if value is None:
        return False

    currency = verified_amount.get("currency")
    if currency and payment.get("currency") and currency.upper() != payment["currency"].upper():
        return False

    try:
        return Decimal(str(payment["amount"])) == Decimal(str(value))
    except (InvalidOperation, TypeError):
        return False


def resolve_plan_days(payment: Dict[str, Any], verified: Dict[str, Any]) -> int:
    """Дни тарифа: из строки платежа, иначе из metadata платежа YooKassa"""
    if payment.get("plan_days"):
        return int(payment["plan_days"])
    metadata = verified.get("metadata") or {}
    return database.safe_int(metadata.get("plan_days"))


def _build_request(payment: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    metadata = {
        "user_id": user["id"],
        "telegram_id": user["telegram_id"],
        "plan_days": payment["plan_days"],
        "plan_label": payment["plan_label"],
        "payment_id": payment["id"],
    }
    if payment.get("key_id"):
        metadata["key_id"] = payment["key_id"]

    return {
        "amount": {
            "value": _format_amount(payment["amount"]),
            "currency": payment.get("currency") or DEFAULT_CURRENCY,
        },
        "capture": True,
        "confirmation": {
            "type": "redirect",
            "return_url": config.YOOKASSA_RETURN_URL or "https://t.me",
        },
        "description": payment["description"],
        "metadata": metadata,
    }


async def _set_status(payment_id: int, status: str) -> None:
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            "UPDATE payments SET status = $2, updated_at = $3 WHERE id = $1",
            payment_id, status, datetime.now()
        )


async def create_payment(user_id: int, plan_key: str, key_id: Optional[int] = None) -> PaymentInitResult:
    """
    Создать платёж за тариф

    Args:
        user_id: Внутренний ID пользователя
        plan_key: Ключ тарифа из config.PLANS
        key_id: Ключ, который продлевается (None - подписка на пользователя)

    Returns:
        PaymentInitResult со строкой платежа и ссылкой на оплату

    Raises:
        ValidationError: Неизвестный тариф, пользователь или ключ
        ConflictError: Ключ отозван
        PaymentGatewayError: YooKassa недоступна (строка помечается 'failed')
    """
    plan = config.PLANS.get(str(plan_key).strip())
    if plan is None:
        raise ValidationError(f"unknown plan {plan_key!r}", user_message="Неизвестный тариф.")

    user = await database.get_user(user_id)
    if user is None:
        raise ValidationError(f"user {user_id} not found", user_message="Пользователь не найден.")
    if key_id is not None:
        await vpn_keys.find_key_for_user(user_id, key_id)

    amount = Decimal(plan["price"]).quantize(Decimal("0.01"))
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await conn.fetchrow(
                """INSERT INTO payments (
                       user_id, key_id, amount, currency, status, provider,
                       description, plan_days, plan_label, idempotency_key
                   )
                   VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                   RETURNING *""",
                user_id, key_id, amount, DEFAULT_CURRENCY, STATUS_PENDING, PROVIDER,
                f"Подписка {plan['label']}", plan["days"], plan["label"], str(uuid.uuid4())
            )
    payment = dict(row)

    try:
        response = await yookassa_client.create_payment(
            _build_request(payment, user), payment["idempotency_key"]
        )
    except Exception as e:
        logger.error(f"payments create: GATEWAY_FAILED [payment_id={payment['id']}, user={user_id}, error={e}]")
        await _set_status(payment["id"], STATUS_FAILED)
        raise

    confirmation_url = (response.get("confirmation") or {}).get("confirmation_url")
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            """UPDATE payments
               SET provider_payment_id = $2, status = $3, confirmation_url = $4, updated_at = $5
               WHERE id = $1
               RETURNING *""",
            payment["id"], response["id"], response.get("status") or STATUS_PENDING,
            confirmation_url, datetime.now()
        )
    payment = dict(row)

    logger.info(
        f"payments create: SUCCESS [payment_id={payment['id']}, user={user_id}, plan={plan_key}, "
        f"key_id={key_id}, provider_id={payment['provider_payment_id']}]"
    )
    return PaymentInitResult(payment=payment, confirmation_url=confirmation_url)


async def _key_still_usable(conn: asyncpg.Connection, user_id: int, key_id: Optional[int]) -> bool:
    if key_id is None:
        return False
    row = await conn.fetchrow("SELECT user_id, is_revoked, status FROM vpn_keys WHERE id = $1", key_id)
    return bool(row) and row["user_id"] == user_id and not row["is_revoked"] and row["status"] != "REVOKED"


async def _settle(payment_id: int, verified: Dict[str, Any]) -> Optional[SettlementResult]:
    """
    Применить подтверждённое состояние платежа в одной транзакции

    Порядок блокировок: строка платежа, затем строка пользователя (внутри
    extend_subscription).
    """
    verified_status = (verified.get("status") or "").lower()
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await conn.fetchrow(
                """SELECT p.*, u.telegram_id
                   FROM payments p JOIN users u ON u.id = p.user_id
                   WHERE p.id = $1
                   FOR UPDATE OF p""",
                payment_id
            )
            if row is None:
                return None
            payment = dict(row)
            now = datetime.now()

            result = SettlementResult(
                payment_id=payment["id"],
                user_id=payment["user_id"],
                telegram_id=payment["telegram_id"],
                status=verified_status or payment["status"],
                status_changed=bool(verified_status) and verified_status != payment["status"],
                amount=payment["amount"],
                plan_label=payment["plan_label"],
                key_id=payment["key_id"],
            )

            if verified_status:
                await conn.execute(
                    "UPDATE payments SET status = $2, updated_at = $3 WHERE id = $1",
                    payment_id, verified_status, now
                )

            if verified_status != STATUS_SUCCEEDED:
                return result

            if payment["processed_at"] is not None:
                logger.info(f"payments settle: ALREADY_PROCESSED [payment_id={payment_id}]")
                return result

            if not amount_matches(payment, verified):
                logger.warning(
                    f"payments settle: AMOUNT_MISMATCH [payment_id={payment_id}, "
                    f"expected={payment['amount']} {payment['currency']}, got={verified.get('amount')}]"
                )
                return result

            days = resolve_plan_days(payment, verified)
            if days <= 0:
                logger.warning(f"payments settle: PLAN_DAYS_MISSING [payment_id={payment_id}]")
                return result

            if await _key_still_usable(conn, payment["user_id"], payment["key_id"]):
                subscription = await subscriptions.extend_subscription_for_key(
                    payment["user_id"], payment["key_id"], days, conn=conn
                )
            else:
                if payment["key_id"] is not None:
                    logger.warning(
                        f"payments settle: KEY_GONE [payment_id={payment_id}, key_id={payment['key_id']}], "
                        f"extending user subscription"
                    )
                    result.key_id = None
                subscription = await subscriptions.extend_subscription(payment["user_id"], days, conn=conn)

            await conn.execute(
                "UPDATE payments SET paid_at = $2, processed_at = $2, updated_at = $2 WHERE id = $1",
                payment_id, now
            )
            result.settled = True
            result.subscription_end = subscription["end_date"]

    logger.info(
        f"payments settle: SUCCESS [payment_id={payment_id}, user={result.user_id}, "
        f"days={days}, key_id={result.key_id}, end={result.subscription_end}]"
    )
    return result


async def _after_settlement(result: Optional[SettlementResult]) -> None:
    if result is None or not result.settled or result.key_id is not None:
        return
    try:
        await vpn_keys.ensure_key_for_active_subscription(result.user_id)
    except Exception as e:
        # Подписка уже зачислена; ключ привяжется при следующей выдаче/сверке
        logger.error(f"payments settle: KEY_ASSOCIATION_FAILED [payment_id={result.payment_id}, error={e}]")


async def _verify_and_settle(payment: Dict[str, Any]) -> Optional[SettlementResult]:
    verified = await yookassa_client.get_payment(payment["provider_payment_id"])
    result = await _settle(payment["id"], verified)
    await _after_settlement(result)
    return result


async def handle_webhook(event: Dict[str, Any]) -> Optional[SettlementResult]:
    """
    Обработать уведомление YooKassa

    Тело уведомления не считается источником правды: по id платежа его
    состояние запрашивается заново.

    Args:
        event: JSON уведомления ({"event": ..., "object": {"id": ...}})

    Returns:
        SettlementResult или None, если уведомление про неизвестный платёж

    Raises:
        PaymentGatewayError: Не удалось перепроверить платёж
    """
    payload = (event or {}).get("object") or {}
    provider_payment_id = payload.get("id")
    if not provider_payment_id or not str(provider_payment_id).strip():
        logger.warning("payments webhook: IGNORED [reason=no_payment_id]")
        return None

    pool = await database.get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow("SELECT * FROM payments WHERE provider_payment_id = $1", provider_payment_id)
    if row is None:
        logger.warning(f"payments webhook: UNKNOWN_PAYMENT [provider_id={provider_payment_id}]")
        return None

    logger.info(
        f"payments webhook: RECEIVED [payment_id={row['id']}, event={event.get('event')}, "
        f"provider_id={provider_payment_id}]"
    )
    return await _verify_and_settle(dict(row))


async def _reconcile(rows: List[asyncpg.Record]) -> List[SettlementResult]:
    results = []
    for row in rows:
        payment = dict(row)
        try:
            result = await _verify_and_settle(payment)
        except Exception as e:
            logger.warning(f"payments reconcile: FAILED [payment_id={payment['id']}, error={e}]")
            continue
        if result is not None:
            results.append(result)
    return results


async def reconcile_user_payments(user_id: int) -> List[SettlementResult]:
    """
    Сверить последние незачисленные платежи пользователя

    Нужна на случай потерянного webhook: смотрим последние
    USER_RECONCILE_LIMIT платежей за PAYMENT_RECONCILE_WINDOW_HOURS.
    """
    since = datetime.now() - timedelta(hours=config.PAYMENT_RECONCILE_WINDOW_HOURS)
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """SELECT * FROM payments
               WHERE user_id = $1 AND processed_at IS NULL
                 AND provider_payment_id IS NOT NULL AND status <> $2
                 AND created_at > $3
               ORDER BY created_at DESC
               LIMIT $4""",
            user_id, STATUS_FAILED, since, USER_RECONCILE_LIMIT
        )
    return await _reconcile(rows)


async def reconcile_pending_payments() -> List[SettlementResult]:
    """Фоновая сверка: самые старые незачисленные платежи в окне сверки"""
    since = datetime.now() - timedelta(hours=config.PAYMENT_RECONCILE_WINDOW_HOURS)
    pool = await database.get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """SELECT * FROM payments
               WHERE processed_at IS NULL AND provider_payment_id IS NOT NULL
                 AND status IN ('pending', 'waiting_for_capture', 'succeeded')
                 AND created_at > $1
               ORDER BY created_at ASC
               LIMIT $2""",
            since, BACKGROUND_RECONCILE_LIMIT
        )
    return await _reconcile(rows)


def build_status_text(result: SettlementResult) -> Optional[str]:
    """Текст уведомления о платеже или None, если уведомлять не о чем"""
    if result.settled:
        label = result.plan_label or "подписка"
        lines = ["✅ Оплата прошла успешно.", f"Тариф: {label}"]
        if result.amount is not None:
            lines.append(f"Сумма: {_format_amount(result.amount)}₽")
        until = result.subscription_end.strftime("%d.%m.%Y") if result.subscription_end else "-"
        lines.append(f"🗓 Действует до: {until}")
        return "\n".join(lines)
    if result.status == STATUS_CANCELED and result.status_changed:
        return "❌ Оплата не прошла или была отменена.\nВы можете попробовать снова."
    return None


async def notify_payment_status(bot: Bot, result: Optional[SettlementResult]) -> bool:
    """
    Уведомить пользователя о результате платежа (после коммита)

    Отключённым пользователям ничего не отправляется. Ошибка отправки
    только логируется.

    Returns:
        True если сообщение отправлено
    """
    if result is None or not result.telegram_id:
        return False
    text = build_status_text(result)
    if text is None:
        return False

    user = await database.get_user(result.user_id)
    if user is None or user.get("disabled"):
        return False

    try:
        await bot.send_message(result.telegram_id, text)
        logger.info(f"payments notify: SENT [payment_id={result.payment_id}, status={result.status}]")
        return True
    except TelegramForbiddenError:
        logger.info(f"User {result.telegram_id} blocked bot, skipping payment notification")
    except Exception as e:
        logger.warning(f"payments notify: FAILED [payment_id={result.payment_id}, error={e}]")
    return False


async def payment_watcher_task(bot: Bot):
    """
    Фоновая сверка платежей с YooKassa

    Запускается каждые PAYMENT_RECONCILE_INTERVAL_SECONDS
    """
    logger.info(f"Payment watcher task started (interval: {config.PAYMENT_RECONCILE_INTERVAL_SECONDS} seconds)")

    while True:
        try:
            await asyncio.sleep(config.PAYMENT_RECONCILE_INTERVAL_SECONDS)
            if not yookassa_client.is_enabled() or not database.ensure_db_ready():
                continue
            for result in await reconcile_pending_payments():
                await notify_payment_status(bot, result)
        except asyncio.CancelledError:
            logger.info("Payment watcher task cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in payment watcher task: {e}", exc_info=True)
            await asyncio.sleep(10)
