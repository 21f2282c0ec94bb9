"""Напоминания об окончании подписки (за 2 дня и за 1 день)"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramForbiddenError

import config
import database
import subscriptions

logger = logging.getLogger(__name__)

TWO_DAYS_TITLE = "⏰ Подписка истекает через 2 дня."
ONE_DAY_TITLE = "⏰ Подписка истекает завтра."


def build_reminder_text(title: str, end_date: datetime) -> str:
    return (
        f"{title}\n"
        f"🗓 Действует до: {end_date.strftime('%d.%m.%Y')}\n"
        "Продлите в разделе «Мои ключи»."
    )


async def _send(bot: Bot, telegram_id: int, text: str) -> bool:
    try:
        await bot.send_message(telegram_id, text)
        return True
    except TelegramForbiddenError:
        logger.info(f"User {telegram_id} blocked bot, skipping reminder")
    except Exception as e:
        logger.warning(f"reminders send: FAILED [telegram_id={telegram_id}, error={e}]")
    return False


async def notify_expiring_subscriptions(bot: Bot, now: Optional[datetime] = None) -> int:
    """
    Разослать напоминания об окончании подписки

    days_left == 2 и notified_two_days_at пуст - напоминание "через 2 дня",
    days_left == 1 и notified_one_day_at пуст - "завтра". Отметка ставится
    только после успешной отправки, поэтому неудачная попытка повторится
    на следующем проходе.

    Returns:
        Количество отправленных напоминаний
    """
    sent = 0
    for subscription in await subscriptions.get_expiring_subscriptions(within_days=2):
        if subscription.get("disabled") or not subscription.get("telegram_id"):
            continue

        days_left = subscriptions.get_days_left(subscription, now=now)
        if days_left == 2 and subscription.get("notified_two_days_at") is None:
            title, column = TWO_DAYS_TITLE, "notified_two_days_at"
        elif days_left == 1 and subscription.get("notified_one_day_at") is None:
            title, column = ONE_DAY_TITLE, "notified_one_day_at"
        else:
            continue

        text = build_reminder_text(title, subscription["end_date"])
        if not await _send(bot, subscription["telegram_id"], text):
            continue

        try:
            await subscriptions.mark_notified(subscription["id"], column)
        except Exception as e:
            # Напоминание уже ушло, повтор возможен на следующем проходе
            logger.error(f"reminders mark: FAILED [subscription_id={subscription['id']}, error={e}]")
        sent += 1
        logger.info(
            f"reminders send: SUCCESS [subscription_id={subscription['id']}, "
            f"user={subscription['user_id']}, days_left={days_left}]"
        )
    return sent


async def reminders_task(bot: Bot):
    """Фоновая задача напоминаний (каждые NOTIFY_INTERVAL_SECONDS)"""
    logger.info(f"Reminders task started (interval: {config.NOTIFY_INTERVAL_SECONDS} seconds)")

    while True:
        try:
            await asyncio.sleep(config.NOTIFY_INTERVAL_SECONDS)
            if not database.ensure_db_ready():
                continue
            await notify_expiring_subscriptions(bot)
        except asyncio.CancelledError:
            logger.info("Reminders task cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in reminders task: {e}", exc_info=True)
            await asyncio.sleep(10)
