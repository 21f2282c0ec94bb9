from datetime import datetime, timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock

import reminders


NOW = datetime(2026, 3, 1, 12, 0, 0)


def _subscription(sub_id, days, **extra):
    subscription = {
        "id": sub_id,
        "user_id": sub_id,
        "telegram_id": 1000 + sub_id,
        "disabled": False,
        "end_date": NOW + days,
        "notified_two_days_at": None,
        "notified_one_day_at": None,
    }
    subscription.update(extra)
    return subscription


@pytest.fixture
def bot():
    bot = MagicMock()
    bot.send_message = AsyncMock()
    return bot


@pytest.fixture
def mark(mocker):
    return mocker.patch("subscriptions.mark_notified", new_callable=AsyncMock)


def _expiring(mocker, rows):
    return mocker.patch("subscriptions.get_expiring_subscriptions", new_callable=AsyncMock, return_value=rows)


def test_reminder_text():
    text = reminders.build_reminder_text(reminders.ONE_DAY_TITLE, datetime(2026, 3, 2, 10, 0))
    assert text.splitlines() == [
        "⏰ Подписка истекает завтра.",
        "🗓 Действует до: 02.03.2026",
        "Продлите в разделе «Мои ключи».",
    ]


@pytest.mark.asyncio
async def test_two_day_and_one_day_reminders(mocker, bot, mark):
    _expiring(mocker, [
        _subscription(1, timedelta(days=1, hours=20)),
        _subscription(2, timedelta(hours=10)),
        _subscription(3, timedelta(days=1, hours=20), notified_two_days_at=NOW - timedelta(hours=1)),
    ])

    sent = await reminders.notify_expiring_subscriptions(bot, now=NOW)

    assert sent == 2
    texts = {c.args[0]: c.args[1] for c in bot.send_message.await_args_list}
    assert texts[1001].startswith(reminders.TWO_DAYS_TITLE)
    assert texts[1002].startswith(reminders.ONE_DAY_TITLE)
    assert [c.args for c in mark.await_args_list] == [(1, "notified_two_days_at"), (2, "notified_one_day_at")]


@pytest.mark.asyncio
async def test_failed_send_is_not_stamped(mocker, bot, mark):
    _expiring(mocker, [_subscription(1, timedelta(hours=10))])
    bot.send_message.side_effect = RuntimeError("network")

    assert await reminders.notify_expiring_subscriptions(bot, now=NOW) == 0
    mark.assert_not_awaited()


@pytest.mark.asyncio
async def test_disabled_users_are_skipped(mocker, bot, mark):
    _expiring(mocker, [_subscription(1, timedelta(hours=10), disabled=True)])

    assert await reminders.notify_expiring_subscriptions(bot, now=NOW) == 0
    bot.send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_stamp_failure_still_counts_as_sent(mocker, bot, mark):
    _expiring(mocker, [_subscription(1, timedelta(hours=10))])
    mark.side_effect = RuntimeError("db down")

    assert await reminders.notify_expiring_subscriptions(bot, now=NOW) == 1
