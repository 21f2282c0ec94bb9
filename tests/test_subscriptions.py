import pytest
from datetime import datetime, timedelta

import subscriptions


NOW = datetime(2026, 3, 1, 12, 0, 0)


def _fake_fetchrow(user=None):
    user = user if user is not None else {"id": 1, "disabled": False}

    async def fetchrow(query, *args):
        if "FOR UPDATE" in query:
            return user or None
        if query.lstrip().startswith("INSERT INTO subscriptions"):
            return {
                "id": 100,
                "user_id": args[0],
                "vpn_key_id": args[1],
                "start_date": args[2],
                "end_date": args[3],
            }
        return None

    return fetchrow


# get_days_left
def test_days_left_rounds_up_partial_day():
    sub = {"end_date": NOW + timedelta(hours=5)}
    assert subscriptions.get_days_left(sub, now=NOW) == 1


def test_days_left_exact_days():
    sub = {"end_date": NOW + timedelta(days=2)}
    assert subscriptions.get_days_left(sub, now=NOW) == 2


def test_days_left_just_over_a_day():
    sub = {"end_date": NOW + timedelta(days=1, minutes=1)}
    assert subscriptions.get_days_left(sub, now=NOW) == 2


def test_days_left_minute_before_and_after_end():
    end = NOW + timedelta(days=3)
    assert subscriptions.get_days_left({"end_date": end}, now=end - timedelta(minutes=1)) == 1
    assert subscriptions.get_days_left({"end_date": end}, now=end + timedelta(minutes=1)) == 0


def test_days_left_less_than_a_minute_is_zero():
    sub = {"end_date": NOW + timedelta(seconds=59)}
    assert subscriptions.get_days_left(sub, now=NOW) == 0


def test_days_left_expired_or_missing():
    assert subscriptions.get_days_left({"end_date": NOW - timedelta(days=1)}, now=NOW) == 0
    assert subscriptions.get_days_left(None, now=NOW) == 0
    assert subscriptions.get_days_left({}, now=NOW) == 0


# extend_subscription
@pytest.mark.asyncio
async def test_extend_without_active_starts_now(conn):
    conn.fetchrow.side_effect = _fake_fetchrow()
    conn.fetchval.return_value = None

    before = datetime.now()
    sub = await subscriptions.extend_subscription(1, 30)

    assert sub["start_date"] >= before
    assert sub["end_date"] - sub["start_date"] == timedelta(days=30)
    assert sub["vpn_key_id"] is None


@pytest.mark.asyncio
async def test_extend_chains_after_active_window(conn):
    current_end = datetime.now() + timedelta(days=10)
    conn.fetchrow.side_effect = _fake_fetchrow()
    conn.fetchval.return_value = current_end

    sub = await subscriptions.extend_subscription(1, 30)

    assert sub["start_date"] == current_end
    assert sub["end_date"] == current_end + timedelta(days=30)


@pytest.mark.asyncio
async def test_consecutive_extensions_add_up(conn):
    # Строки подписок в памяти: MAX(end_date) видит предыдущее продление
    original_end = datetime.now() + timedelta(days=4)
    rows = [{"user_id": 1, "end_date": original_end}]
    fetchrow = _fake_fetchrow()

    async def insert(query, *args):
        row = await fetchrow(query, *args)
        if row and "end_date" in row:
            rows.append(row)
        return row

    async def max_end(query, user_id, now):
        ends = [r["end_date"] for r in rows if r["user_id"] == user_id and r["end_date"] > now]
        return max(ends) if ends else None

    conn.fetchrow.side_effect = insert
    conn.fetchval.side_effect = max_end

    await subscriptions.extend_subscription(1, 30)
    second = await subscriptions.extend_subscription(1, 7)

    assert second["end_date"] == original_end + timedelta(days=37)
    assert len(rows) == 3


@pytest.mark.asyncio
async def test_extend_rejects_non_positive_days(conn):
    with pytest.raises(ValueError):
        await subscriptions.extend_subscription(1, 0)
    conn.fetchrow.assert_not_awaited()


@pytest.mark.asyncio
async def test_extend_unknown_user(conn):
    conn.fetchrow.side_effect = _fake_fetchrow(user={})
    with pytest.raises(ValueError):
        await subscriptions.extend_subscription(999, 30)


@pytest.mark.asyncio
async def test_extend_for_key_binds_row_to_key(conn):
    current_end = datetime.now() + timedelta(days=3)
    conn.fetchrow.side_effect = _fake_fetchrow()
    conn.fetchval.side_effect = [1, current_end]

    sub = await subscriptions.extend_subscription_for_key(1, 55, 30)

    assert sub["vpn_key_id"] == 55
    assert sub["start_date"] == current_end


@pytest.mark.asyncio
async def test_extend_for_foreign_key_rejected(conn):
    conn.fetchrow.side_effect = _fake_fetchrow()
    conn.fetchval.return_value = 2

    with pytest.raises(ValueError):
        await subscriptions.extend_subscription_for_key(1, 55, 30)


# revoke
@pytest.mark.asyncio
async def test_revoke_returns_latest_row(conn):
    conn.fetch.return_value = [
        {"id": 4, "end_date": NOW},
        {"id": 9, "end_date": NOW},
    ]
    revoked = await subscriptions.revoke_active_subscription(1)
    assert revoked["id"] == 9


@pytest.mark.asyncio
async def test_revoke_without_active(conn):
    conn.fetch.return_value = []
    assert await subscriptions.revoke_active_subscription(1) is None


@pytest.mark.asyncio
async def test_mark_notified_rejects_unknown_column(conn):
    with pytest.raises(ValueError):
        await subscriptions.mark_notified(1, "end_date")
    conn.execute.assert_not_awaited()
