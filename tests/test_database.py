import pytest
from unittest.mock import AsyncMock
import database


# Test Helper Functions
def test_safe_int():
    assert database.safe_int(10) == 10
    assert database.safe_int("10") == 10
    assert database.safe_int(None) == 0
    assert database.safe_int("invalid") == 0


def test_affected_rows():
    assert database.affected_rows("UPDATE 3") == 3
    assert database.affected_rows("DELETE 0") == 0
    assert database.affected_rows("INSERT 0 1") == 1
    assert database.affected_rows(None) == 0


def test_normalize_username():
    assert database.normalize_username("@User") == "user"
    assert database.normalize_username("  name ") == "name"
    assert database.normalize_username("@") is None
    assert database.normalize_username(None) is None


def test_ensure_db_ready_follows_flag(monkeypatch):
    monkeypatch.setattr(database, "DB_READY", False)
    assert database.ensure_db_ready() is False
    monkeypatch.setattr(database, "DB_READY", True)
    assert database.ensure_db_ready() is True


# Mock DB Logic
@pytest.mark.asyncio
async def test_register_new_user_with_referrer(conn):
    conn.fetchrow.side_effect = [
        None,
        {"id": 2, "telegram_id": 200, "username": "bob", "referral_code": "200", "referred_by": 1},
    ]
    conn.fetchval.return_value = 1

    user = await database.register_or_update_user(200, "bob", referrer_telegram_id=100)

    assert user["id"] == 2
    conn.fetchval.assert_awaited_once_with("SELECT id FROM users WHERE telegram_id = $1", 100)
    insert_args = conn.fetchrow.await_args_list[1].args
    assert insert_args[1:] == (200, "bob", "200", 1)


@pytest.mark.asyncio
async def test_register_ignores_self_referral(conn):
    conn.fetchrow.side_effect = [
        None,
        {"id": 3, "telegram_id": 300, "username": None, "referral_code": "300", "referred_by": None},
    ]

    await database.register_or_update_user(300, None, referrer_telegram_id=300)

    conn.fetchval.assert_not_awaited()
    assert conn.fetchrow.await_args_list[1].args[-1] is None


@pytest.mark.asyncio
async def test_register_existing_user_updates_username(conn):
    conn.fetchrow.side_effect = [
        {"id": 5, "telegram_id": 500, "username": "old"},
        {"id": 5, "telegram_id": 500, "username": "new"},
    ]

    user = await database.register_or_update_user(500, "new", referrer_telegram_id=100)

    assert user["username"] == "new"
    assert conn.fetchrow.await_count == 2
    conn.fetchval.assert_not_awaited()


@pytest.mark.asyncio
async def test_set_user_disabled_reports_missing_user(conn):
    conn.execute.return_value = "UPDATE 0"
    assert await database.set_user_disabled(42, True) is False

    conn.execute.return_value = "UPDATE 1"
    assert await database.set_user_disabled(42, True) is True
    conn.execute.assert_awaited_with("UPDATE users SET disabled = $1 WHERE id = $2", True, 42)


@pytest.mark.asyncio
async def test_delete_users_empty_list_skips_db(mocker):
    get_pool = mocker.patch("database.get_pool", new_callable=AsyncMock)
    assert await database.delete_users([]) == 0
    get_pool.assert_not_awaited()


@pytest.mark.asyncio
async def test_init_db_sets_status(conn, mocker, monkeypatch):
    monkeypatch.setattr(database, "DB_READY", False)
    monkeypatch.setattr(database, "DB_INIT_STATUS", database.DBInitStatus.PENDING)
    mocker.patch("migrations.run_migrations_safe", new_callable=AsyncMock, return_value=False)

    assert await database.init_db() is False
    assert database.DB_INIT_STATUS == database.DBInitStatus.FAILED
    assert database.DB_READY is False
