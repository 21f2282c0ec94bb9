import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock

import config
import guard


@pytest.fixture
def redis_mock(mocker):
    client = AsyncMock()
    mocker.patch("redis_client.get_redis_client", new_callable=AsyncMock, return_value=client)
    return client


def test_action_key():
    assert guard.action_key("issue", 7) == "idemp:issue:7"
    assert guard.action_key("replace", 7, 12) == "idemp:replace:7:12"


@pytest.mark.asyncio
async def test_try_acquire_uses_set_nx_ex(redis_mock):
    redis_mock.set.return_value = True
    assert await guard.try_acquire("idemp:issue:7", 30) is True

    args, kwargs = redis_mock.set.await_args
    assert args[0] == "idemp:issue:7"
    assert kwargs == {"nx": True, "ex": 30}


@pytest.mark.asyncio
async def test_try_acquire_second_call_loses(redis_mock):
    redis_mock.set.side_effect = [True, None]
    assert await guard.try_acquire("idemp:buy:1") is True
    assert await guard.try_acquire("idemp:buy:1") is False
    assert redis_mock.set.await_args.kwargs["ex"] == config.IDEMPOTENCY_TTL_SECONDS


@pytest.mark.asyncio
async def test_allow_within_and_over_limit(redis_mock):
    redis_mock.eval.return_value = config.RATE_LIMIT_MAX_REQUESTS
    assert await guard.allow("rl:user:1") is True

    redis_mock.eval.return_value = config.RATE_LIMIT_MAX_REQUESTS + 1
    assert await guard.allow("rl:user:1") is False

    args = redis_mock.eval.await_args.args
    assert args[1] == 1
    assert args[2] == "rl:user:1"
    assert args[3] == str(config.RATE_LIMIT_WINDOW_SECONDS * 1000)


@pytest.mark.asyncio
async def test_acquire_action_fails_open_on_redis_error(mocker):
    mocker.patch("redis_client.get_redis_client", new_callable=AsyncMock, side_effect=ConnectionError("down"))
    assert await guard.acquire_action("issue", 1) is True


@pytest.mark.asyncio
async def test_middleware_drops_duplicate_update(redis_mock):
    redis_mock.eval.return_value = 1
    redis_mock.set.side_effect = [True, None]
    handler = AsyncMock(return_value="handled")
    middleware = guard.UpdateGuardMiddleware()
    event = SimpleNamespace(update_id=555)
    data = {"event_from_user": SimpleNamespace(id=10)}

    assert await middleware(handler, event, data) == "handled"
    assert await middleware(handler, event, data) is None
    handler.assert_awaited_once()


@pytest.mark.asyncio
async def test_middleware_rate_limits_user(redis_mock):
    redis_mock.eval.return_value = config.RATE_LIMIT_MAX_REQUESTS + 1
    handler = AsyncMock()
    middleware = guard.UpdateGuardMiddleware()

    result = await middleware(handler, SimpleNamespace(update_id=1), {"event_from_user": SimpleNamespace(id=10)})

    assert result is None
    handler.assert_not_awaited()
    redis_mock.set.assert_not_awaited()
