"""
Административные действия

Каждое действие - отдельный dataclass. parse_admin_input собирает действие из
вида (kind) и введённого текста, handle_admin_action выполняет его и
возвращает ответ для администратора. Состояние "какое действие ждёт ввода"
хранится в FSM (Redis), см. states.AdminInput.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Callable, Awaitable, Union

import database
import subscriptions
import vpn_keys
from errors import ValidationError

logger = logging.getLogger(__name__)

KIND_ADD_SUBSCRIPTION = "add_subscription"
KIND_CHECK_SUBSCRIPTION = "check_subscription"
KIND_REVOKE_SUBSCRIPTION = "revoke_subscription"
KIND_DISABLE_USER = "disable_user"
KIND_ENABLE_USER = "enable_user"
KIND_PURGE_REVOKED_KEYS = "purge_revoked_keys"
KIND_PURGE_DISABLED_USERS = "purge_disabled_users"

# Подсказки, которые бот показывает при старте действия
PROMPTS: Dict[str, str] = {
    KIND_ADD_SUBSCRIPTION: "Введите @username и число дней, например: @user 30",
    KIND_CHECK_SUBSCRIPTION: "Введите @username для проверки подписки.",
    KIND_REVOKE_SUBSCRIPTION: "Введите @username, чтобы отключить подписку.",
    KIND_DISABLE_USER: "Введите @username, чтобы отключить пользователя.",
    KIND_ENABLE_USER: "Введите @username, чтобы включить пользователя.",
}

# Действия без ввода выполняются сразу
IMMEDIATE_KINDS = (KIND_PURGE_REVOKED_KEYS, KIND_PURGE_DISABLED_USERS)

USER_NOT_FOUND_TEXT = "Пользователь не найден. Он должен сначала написать /start."


@dataclass(frozen=True)
class AddSubscription:
    username: str
    days: int


@dataclass(frozen=True)
class CheckSubscription:
    username: str


@dataclass(frozen=True)
class RevokeSubscription:
    username: str


@dataclass(frozen=True)
class DisableUser:
    username: str


@dataclass(frozen=True)
class EnableUser:
    username: str


@dataclass(frozen=True)
class PurgeRevokedKeys:
    pass


@dataclass(frozen=True)
class PurgeDisabledUsers:
    pass


AdminAction = Union[
    AddSubscription, CheckSubscription, RevokeSubscription,
    DisableUser, EnableUser, PurgeRevokedKeys, PurgeDisabledUsers,
]


def normalize_identifier(raw: Optional[str]) -> Optional[str]:
    """'@User' -> 'User'; пустая строка -> None"""
    if raw is None:
        return None
    value = raw.strip()
    if value.startswith("@"):
        value = value[1:]
    return value or None


def _first_identifier(text: Optional[str]) -> str:
    parts = (text or "").split()
    identifier = normalize_identifier(parts[0]) if parts else None
    if identifier is None:
        raise ValidationError("admin input: no username", user_message="Нужно указать @username.")
    return identifier


def parse_admin_input(kind: str, text: Optional[str] = None) -> AdminAction:
    """
    Собрать действие из введённого текста

    Args:
        kind: Вид действия (KIND_*)
        text: Ввод администратора

    Returns:
        Экземпляр действия

    Raises:
        ValidationError: Неизвестный вид или некорректный ввод (user_message - подсказка)
    """
    if kind == KIND_ADD_SUBSCRIPTION:
        parts = (text or "").split()
        if len(parts) < 2:
            raise ValidationError(
                "admin input: username and days required",
                user_message="Нужно указать @username и число дней, например: @user 30",
            )
        username = normalize_identifier(parts[0])
        try:
            days = int(parts[1])
        except ValueError:
            days = 0
        if username is None or days <= 0:
            raise ValidationError("admin input: bad format", user_message="Некорректный формат. Пример: @user 30")
        return AddSubscription(username=username, days=days)

    if kind == KIND_CHECK_SUBSCRIPTION:
        return CheckSubscription(username=_first_identifier(text))
    if kind == KIND_REVOKE_SUBSCRIPTION:
        return RevokeSubscription(username=_first_identifier(text))
    if kind == KIND_DISABLE_USER:
        return DisableUser(username=_first_identifier(text))
    if kind == KIND_ENABLE_USER:
        return EnableUser(username=_first_identifier(text))
    if kind == KIND_PURGE_REVOKED_KEYS:
        return PurgeRevokedKeys()
    if kind == KIND_PURGE_DISABLED_USERS:
        return PurgeDisabledUsers()

    raise ValidationError(f"admin input: unknown kind {kind!r}", user_message="Неизвестное действие.")


async def find_user(identifier: str) -> Optional[Dict[str, Any]]:
    """Пользователь по Telegram ID (только цифры) или по username"""
    if identifier.isdigit():
        return await database.get_user_by_telegram_id(int(identifier))
    return await database.find_user_by_username(identifier)


async def _add_subscription(action: AddSubscription) -> str:
    user = await find_user(action.username)
    if user is None:
        return USER_NOT_FOUND_TEXT
    subscription = await subscriptions.extend_subscription(user["id"], action.days)
    logger.info(f"admin add_subscription: SUCCESS [user={user['id']}, days={action.days}]")
    try:
        await vpn_keys.ensure_key_for_active_subscription(user["id"])
    except Exception as e:
        logger.warning(f"admin add_subscription: KEY_ASSOCIATION_FAILED [user={user['id']}, error={e}]")
    return f"✅ Подписка выдана до: {subscription['end_date'].strftime('%d.%m.%Y')}"


async def _check_subscription(action: CheckSubscription) -> str:
    user = await find_user(action.username)
    if user is None:
        return USER_NOT_FOUND_TEXT
    subscription = await subscriptions.get_active_subscription(user["id"])
    if subscription is None:
        return "❌ Активной подписки нет."
    days_left = subscriptions.get_days_left(subscription)
    return f"✅ Активна. Осталось: {days_left} дн. До: {subscription['end_date'].strftime('%d.%m.%Y')}"


async def _revoke_subscription(action: RevokeSubscription) -> str:
    user = await find_user(action.username)
    if user is None:
        return USER_NOT_FOUND_TEXT
    revoked = await subscriptions.revoke_active_subscription(user["id"])
    if revoked is None:
        return "Активной подписки не было."
    logger.info(f"admin revoke_subscription: SUCCESS [user={user['id']}]")
    return "🛑 Подписка отключена."


async def _disable_user(action: DisableUser) -> str:
    user = await find_user(action.username)
    if user is None:
        return USER_NOT_FOUND_TEXT

    pool = await database.get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            await database.lock_user(conn, user["id"])
            await database.set_user_disabled(user["id"], True, conn=conn)
            ended = await subscriptions.revoke_all_active_subscriptions(user["id"], conn=conn)

    # Ключи отзываются локально в любом случае, панель - best-effort
    revoked = await vpn_keys.revoke_all_keys(user["id"])
    logger.info(f"admin disable_user: SUCCESS [user={user['id']}, subscriptions={ended}, keys={revoked}]")
    return "🚫 Пользователь отключён."


async def _enable_user(action: EnableUser) -> str:
    user = await find_user(action.username)
    if user is None:
        return USER_NOT_FOUND_TEXT
    await database.set_user_disabled(user["id"], False)
    logger.info(f"admin enable_user: SUCCESS [user={user['id']}]")
    return "✅ Пользователь включён."


async def _purge_revoked_keys(action: PurgeRevokedKeys) -> str:
    removed = await vpn_keys.purge_revoked_keys()
    return f"🧹 Удалено отозванных ключей: {removed}"


async def _purge_disabled_users(action: PurgeDisabledUsers) -> str:
    removed = await vpn_keys.purge_disabled_users()
    return f"🧹 Удалено отключённых пользователей: {removed}"


_HANDLERS: Dict[type, Callable[[Any], Awaitable[str]]] = {
    AddSubscription: _add_subscription,
    CheckSubscription: _check_subscription,
    RevokeSubscription: _revoke_subscription,
    DisableUser: _disable_user,
    EnableUser: _enable_user,
    PurgeRevokedKeys: _purge_revoked_keys,
    PurgeDisabledUsers: _purge_disabled_users,
}


async def handle_admin_action(action: AdminAction) -> str:
    """
    Выполнить административное действие

    Returns:
        Текст ответа администратору
    """
    handler = _HANDLERS.get(type(action))
    if handler is None:
        raise ValidationError(f"unsupported admin action {action!r}", user_message="Неизвестное действие.")
    return await handler(action)
