"""
Команды бота

Обработчики только разбирают аргументы и передают вызов в сервисные модули
(vpn_keys, payment_service, admin_actions). Ошибки сервиса показываются
через user_message, внутренние детали остаются в логах.
"""
import logging
from typing import Optional, Dict, Any

from aiogram import Router, F, Bot
from aiogram.filters import Command, CommandObject, StateFilter
from aiogram.fsm.context import FSMContext
from aiogram.types import Message

import admin_actions
import config
import database
import guard
import localization
import payment_service
import subscriptions
import vpn_keys
import vpn_utils
from errors import ConflictError, VPNServiceError
from states import AdminInput

logger = logging.getLogger(__name__)

router = Router()

LANGUAGE = "ru"

# Команда администратора -> вид действия
ADMIN_COMMANDS: Dict[str, str] = {
    "add_sub": admin_actions.KIND_ADD_SUBSCRIPTION,
    "check_sub": admin_actions.KIND_CHECK_SUBSCRIPTION,
    "revoke_sub": admin_actions.KIND_REVOKE_SUBSCRIPTION,
    "disable_user": admin_actions.KIND_DISABLE_USER,
    "enable_user": admin_actions.KIND_ENABLE_USER,
    "purge_revoked": admin_actions.KIND_PURGE_REVOKED_KEYS,
    "purge_disabled": admin_actions.KIND_PURGE_DISABLED_USERS,
}


def _t(key: str, **kwargs) -> str:
    return localization.get_text(LANGUAGE, key, **kwargs)


def is_admin(telegram_id: int) -> bool:
    return telegram_id in config.ADMIN_TELEGRAM_IDS


def parse_key_id(command: CommandObject) -> Optional[int]:
    """Первый аргумент команды как ID ключа (или None)"""
    if not command.args:
        return None
    token = command.args.split()[0]
    return int(token) if token.isdigit() else None


def parse_referrer(payload: Optional[str]) -> Optional[int]:
    """Реферальный payload /start = Telegram ID пригласившего"""
    if not payload:
        return None
    token = payload.strip()
    if token.startswith("ref_"):
        token = token[4:]
    return int(token) if token.isdigit() else None


async def _answer_error(message: Message, error: Exception, op: str) -> None:
    if isinstance(error, VPNServiceError):
        logger.info(f"handlers {op}: REJECTED [telegram_id={message.from_user.id}, error={error}]")
        await message.answer(error.user_message)
        return
    logger.error(f"handlers {op}: FAILED [telegram_id={message.from_user.id}, error={error}]", exc_info=True)
    await message.answer(_t("error_generic"))


async def _current_user(message: Message) -> Optional[Dict[str, Any]]:
    """Пользователь сообщения; None если БД не готова или пользователь отключён"""
    if not database.DB_READY:
        await message.answer(_t("service_unavailable"))
        return None
    user = await database.register_or_update_user(message.from_user.id, message.from_user.username)
    if user.get("disabled"):
        await message.answer(_t("user_disabled"))
        return None
    return user


async def _acquire(message: Message, action: str, user_id: int, target: Optional[Any] = None) -> bool:
    if await guard.acquire_action(action, user_id, target):
        return True
    await message.answer(guard.IN_PROGRESS_TEXT)
    return False


def _format_key(key: Dict[str, Any]) -> str:
    if key["status"] == vpn_keys.STATUS_ACTIVE and not vpn_utils.is_placeholder(key["key_value"]):
        return _t("key_value", id=key["id"], value=key["key_value"])
    return _t("key_pending", id=key["id"])


@router.message(Command("start"))
async def cmd_start(message: Message, command: CommandObject):
    """Обработчик команды /start"""
    if not database.DB_READY:
        await message.answer(_t("service_unavailable"))
        return
    user = await database.register_or_update_user(
        message.from_user.id,
        message.from_user.username,
        referrer_telegram_id=parse_referrer(command.args),
    )
    if user.get("disabled"):
        await message.answer(_t("user_disabled"))
        return
    await message.answer(_t("welcome"))


@router.message(Command("status"))
async def cmd_status(message: Message):
    user = await _current_user(message)
    if user is None:
        return
    subscription = await subscriptions.get_active_subscription(user["id"])
    if subscription is None:
        last = await subscriptions.get_last_subscription(user["id"])
        if last is None:
            await message.answer(_t("subscription_none"))
        else:
            await message.answer(_t("subscription_expired", date=last["end_date"].strftime("%d.%m.%Y")))
        return
    await message.answer(_t(
        "subscription_active",
        days=subscriptions.get_days_left(subscription),
        date=subscription["end_date"].strftime("%d.%m.%Y"),
    ))


@router.message(Command("buy"))
async def cmd_buy(message: Message, command: CommandObject):
    """/buy - список тарифов; /buy <тариф> [id ключа] - создать платёж"""
    user = await _current_user(message)
    if user is None:
        return

    args = (command.args or "").split()
    if not args:
        lines = [_t("plans_header")]
        for plan_key, plan in config.PLANS.items():
            lines.append(_t("plan_line", key=plan_key, label=plan["label"], price=plan["price"], days=plan["days"]))
        lines.append(_t("plan_key_hint"))
        await message.answer("\n".join(lines))
        return

    if not config.PAYMENTS_ENABLED:
        await message.answer(_t("payments_disabled"))
        return

    plan_key = args[0]
    key_id = int(args[1]) if len(args) > 1 and args[1].isdigit() else None
    if not await _acquire(message, "buy", user["id"], f"{plan_key}:{key_id or '-'}"):
        return

    try:
        result = await payment_service.create_payment(user["id"], plan_key, key_id=key_id)
    except Exception as e:
        await _answer_error(message, e, "buy")
        return

    if not result.confirmation_url:
        await message.answer(_t("payment_no_url"))
        return
    payment = result.payment
    await message.answer(_t(
        "payment_created",
        amount=payment["amount"],
        label=payment["plan_label"],
        url=result.confirmation_url,
    ))


@router.message(Command("check"))
async def cmd_check_payments(message: Message, bot: Bot):
    """Сверить незачисленные платежи (если webhook потерялся)"""
    user = await _current_user(message)
    if user is None:
        return
    if not await _acquire(message, "check_payments", user["id"]):
        return
    try:
        results = await payment_service.reconcile_user_payments(user["id"])
    except Exception as e:
        await _answer_error(message, e, "check_payments")
        return

    notified = 0
    for result in results:
        if await payment_service.notify_payment_status(bot, result):
            notified += 1
    if not notified:
        await message.answer(_t("payment_check_none"))


@router.message(Command("keys"))
async def cmd_keys(message: Message):
    user = await _current_user(message)
    if user is None:
        return
    keys = await vpn_keys.list_user_keys(user["id"])
    if not keys:
        if await subscriptions.has_active_subscription(user["id"]):
            await message.answer(_t("keys_empty"))
        else:
            await message.answer(_t("subscription_none"))
        return

    status_names = {
        vpn_keys.STATUS_ACTIVE: _t("status_active"),
        vpn_keys.STATUS_PENDING: _t("status_pending"),
        vpn_keys.STATUS_FAILED: _t("status_failed"),
    }
    lines = [_t("keys_header")]
    for key in keys:
        until = key["active_until"].strftime("%d.%m.%Y") if key.get("active_until") else "-"
        lines.append(_t("key_line", id=key["id"], status=status_names.get(key["status"], key["status"]), until=until))
    lines.append(_t("keys_footer"))
    await message.answer("\n".join(lines))


@router.message(Command("newkey"))
async def cmd_new_key(message: Message):
    user = await _current_user(message)
    if user is None:
        return
    if not await _acquire(message, "issue", user["id"]):
        return
    try:
        key = await vpn_keys.issue_key(user["id"])
    except Exception as e:
        await _answer_error(message, e, "issue")
        return
    await message.answer(_format_key(key))


@router.message(Command("key"))
async def cmd_key(message: Message, command: CommandObject):
    user = await _current_user(message)
    if user is None:
        return
    key_id = parse_key_id(command)
    if key_id is None:
        await message.answer(_t("key_id_required", example="/key 1"))
        return
    try:
        key = await vpn_keys.get_key_for_user(user["id"], key_id)
    except ConflictError as e:
        # Ключ свой, но срок вышел: подсказать продление именно этого ключа
        if e.user_message == vpn_keys.NO_ACTIVE_SUBSCRIPTION_TEXT:
            last = await subscriptions.get_last_subscription_for_key(key_id)
            if last is not None:
                await message.answer(_t("key_expired", id=key_id, date=last["end_date"].strftime("%d.%m.%Y")))
                return
        await _answer_error(message, e, "get_key")
        return
    except Exception as e:
        await _answer_error(message, e, "get_key")
        return
    await message.answer(_format_key(key))


@router.message(Command("replace"))
async def cmd_replace(message: Message, command: CommandObject):
    user = await _current_user(message)
    if user is None:
        return
    key_id = parse_key_id(command)
    if key_id is None:
        await message.answer(_t("key_id_required", example="/replace 1"))
        return
    if not await _acquire(message, "replace", user["id"], key_id):
        return
    try:
        key = await vpn_keys.replace_key(user["id"], key_id)
    except Exception as e:
        await _answer_error(message, e, "replace")
        return
    if key["status"] == vpn_keys.STATUS_ACTIVE:
        await message.answer(_t("key_replaced", id=key["id"], value=key["key_value"]))
    else:
        await message.answer(_t("key_pending", id=key["id"]))


@router.message(Command("delete"))
async def cmd_delete(message: Message, command: CommandObject):
    user = await _current_user(message)
    if user is None:
        return
    key_id = parse_key_id(command)
    if key_id is None:
        await message.answer(_t("key_id_required", example="/delete 1"))
        return
    if not await _acquire(message, "delete", user["id"], key_id):
        return
    try:
        await vpn_keys.delete_key(user["id"], key_id)
    except Exception as e:
        await _answer_error(message, e, "delete")
        return
    await message.answer(_t("key_deleted", id=key_id))


@router.message(Command("cancel"))
async def cmd_cancel(message: Message, state: FSMContext):
    if await state.get_state() is None:
        await message.answer(_t("nothing_to_cancel"))
        return
    await state.clear()
    await message.answer(_t("cancelled"))


# ====================================================================================
# ADMIN
# ====================================================================================

@router.message(Command("admin"))
async def cmd_admin(message: Message):
    if not is_admin(message.from_user.id):
        await message.answer(_t("admin_only"))
        return
    await message.answer(_t("admin_menu"))


@router.message(Command(*ADMIN_COMMANDS.keys()))
async def cmd_admin_action(message: Message, command: CommandObject, state: FSMContext):
    """
    Старт административного действия

    Очистка выполняется сразу. Для остальных действий ожидаемый ввод
    запоминается в FSM; если аргументы переданы прямо в команде, действие
    выполняется без второго шага.
    """
    if not is_admin(message.from_user.id):
        await message.answer(_t("admin_only"))
        return

    kind = ADMIN_COMMANDS[command.command]
    if kind in admin_actions.IMMEDIATE_KINDS or command.args:
        await state.clear()
        await _run_admin_action(message, kind, command.args)
        return

    await state.set_state(AdminInput.waiting_for_input)
    await state.update_data(action=kind)
    await message.answer(admin_actions.PROMPTS[kind])


@router.message(StateFilter(AdminInput.waiting_for_input), F.text)
async def admin_input(message: Message, state: FSMContext):
    if not is_admin(message.from_user.id):
        await state.clear()
        return

    data = await state.get_data()
    kind = data.get("action")
    if not kind:
        await state.clear()
        await message.answer(_t("cancelled"))
        return

    if await _run_admin_action(message, kind, message.text):
        await state.clear()


async def _run_admin_action(message: Message, kind: str, text: Optional[str]) -> bool:
    """
    Returns:
        True если действие выполнено (ввод больше не нужен)
    """
    try:
        action = admin_actions.parse_admin_input(kind, text)
    except VPNServiceError as e:
        # Ввод некорректен: остаёмся в том же шаге
        await message.answer(e.user_message)
        return False

    logger.info(f"handlers admin: START [admin={message.from_user.id}, action={type(action).__name__}]")
    try:
        reply = await admin_actions.handle_admin_action(action)
    except Exception as e:
        await _answer_error(message, e, "admin")
        return True
    await message.answer(reply)
    return True
