import logging
from typing import Dict

logger = logging.getLogger(__name__)

# Все тексты для пользователя
TEXTS: Dict[str, Dict[str, str]] = {
    "ru": {
        "welcome": (
            "🔐 Добро пожаловать!\n\n"
            "/buy - оформить подписку\n"
            "/keys - мои ключи\n"
            "/newkey - получить новый ключ\n"
            "/status - статус подписки"
        ),
        "service_unavailable": "⚠️ Сервис временно недоступен. Попробуйте позже.",
        "user_disabled": "Доступ отключён администратором.",

        # Подписка
        "subscription_active": "✅ Подписка активна. Осталось: {days} дн. До: {date}",
        "subscription_none": "❌ Активной подписки нет. Оформите её командой /buy",
        "subscription_expired": "⌛ Подписка закончилась {date}. Продлить: /buy",

        # Тарифы и оплата
        "plans_header": "🕒 Выберите тариф и отправьте команду:",
        "plan_line": "/buy {key} - {label}: {price} ₽ ({days} дн.)",
        "plan_key_hint": "Чтобы продлить конкретный ключ: /buy <тариф> <id ключа>",
        "payment_created": "💳 Счёт на {amount} ₽ ({label}) создан.\nОплатите по ссылке:\n{url}",
        "payment_no_url": "Платёж создан, но ссылка на оплату не получена. Попробуйте ещё раз.",
        "payments_disabled": "Оплата временно недоступна.",
        "payment_check_none": "Новых оплат не найдено.",

        # Ключи
        "keys_empty": "У вас пока нет ключей. Получить ключ: /newkey",
        "keys_header": "🔑 Ваши ключи:",
        "key_line": "#{id} - {status}, до: {until}",
        "keys_footer": "Показать ключ: /key <id>\nЗаменить: /replace <id>\nУдалить: /delete <id>",
        "key_value": "🔑 Ключ #{id}\n\n{value}",
        "key_pending": "⏳ Ключ #{id} готовится. Попробуйте через минуту: /key {id}",
        "key_replaced": "♻️ Ключ заменён. Новый ключ #{id}:\n\n{value}",
        "key_deleted": "🗑 Ключ #{id} удалён.",
        "key_id_required": "Укажите номер ключа, например: {example}",
        "key_expired": "⌛ Срок ключа #{id} закончился {date}. Продлить: /buy <тариф> {id}",

        "status_active": "активен",
        "status_pending": "готовится",
        "status_failed": "ошибка, повторим автоматически",

        # Админ
        "admin_menu": (
            "🛠 Админ-команды:\n"
            "/add_sub - выдать подписку\n"
            "/check_sub - проверить подписку\n"
            "/revoke_sub - отключить подписку\n"
            "/disable_user - отключить пользователя\n"
            "/enable_user - включить пользователя\n"
            "/purge_revoked - удалить отозванные ключи\n"
            "/purge_disabled - удалить отключённых пользователей\n"
            "/cancel - отменить ввод"
        ),
        "admin_only": "Команда доступна только администратору.",
        "cancelled": "Действие отменено.",
        "nothing_to_cancel": "Нечего отменять.",
        "error_generic": "Не удалось выполнить операцию. Попробуйте позже.",
    },
}


def get_text(language: str, key: str, default: str = None, **kwargs) -> str:
    """
    Получить текст по ключу

    Неизвестный язык - русский. Отсутствующий ключ логируется и
    заменяется default (или самим ключом).
    """
    lang = language if language in TEXTS else "ru"
    text = TEXTS[lang].get(key)

    if text is None:
        text = TEXTS["ru"].get(key)
        if text is None:
            logger.error(f"Localization key '{key}' not found in 'ru'")
            text = default if default is not None else key

    try:
        return text.format(**kwargs) if kwargs else text
    except KeyError as e:
        logger.error(f"Localization key '{key}' format error: missing parameter {e}")
        return text
