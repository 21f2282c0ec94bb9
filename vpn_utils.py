"""
Утилиты для VLESS + REALITY ссылок.

Ссылка собирается локально из ответа панели (inbound.streamSettings), поэтому
смена ключей REALITY на сервере подхватывается повторной сборкой ссылки.
"""
import json
import re
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote_plus

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "PENDING:"
VLESS_SCHEME = "vless://"
DEFAULT_FLOW = "xtls-rprx-vision"
DEFAULT_FINGERPRINT = "chrome"


def _enc(value: str) -> str:
    return quote_plus(str(value), safe="")


def uuid_preview(value: Optional[Any]) -> str:
    """Безопасное логирование UUID (только первые 8 символов)"""
    if not value:
        return "N/A"
    text = str(value)
    return f"{text[:8]}..." if len(text) > 8 else text


def placeholder_value(client_uuid: Any) -> str:
    """Значение key_value, пока ключ в статусе PENDING"""
    return f"{PLACEHOLDER_PREFIX}{client_uuid}"


def is_placeholder(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(PLACEHOLDER_PREFIX)


def needs_link_refresh(value: Optional[str]) -> bool:
    """
    Эвристика устаревшей ссылки

    Ссылки старого формата (без encryption) и текущего (encryption=none)
    пересобираются при чтении: пересборка дешёвая, а сохраняется результат
    только если он отличается.
    """
    if not value or not value.startswith(VLESS_SCHEME):
        return False
    return "encryption=none" in value or "encryption=" not in value


def _json_field(value: Any) -> Dict[str, Any]:
    # 3x-ui отдаёт streamSettings/settings строкой JSON
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        parsed = json.loads(value)
        return parsed if isinstance(parsed, dict) else {}
    return {}


def build_reality_link(
    inbound: Dict[str, Any],
    host: str,
    port: int,
    client_uuid: Any,
    tag: Optional[str] = None
) -> str:
    """
    Собрать vless:// ссылку для REALITY из inbound панели

    Args:
        inbound: Объект inbound (ответ get_inbound)
        host: Публичный хост сервера
        port: Публичный порт (обычно 443)
        client_uuid: UUID клиента
        tag: Подпись после '#'; если пустая - inbound.remark или "vpn"

    Returns:
        Ссылка vless://...

    Raises:
        ValueError: Если в inbound нет realitySettings.settings.publicKey
    """
    try:
        stream = _json_field(inbound.get("streamSettings"))
    except (TypeError, ValueError) as e:
        raise ValueError(f"invalid streamSettings: {e}") from e

    reality = stream.get("realitySettings") or {}
    reality_settings = reality.get("settings") or {}

    public_key = reality_settings.get("publicKey")
    if not public_key:
        raise ValueError("reality publicKey not found in streamSettings.realitySettings.settings.publicKey")

    fingerprint = reality_settings.get("fingerprint") or DEFAULT_FINGERPRINT

    server_names = reality.get("serverNames") or []
    sni = server_names[0] if server_names and server_names[0] else host

    short_ids = reality.get("shortIds") or []
    short_id = short_ids[0] if short_ids else ""

    if not tag:
        tag = inbound.get("remark") or "vpn"

    parts = [
        "type=tcp",
        "security=reality",
        "encryption=none",
        f"flow={_enc(DEFAULT_FLOW)}",
        f"sni={_enc(sni)}",
        f"fp={_enc(fingerprint)}",
        f"pbk={_enc(public_key)}",
    ]
    if short_id:
        parts.append(f"sid={_enc(short_id)}")
    parts.append(f"spx={_enc('/')}")

    return f"{VLESS_SCHEME}{client_uuid}@{host}:{port}?{'&'.join(parts)}#{_enc(tag)}"


def normalize_label_username(username: Optional[str]) -> Optional[str]:
    """
    Привести username к виду, пригодному для client_email панели

    Ведущий @ убирается, всё кроме букв, цифр, '_' и '-' заменяется на '_',
    повторы '_' схлопываются, крайние '_' обрезаются.
    """
    if not username:
        return None
    value = username.strip()
    if value.startswith("@"):
        value = value[1:]
    if not value:
        return None
    value = "".join(c.lower() if (c.isalnum() or c in "_-") else "_" for c in value)
    value = re.sub(r"_+", "_", value).strip("_")
    return value or None


def build_client_label(telegram_id: int, username: Optional[str], client_uuid: Any) -> str:
    """
    Метка клиента в панели: tg_<username>_<telegram_id>_<uuid8>

    Кусок UUID делает метку уникальной внутри inbound, поэтому параллельная
    выдача не упирается в "Duplicate email".
    """
    short_uuid = str(client_uuid)[:8]
    normalized = normalize_label_username(username)
    identity = f"tg_{telegram_id}" if normalized is None else f"tg_{normalized}_{telegram_id}"
    return f"{identity}_{short_uuid}"
