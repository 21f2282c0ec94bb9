"""
YooKassa API client

Basic auth (shopId:secretKey). Создание платежа идёт с заголовком
Idempotence-Key, поэтому повтор запроса с тем же ключом не создаёт второй платёж.
"""
import logging
from typing import Optional, Dict, Any

import httpx

import config
from errors import TransientGatewayError

logger = logging.getLogger(__name__)

# Подменяется в тестах на httpx.MockTransport
_transport: Optional[httpx.AsyncBaseTransport] = None


class PaymentGatewayError(TransientGatewayError):
    """Ошибка платёжного шлюза (сеть, таймаут, не-2xx ответ)"""

    user_message = "Не удалось создать платёж. Попробуйте ещё раз позже."


def is_enabled() -> bool:
    """Check if YooKassa is configured"""
    return config.PAYMENTS_ENABLED


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=config.YOOKASSA_API_BASE.rstrip("/"),
        auth=(config.YOOKASSA_SHOP_ID, config.YOOKASSA_SECRET_KEY),
        timeout=config.YOOKASSA_TIMEOUT,
        transport=_transport,
    )


async def _call(method: str, path: str, **kwargs) -> Dict[str, Any]:
    if not is_enabled():
        raise PaymentGatewayError("YooKassa is not configured", user_message="Оплата временно недоступна.")
    try:
        async with _client() as client:
            response = await client.request(method, path, **kwargs)
    except httpx.TimeoutException as e:
        logger.error(f"yookassa {method} {path}: TIMEOUT")
        raise PaymentGatewayError(f"YooKassa timeout: {method} {path}") from e
    except httpx.HTTPError as e:
        logger.error(f"yookassa {method} {path}: NETWORK_ERROR [error={e}]")
        raise PaymentGatewayError(f"YooKassa network error: {type(e).__name__}: {e}") from e

    if response.status_code >= 400:
        logger.error(f"yookassa {method} {path}: HTTP_ERROR [status={response.status_code}]")
        raise PaymentGatewayError(f"YooKassa API error: {response.status_code} - {response.text[:300]}")

    try:
        data = response.json()
    except ValueError as e:
        raise PaymentGatewayError(f"YooKassa invalid JSON: {response.text[:200]}") from e
    if not isinstance(data, dict):
        raise PaymentGatewayError("YooKassa unexpected response payload")
    return data


async def create_payment(request_body: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
    """
    Создать платёж

    Args:
        request_body: Тело запроса POST /payments
        idempotency_key: Значение заголовка Idempotence-Key

    Returns:
        Объект платежа YooKassa (id, status, confirmation, amount, metadata)

    Raises:
        PaymentGatewayError: При любой ошибке шлюза
    """
    data = await _call(
        "POST",
        "/payments",
        json=request_body,
        headers={"Idempotence-Key": idempotency_key},
    )
    if not data.get("id"):
        raise PaymentGatewayError("YooKassa response without payment id")
    logger.info(f"yookassa create_payment: SUCCESS [payment_id={data['id']}, status={data.get('status')}]")
    return data


async def get_payment(provider_payment_id: str) -> Dict[str, Any]:
    """
    Получить актуальное состояние платежа (источник правды для webhook)

    Raises:
        PaymentGatewayError: При любой ошибке шлюза
    """
    return await _call("GET", f"/payments/{provider_payment_id}")
