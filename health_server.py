"""
HTTP сервер: health check и webhook YooKassa

/health не обращается ни к БД, ни к Redis: только читает флаги готовности.
/webhooks/yookassa всегда отвечает 200: статус платежа всё равно
перепроверяется через API, а пропущенное уведомление подберёт фоновая сверка.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple

from aiohttp import web
from aiogram import Bot

import database
import payment_service
import redis_client
import yookassa_client

logger = logging.getLogger(__name__)

BOT_APP_KEY = web.AppKey("bot", Bot)


def evaluate_health() -> Tuple[int, Dict[str, Any]]:
    """
    Снимок готовности сервиса

    "fail" (503) - миграции не применены, polling не запущен;
    "degraded" - БД или Redis сейчас недоступны;
    "ok" - всё готово.
    """
    init_status = database.DB_INIT_STATUS
    if init_status != database.DBInitStatus.READY:
        status, http_status = "fail", 503
    elif database.DB_READY and redis_client.REDIS_READY:
        status, http_status = "ok", 200
    else:
        status, http_status = "degraded", 200

    return http_status, {
        "status": status,
        "db_ready": database.DB_READY,
        "db_init_status": init_status.value,
        "redis_ready": redis_client.REDIS_READY,
        "payments_enabled": yookassa_client.is_enabled(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def health_handler(request: web.Request) -> web.Response:
    http_status, payload = evaluate_health()
    return web.json_response(payload, status=http_status)


async def yookassa_webhook_handler(request: web.Request) -> web.Response:
    """
    Уведомление YooKassa (payment.succeeded / payment.canceled)

    Always returns 200 OK.
    """
    if not yookassa_client.is_enabled():
        logger.warning("YooKassa webhook received but payments are disabled")
        return web.json_response({"status": "disabled"})

    if not database.DB_READY:
        logger.warning("YooKassa webhook: DB not ready")
        return web.json_response({"status": "degraded"})

    try:
        body = json.loads(await request.text())
    except ValueError as e:
        logger.error(f"YooKassa webhook: invalid JSON: {e}")
        return web.json_response({"status": "invalid"})
    if not isinstance(body, dict):
        return web.json_response({"status": "invalid"})

    try:
        result = await payment_service.handle_webhook(body)
    except payment_service.PaymentGatewayError as e:
        logger.warning(f"YooKassa webhook: verification deferred: {e}")
        return web.json_response({"status": "deferred"})
    except Exception as e:
        logger.exception(f"YooKassa webhook: processing error: {e}")
        return web.json_response({"status": "error"})

    if result is None:
        return web.json_response({"status": "ignored"})

    bot = request.app.get(BOT_APP_KEY)
    if bot is not None:
        await payment_service.notify_payment_status(bot, result)

    return web.json_response({"status": "processed" if result.settled else result.status})


async def create_health_app(bot: Optional[Bot] = None) -> web.Application:
    """Создать aiohttp приложение с health endpoint и webhook YooKassa"""
    app = web.Application()
    if bot is not None:
        app[BOT_APP_KEY] = bot

    app.router.add_get("/health", health_handler)

    async def root_handler(request: web.Request) -> web.Response:
        return web.json_response({"service": "vpn-bot", "health": "/health"})

    app.router.add_get("/", root_handler)
    app.router.add_post("/webhooks/yookassa", yookassa_webhook_handler)
    return app


async def start_health_server(host: str = "0.0.0.0", port: int = 8080, bot: Optional[Bot] = None) -> web.AppRunner:
    """
    Запустить HTTP сервер

    Returns:
        AppRunner для управления сервером
    """
    app = await create_health_app(bot)
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"Health check server started on http://{host}:{port}/health")
    return runner


async def health_server_task(host: str = "0.0.0.0", port: int = 8080, bot: Optional[Bot] = None):
    """Фоновая задача HTTP сервера (работает до отмены)"""
    runner = None
    try:
        runner = await start_health_server(host, port, bot)
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        logger.info("Health server task cancelled")
        raise
    finally:
        if runner:
            try:
                await runner.cleanup()
                logger.info("Health server stopped")
            except Exception as e:
                logger.error(f"Error stopping health server: {e}")
