import asyncio
import logging
import sys
from typing import List

from aiogram import Bot, Dispatcher

import config
import database
import guard
import handlers
import health_server
import key_cleanup
import payment_service
import redis_client
import reminders

# Настройка логирования
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def start_background_tasks(bot: Bot) -> List[asyncio.Task]:
    """Фоновые циклы: напоминания, recovery/cleanup ключей, сверка платежей, HTTP"""
    tasks = [
        asyncio.create_task(reminders.reminders_task(bot), name="reminders"),
        asyncio.create_task(key_cleanup.recovery_task(), name="key_recovery"),
        asyncio.create_task(key_cleanup.cleanup_task(), name="key_cleanup"),
        asyncio.create_task(payment_service.payment_watcher_task(bot), name="payment_watcher"),
        asyncio.create_task(
            health_server.health_server_task(config.HEALTH_SERVER_HOST, config.HEALTH_SERVER_PORT, bot=bot),
            name="health_server",
        ),
    ]
    logger.info(f"Background tasks started: {', '.join(task.get_name() for task in tasks)}")
    return tasks


async def stop_background_tasks(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Background task {task.get_name()} finished with error: {e}")


async def main():
    """
    Порядок старта:
    1. config.py уже проверил переменные окружения (sys.exit при ошибке)
    2. Redis: FSM, идемпотентность, rate limit (в production обязателен)
    3. БД и миграции (fail-fast)
    4. Фоновые задачи и polling
    """
    logger.info("✅ Environment variables validated")

    logger.info("🔌 Connecting to Redis...")
    try:
        storage = await redis_client.build_fsm_storage()
    except Exception as e:
        logger.error(f"❌ CRITICAL: Redis is mandatory in production: {type(e).__name__}: {e}")
        sys.exit(1)

    bot = Bot(token=config.BOT_TOKEN)
    dp = Dispatcher(storage=storage)
    dp.update.outer_middleware(guard.UpdateGuardMiddleware())
    dp.include_router(handlers.router)

    logger.info("🔌 Connecting to Database...")
    try:
        if not await database.init_db():
            raise RuntimeError(f"DB_INIT_STATUS={database.DB_INIT_STATUS.value}")
    except Exception as e:
        logger.exception("❌ CRITICAL: Database initialization error")
        database.DB_READY = False
        await redis_client.close_redis_client()
        await bot.session.close()
        raise RuntimeError(f"Database initialization failed: {e}") from e
    logger.info("✅ Database initialized successfully")

    tasks = start_background_tasks(bot)

    logger.info("🚀 Starting bot polling...")
    try:
        await dp.start_polling(bot)
    finally:
        logger.info("Shutting down...")
        await stop_background_tasks(tasks)
        await database.close_pool()
        await redis_client.close_redis_client()
        await bot.session.close()
        logger.info("Bot stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Бот остановлен")
