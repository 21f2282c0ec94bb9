"""
Миграции схемы

Файлы migrations/NNN_name.sql применяются по возрастанию номера, каждый в
своей транзакции; применённые версии записываются в schema_migrations.
"""
import re
import logging
from pathlib import Path
from typing import List, Set, Tuple
import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Ключ pg_advisory_lock, общий для всех инстансов
MIGRATION_LOCK_ID = 72_410_001

_MIGRATION_NAME = re.compile(r'^(\d+)_(.+)\.sql$')
_DOLLAR_TAG = re.compile(r'\$[A-Za-z0-9_]*\$')


async def ensure_migrations_table(conn: asyncpg.Connection):
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            name TEXT,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)


async def get_applied_migrations(conn: asyncpg.Connection) -> Set[str]:
    """Получить множество версий применённых миграций"""
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


def get_migration_files() -> List[Tuple[str, Path]]:
    """
    Получить список файлов миграций, отсортированных по версии

    Returns:
        Список кортежей (version, path), отсортированный по числовой версии
    """
    if not MIGRATIONS_DIR.exists():
        logger.warning(f"Migrations directory not found: {MIGRATIONS_DIR}")
        return []

    migrations = []
    for file_path in MIGRATIONS_DIR.glob("*.sql"):
        match = _MIGRATION_NAME.match(file_path.name)
        if match:
            migrations.append((match.group(1), file_path))
        else:
            logger.warning(f"Migration file name doesn't match pattern: {file_path.name}")

    # Сортируем по числовому значению версии (не лексикографически)
    migrations.sort(key=lambda x: int(x[0]))
    return migrations


def split_sql_commands(sql: str) -> List[str]:
    """
    Разбить SQL-скрипт на отдельные команды по ';'

    asyncpg.execute с параметрами выполняет только одну команду, поэтому
    скрипт режется вручную. Точки с запятой внутри строк, идентификаторов
    в кавычках, dollar-quoted блоков ($$ ... $$) и комментариев '--'
    разделителями не считаются.
    """
    commands: List[str] = []
    current: List[str] = []
    i = 0
    n = len(sql)

    while i < n:
        char = sql[i]

        if char == '-' and sql.startswith('--', i):
            end = sql.find('\n', i)
            i = n if end == -1 else end + 1
            current.append('\n')
            continue

        if char in ("'", '"'):
            end = i + 1
            while end < n:
                if sql[end] == char:
                    # удвоенная кавычка - экранирование
                    if end + 1 < n and sql[end + 1] == char:
                        end += 2
                        continue
                    break
                end += 1
            current.append(sql[i:end + 1])
            i = end + 1
            continue

        if char == '$':
            tag = _DOLLAR_TAG.match(sql, i)
            if tag:
                closing = sql.find(tag.group(0), tag.end())
                end = n if closing == -1 else closing + len(tag.group(0))
                current.append(sql[i:end])
                i = end
                continue

        if char == ';':
            command = ''.join(current).strip()
            if command:
                commands.append(command)
            current = []
            i += 1
            continue

        current.append(char)
        i += 1

    tail = ''.join(current).strip()
    if tail:
        commands.append(tail)
    return commands


async def apply_migration(conn: asyncpg.Connection, version: str, migration_path: Path) -> None:
    """
    Выполнить команды одной миграции и записать версию (conn уже в транзакции)

    Raises:
        Exception: При ошибке выполнения SQL
    """
    sql_content = migration_path.read_text(encoding='utf-8')
    if not sql_content.strip():
        logger.warning(f"migrations apply: EMPTY [version={version}]")
        return

    commands = split_sql_commands(sql_content)
    logger.info(f"migrations apply: START [version={version}, file={migration_path.name}, commands={len(commands)}]")
    for command in commands:
        await conn.execute(command)

    await conn.execute(
        "INSERT INTO schema_migrations (version, name) VALUES ($1, $2) ON CONFLICT (version) DO NOTHING",
        version, migration_path.name
    )
    logger.info(f"migrations apply: SUCCESS [version={version}]")


async def run_migrations(conn: asyncpg.Connection) -> bool:
    """
    Применить все неприменённые миграции

    Несколько инстансов бота стартуют одновременно, поэтому прогон идёт под
    advisory-локом: второй инстанс ждёт и видит уже применённые версии.

    Returns:
        True если схема в актуальном состоянии, False если миграция упала
    """
    await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_ID)
    try:
        await ensure_migrations_table(conn)
        applied = await get_applied_migrations(conn)

        pending = [(version, path) for version, path in get_migration_files() if version not in applied]
        logger.info(f"migrations: STATUS [applied={len(applied)}, pending={len(pending)}]")

        for version, migration_path in pending:
            # Упавшая миграция откатывается целиком, предыдущие остаются
            async with conn.transaction():
                await apply_migration(conn, version, migration_path)
        return True

    except Exception as e:
        logger.exception(f"migrations: FAILED [error={e}]")
        return False

    finally:
        await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)


async def run_migrations_safe(pool: asyncpg.Pool) -> bool:
    """Применить миграции, взяв соединение из пула"""
    async with pool.acquire() as conn:
        return await run_migrations(conn)
