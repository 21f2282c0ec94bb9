"""
Configuration Module

All environment variables are declared at the top of the file.
No business logic before full ENV initialization.
Fail-fast on invalid configuration.
"""

import os
import sys
from typing import Dict, Optional, Set

# ====================================================================================
# ENVIRONMENT CONFIGURATION (MUST BE FIRST)
# ====================================================================================
# ENVIRONMENT is required and must be one of: dev, staging, production

_ENVIRONMENT_RAW = os.getenv("ENVIRONMENT", "production").lower()
_ALLOWED_ENVIRONMENTS = {"dev", "staging", "production"}

if _ENVIRONMENT_RAW not in _ALLOWED_ENVIRONMENTS:
    print(
        f"ERROR: Invalid ENVIRONMENT value: '{_ENVIRONMENT_RAW}'",
        file=sys.stderr
    )
    print(
        f"ERROR: Allowed values: {', '.join(sorted(_ALLOWED_ENVIRONMENTS))}",
        file=sys.stderr
    )
    sys.exit(1)

ENVIRONMENT: str = _ENVIRONMENT_RAW
IS_PRODUCTION: bool = ENVIRONMENT == "production"
IS_STAGING: bool = ENVIRONMENT == "staging"
IS_DEV: bool = ENVIRONMENT == "dev"


def _int_env(name: str, default: int) -> int:
    """Прочитать целое из окружения, завершить процесс при мусоре"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"ERROR: {name} must be a number, got: {raw}", file=sys.stderr)
        sys.exit(1)


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in ("true", "1", "yes")


def _parse_admin_ids(raw: Optional[str]) -> Set[int]:
    """
    Разобрать список админов вида "123, 456"

    Нечисловые элементы пропускаются.
    """
    ids: Set[int] = set()
    if not raw:
        return ids
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.add(int(part))
        except ValueError:
            continue
    return ids


# ====================================================================================
# REQUIRED ENVIRONMENT VARIABLES (NO DEFAULTS)
# ====================================================================================

# Telegram Bot Configuration
BOT_TOKEN: Optional[str] = os.getenv("BOT_TOKEN")
if not BOT_TOKEN:
    print("ERROR: BOT_TOKEN environment variable is not set!", file=sys.stderr)
    sys.exit(1)

# Admin Configuration
ADMIN_TELEGRAM_IDS: Set[int] = _parse_admin_ids(os.getenv("ADMIN_TELEGRAM_IDS"))

# Database Configuration
DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    print("ERROR: DATABASE_URL environment variable is not set!", file=sys.stderr)
    sys.exit(1)

# Redis Configuration
REDIS_URL: Optional[str] = os.getenv("REDIS_URL")
if not REDIS_URL:
    print("ERROR: REDIS_URL environment variable is not set!", file=sys.stderr)
    print("ERROR: Redis is required (idempotency, rate limit, FSM state storage)", file=sys.stderr)
    sys.exit(1)

# 3x-ui Panel Configuration
XUI_BASE_URL: Optional[str] = os.getenv("XUI_BASE_URL")
if not XUI_BASE_URL:
    print("ERROR: XUI_BASE_URL environment variable is not set!", file=sys.stderr)
    sys.exit(1)
if not XUI_BASE_URL.startswith("http://") and not XUI_BASE_URL.startswith("https://"):
    print(
        f"ERROR: Invalid XUI_BASE_URL format: {XUI_BASE_URL}. Must start with http:// or https://",
        file=sys.stderr
    )
    sys.exit(1)

XUI_USERNAME: str = os.getenv("XUI_USERNAME", "")
XUI_PASSWORD: str = os.getenv("XUI_PASSWORD", "")
if (IS_PRODUCTION or IS_STAGING) and (not XUI_USERNAME or not XUI_PASSWORD):
    print("ERROR: XUI_USERNAME and XUI_PASSWORD must be set in production/staging!", file=sys.stderr)
    sys.exit(1)

# ====================================================================================
# OPTIONAL ENVIRONMENT VARIABLES (WITH SAFE DEFAULTS)
# ====================================================================================

XUI_BASE_PATH: str = os.getenv("XUI_BASE_PATH", "")
XUI_INBOUND_ID: int = _int_env("XUI_INBOUND_ID", 1)
XUI_PUBLIC_HOST: str = os.getenv("XUI_PUBLIC_HOST", "127.0.0.1")
XUI_PUBLIC_PORT: int = _int_env("XUI_PUBLIC_PORT", 443)
XUI_LINK_TAG: str = os.getenv("XUI_LINK_TAG", "reality443-auto")
XUI_CONNECT_TIMEOUT: float = float(_int_env("XUI_CONNECT_TIMEOUT_SECONDS", 5))
XUI_READ_TIMEOUT: float = float(_int_env("XUI_READ_TIMEOUT_SECONDS", 10))

# YooKassa Configuration
YOOKASSA_SHOP_ID: str = os.getenv("YOOKASSA_SHOP_ID", "")
YOOKASSA_SECRET_KEY: str = os.getenv("YOOKASSA_SECRET_KEY", "")
YOOKASSA_API_BASE: str = os.getenv("YOOKASSA_API_BASE", "https://api.yookassa.ru/v3")
YOOKASSA_RETURN_URL: str = os.getenv("YOOKASSA_RETURN_URL", "https://t.me")
YOOKASSA_TIMEOUT: float = float(_int_env("YOOKASSA_TIMEOUT_SECONDS", 10))

# Credential policy
MAX_KEYS_PER_USER: int = _int_env("MAX_KEYS_PER_USER", 3)

# Idempotency & rate limit (Redis)
IDEMPOTENCY_TTL_SECONDS: int = _int_env("IDEMPOTENCY_TTL_SECONDS", 10)
UPDATE_IDEMPOTENCY_TTL_SECONDS: int = _int_env("UPDATE_IDEMPOTENCY_TTL_SECONDS", 600)
RATE_LIMIT_WINDOW_SECONDS: int = _int_env("RATE_LIMIT_WINDOW_SECONDS", 3)
RATE_LIMIT_MAX_REQUESTS: int = _int_env("RATE_LIMIT_MAX_REQUESTS", 3)
ADMIN_STATE_TTL_SECONDS: int = _int_env("ADMIN_STATE_TTL_SECONDS", 900)

# Recovery & cleanup schedulers
RECOVERY_INTERVAL_SECONDS: int = _int_env("RECOVERY_INTERVAL_SECONDS", 60)
RECOVERY_THRESHOLD_MINUTES: int = _int_env("RECOVERY_THRESHOLD_MINUTES", 2)
RECOVERY_BATCH_SIZE: int = _int_env("RECOVERY_BATCH_SIZE", 50)
CLEANUP_INTERVAL_SECONDS: int = _int_env("CLEANUP_INTERVAL_SECONDS", 3600)
UNUSED_KEY_TTL_HOURS: int = _int_env("UNUSED_KEY_TTL_HOURS", 24)
NOTIFY_INTERVAL_SECONDS: int = _int_env("NOTIFY_INTERVAL_SECONDS", 3600)
PAYMENT_RECONCILE_INTERVAL_SECONDS: int = _int_env("PAYMENT_RECONCILE_INTERVAL_SECONDS", 60)
PAYMENT_RECONCILE_WINDOW_HOURS: int = _int_env("PAYMENT_RECONCILE_WINDOW_HOURS", 24)

# Re-verify ACTIVE keys against the panel on every read (costlier, always correct)
VPN_KEY_VERIFY_ON_READ: bool = _bool_env("VPN_KEY_VERIFY_ON_READ", False)

# Health Server Configuration
HEALTH_SERVER_HOST: str = os.getenv("HEALTH_SERVER_HOST", "0.0.0.0")
HEALTH_SERVER_PORT: int = _int_env("HEALTH_SERVER_PORT", 8080)

# ====================================================================================
# BUSINESS LOGIC (AFTER FULL ENV INITIALIZATION)
# ====================================================================================

# Тарифы: ключ -> дни, цена в рублях, подпись
PLANS: Dict[str, Dict] = {
    "1": {
        "days": _int_env("PLAN_1_DAYS", 30),
        "price": _int_env("PLAN_1_PRICE", 149),
        "label": os.getenv("PLAN_1_LABEL", "1 месяц"),
    },
    "2": {
        "days": _int_env("PLAN_2_DAYS", 60),
        "price": _int_env("PLAN_2_PRICE", 249),
        "label": os.getenv("PLAN_2_LABEL", "2 месяца"),
    },
}

for _plan_key, _plan in PLANS.items():
    if _plan["days"] <= 0 or _plan["price"] <= 0:
        print(f"ERROR: Plan {_plan_key} must have positive days and price", file=sys.stderr)
        sys.exit(1)

if MAX_KEYS_PER_USER <= 0:
    print("ERROR: MAX_KEYS_PER_USER must be positive", file=sys.stderr)
    sys.exit(1)

PAYMENTS_ENABLED: bool = bool(YOOKASSA_SHOP_ID and YOOKASSA_SECRET_KEY)

# ====================================================================================
# VALIDATION & STARTUP MESSAGES
# ====================================================================================

if IS_PRODUCTION:
    print("INFO: Running in PRODUCTION mode", file=sys.stderr)
elif IS_STAGING:
    print("INFO: Running in STAGING mode", file=sys.stderr)
else:
    print("INFO: Running in DEV mode", file=sys.stderr)

if not PAYMENTS_ENABLED:
    print("WARNING: YOOKASSA_SHOP_ID or YOOKASSA_SECRET_KEY is not set!", file=sys.stderr)
    print("WARNING: Payments will be BLOCKED until YooKassa is configured", file=sys.stderr)

if not ADMIN_TELEGRAM_IDS:
    print("WARNING: ADMIN_TELEGRAM_IDS is empty, admin commands are disabled", file=sys.stderr)
