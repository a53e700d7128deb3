import os

DATABASE_URL = os.environ.get("DATABASE_URL") or "sqlite:///./expenses.db"

# live HTTP lookups for exchange rates; the static table is used otherwise
USE_EXTERNAL = os.environ.get("USE_EXTERNAL") == "1"
EXCHANGE_RATE_BASE_URL = os.environ.get("EXCHANGE_RATE_BASE_URL") or "https://api.exchangerate-api.com/v4/latest"
RATE_SOURCE_TIMEOUT = float(os.environ.get("RATE_SOURCE_TIMEOUT", "5"))
RATE_CACHE_TTL_SECONDS = int(os.environ.get("RATE_CACHE_TTL_SECONDS", "3600"))

MANAGER_CHAIN_MAX_DEPTH = int(os.environ.get("MANAGER_CHAIN_MAX_DEPTH", "32"))
DEFAULT_THRESHOLD_PERCENT = int(os.environ.get("DEFAULT_THRESHOLD_PERCENT", "50"))
HYBRID_DEFAULT_THRESHOLD_PERCENT = int(os.environ.get("HYBRID_DEFAULT_THRESHOLD_PERCENT", "60"))

NOTIFY_WEBHOOK_URL = os.environ.get("NOTIFY_WEBHOOK_URL") or None

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.environ.get("LOG_JSON") == "1"
