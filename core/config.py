import os
import logging
from dotenv import load_dotenv

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
DB_ECHO = os.getenv("DB_ECHO", "").lower() in ("1", "true", "yes")

DEBUG = os.getenv("DEBUG", "").lower() in ("1", "true", "yes")

# Store settings
STORE_CURRENCY = "NZD"
ORDER_REFERENCE_PREFIX = (os.getenv("ORDER_REFERENCE_PREFIX", "QB") or "QB").strip().upper()

# Pagination bounds for order listings
ORDERS_DEFAULT_LIMIT = 50
ORDERS_MAX_LIMIT = 100

# Rate limiting
REDIS_URL = os.getenv("REDIS_URL", "").strip()
ORDER_RATE_LIMIT_PER_MINUTE = int(os.getenv("ORDER_RATE_LIMIT_PER_MINUTE", "10"))
API_RATE_LIMIT_PER_MINUTE = int(os.getenv("API_RATE_LIMIT_PER_MINUTE", "120"))

_default_origins = ",".join([
    "https://queenbeecandles.co.nz",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
])
_origins_env = os.getenv("ALLOWED_ORIGINS") or os.getenv("CORS_ORIGINS") or _default_origins
ALLOWED_ORIGINS = [o.strip() for o in _origins_env.split(",") if o.strip()]

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("queenbee")


def get_admin_secret() -> str:
    # Read per request so the secret can be rotated without a restart
    return (os.getenv("ADMIN_SECRET") or "").strip()
