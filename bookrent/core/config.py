# /bookrent/core/config.py
import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

# ================== ENV ==================

ROOT_DIR = Path(__file__).resolve().parents[2]
load_dotenv(ROOT_DIR / "bookrent/.env", override=True)


def env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}

# ================== JWT ==================

JWT_SECRET = os.environ.get("JWT_SECRET", "default_secret_key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = int(os.environ.get("JWT_EXPIRATION_HOURS", "24"))

# ================== GATEWAY ==================

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "").strip()
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "").strip()
GATEWAY_WEBHOOK_SECRET = os.getenv("GATEWAY_WEBHOOK_SECRET", "").strip()
TEST_MODE = env_flag("TEST_MODE")

APP_DOMAIN = os.getenv("APP_DOMAIN", "https://bookrentmanager.com").rstrip("/")
LOG_DIR = os.getenv("LOG_DIR", "logs")

# ================== PAYMENTS ==================

DEFAULT_LINK_EXPIRY_HOURS = int(os.getenv("DEFAULT_LINK_EXPIRY_HOURS", "48"))
DEFAULT_DEPOSIT_HOLD_HOURS = int(os.getenv("DEFAULT_DEPOSIT_HOLD_HOURS", "720"))
MAX_DEPOSIT_HOLD_HOURS = int(os.getenv("MAX_DEPOSIT_HOLD_HOURS", "8760"))

DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "EUR")
MONEY_QUANT = Decimal("0.01")

EXCHANGE_RATE_API_URL = os.getenv(
    "EXCHANGE_RATE_API_URL", "https://api.exchangerate-api.com/v4/latest/{base}"
)

# Shown to the client on bank-transfer instructions
BANK_ACCOUNT_HOLDER = os.getenv("BANK_ACCOUNT_HOLDER", "")
BANK_IBAN = os.getenv("BANK_IBAN", "")
BANK_BIC = os.getenv("BANK_BIC", "")
BANK_NAME = os.getenv("BANK_NAME", "")

CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")

# ================== DATABASE ==================
# Using SQLite for local development/preview environment

DATABASE_URL = os.environ.get("DATABASE_URL", "")

def get_database_url() -> str:
    """Get database URL - supports SQLite or MySQL."""
    if DATABASE_URL:
        return DATABASE_URL

    # Check if MySQL is configured
    mysql_host = os.environ.get("MYSQL_HOST")
    if mysql_host and mysql_host != "127.0.0.1":
        mysql_port = int(os.environ.get("MYSQL_PORT", "3306"))
        mysql_user = os.environ.get("MYSQL_USER", "root")
        mysql_password = os.environ.get("MYSQL_PASSWORD", "")
        mysql_db = os.environ.get("MYSQL_DB", "bookrent")
        return f"mysql+aiomysql://{mysql_user}:{mysql_password}@{mysql_host}:{mysql_port}/{mysql_db}?charset=utf8mb4"

    # Default to SQLite
    db_path = ROOT_DIR / "bookrent" / "bookrent.db"
    return f"sqlite+aiosqlite:///{db_path}"
