"""
Runtime settings for the storefront API.

Everything is read from the environment once at import time, with defaults
that are good enough for local development.
"""
import logging
import os
import sys

# Security
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))
SUPER_ADMIN_EMAIL = os.getenv("SUPER_ADMIN_EMAIL")
SUPER_ADMIN_PASSWORD = os.getenv("SUPER_ADMIN_PASSWORD")
# set to true behind HTTPS
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() in ("1", "true", "yes")

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
DB_CONNECT_ATTEMPTS = int(os.getenv("DB_CONNECT_ATTEMPTS", 3))
DB_CONNECT_BACKOFF = float(os.getenv("DB_CONNECT_BACKOFF", 1.0))

# Payments
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "sk_test_change_me")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "whsec_change_me")
CURRENCY = os.getenv("CURRENCY", "usd")
MIN_CHARGE_CENTS = 50

# Pricing rules
FREE_SHIPPING_THRESHOLD = float(os.getenv("FREE_SHIPPING_THRESHOLD", 100))
SHIPPING_FEE = float(os.getenv("SHIPPING_FEE", 10))
TAX_RATE = float(os.getenv("TAX_RATE", 0.10))

# Cart
MAX_CART_QUANTITY = 10
CART_ITEM_TTL_HOURS = int(os.getenv("CART_ITEM_TTL_HOURS", 24))

# Uploads
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
ASSETS_URL_PREFIX = "/assets"

# HTTP
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def setup_logging(level: str = LOG_LEVEL):
    """Configure the root logger with a single stdout handler."""
    root = logging.getLogger()
    root.setLevel(level)
    if any(getattr(h, "_storefront", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))
    handler._storefront = True
    root.addHandler(handler)
    logging.getLogger(__name__).info("Logging configured at %s", level)
