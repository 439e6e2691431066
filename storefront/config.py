import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./storefront.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Stripe's published card schedule: 2.9% + 30c
STRIPE_FEE_RATE = Decimal(os.getenv("STRIPE_FEE_RATE", "0.029"))
STRIPE_FIXED_FEE = Decimal(os.getenv("STRIPE_FIXED_FEE", "0.30"))

WEBHOOK_MAX_BODY_BYTES = int(os.getenv("WEBHOOK_MAX_BODY_BYTES", str(1024 * 1024)))


def webhook_secret():
    # Read per call so a rotated secret is picked up without a restart
    return os.getenv("STRIPE_WEBHOOK_SECRET")


def webhook_tolerance():
    return int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))


def jwt_secret():
    return os.getenv("JWT_SECRET")
